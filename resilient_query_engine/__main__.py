"""
Entry point for running the Resilient Query Engine as a module.

Enables execution via:
    python -m resilient_query_engine [command] [options]

Examples:
    python -m resilient_query_engine --help
    python -m resilient_query_engine run --config engine.config.yaml --yes
    python -m resilient_query_engine checkpoints ./output/2025-11-02T08-00-00Z
"""

from resilient_query_engine.cli import app

if __name__ == "__main__":
    app()
