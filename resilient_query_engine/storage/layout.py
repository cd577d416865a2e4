"""
File naming conventions for run output.

Output structure:
    output/
        {run_id}/
            run_meta.json
            {study_id}-results.json
            {study_id}-checkpoint-{completed:05d}.json

Checkpoint names are owned by engine.checkpoint; this module only names the
run-level artifacts. Names are deterministic so a resumed run writes into
the same directory without collisions.

Example:
    >>> get_run_directory("./output", "2025-11-02T08-00-00Z")
    './output/2025-11-02T08-00-00Z'
    >>> get_study_results_filename("google-india")
    'google-india-results.json'
"""

import os

RUN_META_FILENAME = "run_meta.json"


def get_run_directory(output_dir: str, run_id: str) -> str:
    """
    Join output_dir and run_id.

    Does NOT create the directory; use storage.writer.create_run_directory().
    """
    return os.path.join(output_dir, run_id)


def get_study_results_filename(study_id: str) -> str:
    """
    Example:
        >>> get_study_results_filename("openai-us")
        'openai-us-results.json'
    """
    return f"{study_id}-results.json"


def get_run_meta_filename() -> str:
    return RUN_META_FILENAME


def run_id_from_directory(run_dir: str) -> str:
    """
    Recover the run id of an existing run directory (used by --resume).

    Example:
        >>> run_id_from_directory("./output/2025-11-02T08-00-00Z/")
        '2025-11-02T08-00-00Z'
    """
    return os.path.basename(os.path.normpath(run_dir))
