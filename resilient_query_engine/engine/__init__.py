"""
Query execution engine.

Runs studies (ordered query batches against one surface) through egress
sessions bound to proxy identities, classifies failures, rotates identities,
escalates to an operator and checkpoints progress so an interrupted study
resumes where it stopped.

Submodules are imported directly (e.g. `engine.runner`, `engine.orchestrator`)
because the configuration schema itself depends on `engine.models`.
"""
