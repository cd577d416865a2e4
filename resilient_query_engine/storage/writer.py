"""
JSON artifact writers for run output.

Writes the per-study result documents and run_meta.json next to the
checkpoint files. All files are UTF-8, pretty-printed with indent=2 and end
with a newline.

Errors are raised as OSError with the offending path; the CLI maps them to
exit code 2 (storage error).
"""

import json
import logging
import os
from pathlib import Path

from ..engine.models import StudyResult
from .layout import get_run_meta_filename, get_study_results_filename

logger = logging.getLogger(__name__)


def create_run_directory(output_dir: str, run_id: str) -> str:
    """
    Create (or reuse) the directory for one run.

    Returns:
        Path of the run directory

    Raises:
        OSError: If the directory cannot be created
    """
    run_dir = os.path.join(output_dir, run_id)
    try:
        Path(run_dir).mkdir(parents=True, exist_ok=True)
        logger.info(f"Using run directory: {run_dir}")
        return run_dir
    except OSError as e:
        logger.error(f"Failed to create run directory: {run_dir}", exc_info=True)
        raise OSError(
            f"Cannot create run directory '{run_dir}': {e}. Check permissions and disk space."
        ) from e


def write_json(filepath: str, data: dict | list) -> None:
    """
    Write data to a JSON file (indent=2, UTF-8, trailing newline).

    Raises:
        OSError: If the file cannot be written
        TypeError: If data is not JSON-serializable
    """
    try:
        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
        logger.debug(f"Wrote JSON file: {filepath}")
    except TypeError as e:
        logger.error(f"Cannot serialize data to JSON: {e}", exc_info=True)
        raise TypeError(
            f"Cannot write JSON to '{filepath}': Data is not JSON-serializable. {e}"
        ) from e
    except OSError as e:
        logger.error(f"Failed to write JSON file: {filepath}", exc_info=True)
        raise OSError(
            f"Cannot write JSON file '{filepath}': {e}. Check disk space and permissions."
        ) from e


def write_study_result(run_dir: str, result: StudyResult) -> str:
    """
    Write {study_id}-results.json.

    Returns:
        Path of the written file
    """
    filepath = os.path.join(run_dir, get_study_results_filename(result.study_id))
    write_json(filepath, result.to_dict())
    return filepath


def write_run_meta(run_dir: str, meta: dict) -> str:
    """
    Write run_meta.json (run id, config path, per-study summaries, exit status).

    Returns:
        Path of the written file
    """
    filepath = os.path.join(run_dir, get_run_meta_filename())
    write_json(filepath, meta)
    return filepath
