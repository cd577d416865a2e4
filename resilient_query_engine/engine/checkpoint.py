"""
Crash-safe checkpoint persistence.

One JSON file per (study id, completed count):

    {directory}/{study_id}-checkpoint-{queries_completed:05d}.json

Every save replaces the whole file atomically (temp file in the same
directory, fsync, os.replace), so a crash leaves either the old file or the
new one, never a torn write. Loading picks the file with the highest count.

Example:
    >>> store = CheckpointStore("./output/2025-11-02T08-00-00Z")
    >>> info = store.save("google-india", checkpoint)
    >>> store.load("google-india").queries_completed
    5
"""

import json
import logging
import os
import re
import tempfile
from pathlib import Path

from ..exceptions import CheckpointCorruptError, CheckpointWriteError
from .models import Checkpoint, CheckpointInfo

logger = logging.getLogger(__name__)

CHECKPOINT_SUFFIX = re.compile(r"-checkpoint-(\d{5,})\.json$")


def checkpoint_filename(study_id: str, queries_completed: int) -> str:
    """
    Example:
        >>> checkpoint_filename("google-india", 25)
        'google-india-checkpoint-00025.json'
    """
    return f"{study_id}-checkpoint-{queries_completed:05d}.json"


def _split_filename(name: str) -> tuple[str, int] | None:
    match = CHECKPOINT_SUFFIX.search(name)
    if not match:
        return None
    return name[: match.start()], int(match.group(1))


class CheckpointStore:
    """
    Reads and writes checkpoint files in one directory.

    Attributes:
        directory: Directory holding checkpoint files (the run directory)
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_for(self, study_id: str, queries_completed: int) -> Path:
        return self.directory / checkpoint_filename(study_id, queries_completed)

    def save(self, study_id: str, checkpoint: Checkpoint) -> CheckpointInfo:
        """
        Atomically write a checkpoint.

        A save with the same completed count as an earlier one overwrites it.

        Raises:
            CheckpointWriteError: If the file cannot be written
        """
        path = self.path_for(study_id, checkpoint.queries_completed)
        payload = json.dumps(checkpoint.to_dict(), indent=2, ensure_ascii=False) + "\n"

        tmp_path = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.directory, prefix=f".{path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
        except OSError as e:
            logger.error(f"Failed to write checkpoint {path}", exc_info=True)
            raise CheckpointWriteError(
                f"Cannot write checkpoint '{path}': {e}. Check disk space and permissions."
            ) from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)

        info = CheckpointInfo(
            file_path=str(path),
            saved_at=checkpoint.saved_at,
            queries_completed=checkpoint.queries_completed,
            total_queries=checkpoint.total_queries,
            file_size_bytes=path.stat().st_size,
            study_id=study_id,
        )
        logger.debug(
            f"Checkpoint saved: {path.name} "
            f"({checkpoint.queries_completed}/{checkpoint.total_queries}, {checkpoint.status})"
        )
        return info

    def _paths(self, study_id: str | None = None) -> list[tuple[str, int, Path]]:
        if not self.directory.is_dir():
            return []
        found = []
        for path in self.directory.iterdir():
            if not path.is_file():
                continue
            parts = _split_filename(path.name)
            if parts is None:
                continue
            file_study, count = parts
            if study_id is not None and file_study != study_id:
                continue
            found.append((file_study, count, path))
        return sorted(found, key=lambda item: (item[0], item[1]))

    def latest_path(self, study_id: str) -> Path | None:
        paths = self._paths(study_id)
        return paths[-1][2] if paths else None

    def read(self, path: Path) -> Checkpoint:
        """
        Parse one checkpoint file.

        Raises:
            CheckpointCorruptError: If the file is unreadable, not valid JSON,
                or its results are not a contiguous prefix from index 0
        """
        try:
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
            checkpoint = Checkpoint.from_dict(data)
        except (
            OSError,
            json.JSONDecodeError,
            AttributeError,
            KeyError,
            TypeError,
            ValueError,
        ) as e:
            raise CheckpointCorruptError(f"Checkpoint file '{path}' is corrupt: {e}") from e

        indices = [r.query_index for r in checkpoint.completed_results]
        if indices != list(range(len(indices))):
            raise CheckpointCorruptError(
                f"Checkpoint file '{path}' does not hold a contiguous result prefix"
            )
        if checkpoint.queries_completed > checkpoint.total_queries:
            raise CheckpointCorruptError(
                f"Checkpoint file '{path}' has more results than queries"
            )
        return checkpoint

    def load(self, study_id: str) -> Checkpoint | None:
        """
        Load the checkpoint with the highest completed count.

        Returns:
            Checkpoint, or None if the study has no checkpoint files

        Raises:
            CheckpointCorruptError: If the latest file cannot be parsed
        """
        path = self.latest_path(study_id)
        if path is None:
            return None
        checkpoint = self.read(path)
        if checkpoint.study_id != study_id:
            raise CheckpointCorruptError(
                f"Checkpoint file '{path}' belongs to study '{checkpoint.study_id}'"
            )
        logger.info(
            f"Loaded checkpoint {path.name}: "
            f"{checkpoint.queries_completed}/{checkpoint.total_queries} completed"
        )
        return checkpoint

    def list_checkpoints(self, study_id: str | None = None) -> list[CheckpointInfo]:
        """
        Describe saved checkpoint files without parsing their results.

        Args:
            study_id: Restrict to one study; None lists every study

        Returns:
            CheckpointInfo per file, ordered by study id then completed count
        """
        infos = []
        for file_study, count, path in self._paths(study_id):
            saved_at = ""
            total = 0
            try:
                with path.open(encoding="utf-8") as f:
                    data = json.load(f)
                saved_at = data.get("saved_at", "")
                total = int(data.get("total_queries", 0))
            except (OSError, json.JSONDecodeError, AttributeError, ValueError) as e:
                logger.warning(f"Unreadable checkpoint {path.name}: {e}")
            infos.append(
                CheckpointInfo(
                    file_path=str(path),
                    saved_at=saved_at,
                    queries_completed=count,
                    total_queries=total,
                    file_size_bytes=path.stat().st_size,
                    study_id=file_study,
                )
            )
        return infos

    def study_ids(self) -> list[str]:
        return sorted({file_study for file_study, _count, _path in self._paths()})
