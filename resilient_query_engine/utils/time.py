"""
UTC timestamp and duration utilities for the Resilient Query Engine.

All timestamps are UTC with an explicit 'Z' marker. Durations are measured
with the monotonic clock so that wall-clock adjustments during a long study
never produce negative query durations.

This module provides:
- utc_now(): Current time as timezone-aware datetime
- utc_timestamp(): ISO 8601 timestamp string with 'Z' suffix
- run_id_from_timestamp(): Filesystem-safe timestamp slug for run directories
- parse_timestamp(): Parse ISO 8601 'Z' string back to datetime
- monotonic_ms() / elapsed_ms(): Duration measurement in milliseconds

Examples:
    >>> timestamp = utc_timestamp()
    >>> timestamp
    '2025-11-02T08:30:45Z'
    >>> run_id_from_timestamp()
    '2025-11-02T08-30-45Z'
"""

import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """
    Return current time in UTC with timezone info.

    Returns:
        datetime: Current UTC time with tzinfo=UTC

    Note:
        Never use datetime.utcnow() (returns a naive datetime).
    """
    return datetime.now(UTC)


def utc_timestamp() -> str:
    """
    Return ISO 8601 timestamp string with 'Z' suffix.

    Format: YYYY-MM-DDTHH:MM:SSZ

    Used for checkpoint `saved_at`, query result timestamps, warnings and logs.
    """
    return utc_now().strftime("%Y-%m-%dT%H:%M:%SZ")


def run_id_from_timestamp(dt: datetime | None = None) -> str:
    """
    Generate a run directory slug from a UTC timestamp.

    Format: YYYY-MM-DDTHH-MM-SSZ (hyphens instead of colons, sortable,
    safe on every filesystem).

    Args:
        dt: Optional timezone-aware datetime. Defaults to utc_now().

    Returns:
        str: Filesystem-safe timestamp slug

    Raises:
        ValueError: If dt is naive

    Example:
        >>> from datetime import UTC, datetime
        >>> run_id_from_timestamp(datetime(2025, 11, 2, 8, 30, 45, tzinfo=UTC))
        '2025-11-02T08-30-45Z'
    """
    if dt is None:
        dt = utc_now()

    if dt.tzinfo is None:
        raise ValueError(
            "Datetime must be timezone-aware (use UTC). "
            "Got naive datetime. Use utc_now() or set tzinfo."
        )

    return dt.strftime("%Y-%m-%dT%H-%M-%SZ")


def parse_timestamp(timestamp_str: str) -> datetime:
    """
    Parse an ISO 8601 'Z' timestamp into a timezone-aware datetime.

    Args:
        timestamp_str: Timestamp like '2025-11-02T08:30:45Z'

    Returns:
        datetime: Timezone-aware datetime in UTC

    Raises:
        ValueError: If the suffix is not 'Z' or the format is invalid
    """
    if not timestamp_str.endswith("Z"):
        raise ValueError(f"Timestamp must end with 'Z' (UTC): {timestamp_str}")

    try:
        return datetime.fromisoformat(timestamp_str.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"Invalid ISO 8601 timestamp format: {timestamp_str}") from e


def monotonic_ms() -> float:
    """Return the monotonic clock reading in milliseconds."""
    return time.monotonic() * 1000.0


def elapsed_ms(start_ms: float) -> int:
    """
    Return whole milliseconds elapsed since a monotonic_ms() reading.

    Example:
        >>> start = monotonic_ms()
        >>> elapsed_ms(start) >= 0
        True
    """
    return max(0, int(monotonic_ms() - start_ms))
