"""
Retry configuration for surface API calls.

One tenacity policy shared by every HTTP adapter:
- Exponential backoff between MIN_WAIT_SECONDS and MAX_WAIT_SECONDS
- MAX_ATTEMPTS attempts in total, then the last error is re-raised
- Retry on 429/5xx (raised as httpx.HTTPStatusError), connect errors and
  request timeouts
- Callers fail fast on NO_RETRY_STATUS_CODES by raising something else

This retry loop lives inside a single query attempt. The study-level
failure streak and identity rotation only see what is left after it.

Example:
    >>> @create_retry_decorator()
    ... async def call_surface():
    ...     response.raise_for_status()  # 503 is retried
"""

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

# Total attempts = 1 initial + 2 retries
MAX_ATTEMPTS = 3

MIN_WAIT_SECONDS = 1

MAX_WAIT_SECONDS = 60

# Rate limit and server errors clear on their own
RETRY_STATUS_CODES = frozenset([429, 500, 502, 503, 504])

# Bad request, bad key, wrong endpoint: retrying cannot help
NO_RETRY_STATUS_CODES = frozenset([400, 401, 404])

# Per-request timeout for API surfaces, in seconds
REQUEST_TIMEOUT = 30.0

RETRYABLE_EXCEPTIONS = (
    httpx.HTTPStatusError,
    httpx.ConnectError,
    httpx.TimeoutException,
)


def create_retry_decorator(max_attempts: int = MAX_ATTEMPTS):
    """
    Create a tenacity retry decorator for surface API calls.

    Args:
        max_attempts: Total attempts including the first one

    Returns:
        Retry decorator (works on sync and async callables)

    Note:
        httpx.HTTPStatusError is only raised by raise_for_status(), so the
        caller decides which statuses are retried by checking
        NO_RETRY_STATUS_CODES before calling it.
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=MIN_WAIT_SECONDS, max=MAX_WAIT_SECONDS),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        reraise=True,
    )
