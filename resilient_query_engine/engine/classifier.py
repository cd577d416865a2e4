"""
Failure classification for query errors.

Maps any exception raised while running a query onto a FailureCategory and
the recovery policy the study runner applies to it. Classification is
deterministic: typed surface errors are mapped first, then the lowercased
message is matched against an ordered pattern table where the first
matching category wins.

Key components:
- classify_failure(): Exception -> FailureClassification
- CATEGORY_POLICIES: FailureCategory -> RecoveryPolicy lookup table
- CATEGORY_GUIDANCE: FailureCategory -> (explanation, remediation) builders
- summarize_failures(): Aggregate view over a study's failed results

Example:
    >>> classification = classify_failure(RuntimeError("HTTP 429 Too Many Requests"))
    >>> classification.category
    <FailureCategory.RATE_LIMIT: 'rate_limit'>
    >>> classification.policy
    <RecoveryPolicy.RETRY: 'retry'>
"""

import asyncio
import re
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

import httpx

from ..exceptions import (
    SurfaceBlockedError,
    SurfaceError,
    SurfaceResponseError,
    SurfaceTransportError,
)
from .models import FailureCategory, QueryResult


class RecoveryPolicy(str, Enum):
    """What the study runner does after a failure of a given category."""

    # Count towards the consecutive-failure threshold
    RETRY = "retry"
    # Same identity is known to be futile; recover immediately
    ROTATE_IDENTITY = "rotate_identity"
    # Per-query problem; record and move on without recovery
    SKIP = "skip"


# Ordered: first match wins
FAILURE_PATTERNS: list[tuple[FailureCategory, tuple[str, ...]]] = [
    (FailureCategory.RATE_LIMIT, ("rate limit", "429", "too many requests")),
    (FailureCategory.TIMEOUT, ("timeout", "timed out", "etimedout")),
    (
        FailureCategory.AUTH,
        ("auth", "401", "403", "unauthorized", "forbidden"),
    ),
    (
        FailureCategory.NETWORK,
        (
            "network",
            "econnrefused",
            "enotfound",
            "econnreset",
            "socket hang up",
            "connection refused",
            "connection reset",
        ),
    ),
    (
        FailureCategory.SERVICE_UNAVAILABLE,
        ("503", "502", "504", "service unavailable", "bad gateway"),
    ),
    (
        FailureCategory.CAPTCHA_REQUIRED,
        ("captcha", "unusual traffic", "bot", "automated"),
    ),
    (
        FailureCategory.CONTENT_POLICY,
        ("content", "policy", "blocked", "safety", "harmful"),
    ),
    (
        FailureCategory.SESSION_EXPIRED,
        ("session", "expired", "login", "sign in"),
    ),
    (
        FailureCategory.QUOTA_EXCEEDED,
        ("quota", "limit exceeded", "billing"),
    ),
    (
        FailureCategory.INVALID_RESPONSE,
        ("parse", "json", "unexpected token", "syntax", "empty response"),
    ),
]

HTTP_STATUS_PATTERN = re.compile(r"\b(4\d{2}|5\d{2})\b")

CATEGORY_POLICIES: dict[FailureCategory, RecoveryPolicy] = {
    FailureCategory.RATE_LIMIT: RecoveryPolicy.RETRY,
    FailureCategory.TIMEOUT: RecoveryPolicy.RETRY,
    FailureCategory.NETWORK: RecoveryPolicy.RETRY,
    FailureCategory.SERVICE_UNAVAILABLE: RecoveryPolicy.RETRY,
    FailureCategory.INVALID_RESPONSE: RecoveryPolicy.RETRY,
    FailureCategory.UNKNOWN: RecoveryPolicy.RETRY,
    FailureCategory.CAPTCHA_REQUIRED: RecoveryPolicy.ROTATE_IDENTITY,
    FailureCategory.SESSION_EXPIRED: RecoveryPolicy.ROTATE_IDENTITY,
    FailureCategory.AUTH: RecoveryPolicy.ROTATE_IDENTITY,
    FailureCategory.QUOTA_EXCEEDED: RecoveryPolicy.SKIP,
    FailureCategory.CONTENT_POLICY: RecoveryPolicy.SKIP,
}

SYSTEMATIC_CATEGORIES = frozenset(
    {
        FailureCategory.AUTH,
        FailureCategory.QUOTA_EXCEEDED,
        FailureCategory.CONTENT_POLICY,
    }
)


def _status_suffix(status: int | None) -> str:
    return f" (HTTP {status})" if status else ""


# Each entry: status -> (explanation, remediation)
CATEGORY_GUIDANCE: dict[FailureCategory, Callable[[int | None], tuple[str, str]]] = {
    FailureCategory.RATE_LIMIT: lambda status: (
        f"The surface is throttling requests{_status_suffix(status)}.",
        "Increase the inter-query delay or rotate to a different egress identity.",
    ),
    FailureCategory.TIMEOUT: lambda status: (
        "The surface did not respond within the configured timeout.",
        "Raise timeout_ms or check proxy latency for this location.",
    ),
    FailureCategory.AUTH: lambda status: (
        f"The surface rejected the credentials or session{_status_suffix(status)}.",
        "Verify the API key or account, then rotate the identity.",
    ),
    FailureCategory.NETWORK: lambda status: (
        "The connection to the surface failed before a response arrived.",
        "Check proxy reachability and local network connectivity.",
    ),
    FailureCategory.CONTENT_POLICY: lambda status: (
        "The surface refused this query on content grounds.",
        "Rephrase the query; retrying it unchanged will not help.",
    ),
    FailureCategory.SERVICE_UNAVAILABLE: lambda status: (
        f"The surface reported a server-side outage{_status_suffix(status)}.",
        "Wait and resume the study later from its checkpoint.",
    ),
    FailureCategory.QUOTA_EXCEEDED: lambda status: (
        "The account quota or billing limit for this surface is exhausted.",
        "Top up the account or switch API keys before resuming.",
    ),
    FailureCategory.INVALID_RESPONSE: lambda status: (
        "The surface returned a response that could not be parsed.",
        "Inspect the raw response; the surface layout or API may have changed.",
    ),
    FailureCategory.SESSION_EXPIRED: lambda status: (
        "The browser session is no longer authenticated or has expired.",
        "Open a fresh session; log in again if the surface requires it.",
    ),
    FailureCategory.CAPTCHA_REQUIRED: lambda status: (
        "The surface detected automation and presented a challenge.",
        "Rotate to a different egress identity or configure a CAPTCHA solver.",
    ),
    FailureCategory.UNKNOWN: lambda status: (
        "The failure did not match any known category.",
        "Check the error message and logs for details.",
    ),
}


@dataclass
class FailureClassification:
    """
    Classified failure.

    Attributes:
        category: Failure category (first matching pattern wins)
        policy: Recovery policy for the category
        message: Original error message
        http_status: HTTP status code extracted from the error, if any
        explanation: One-sentence description of what went wrong
        remediation: One-sentence suggestion for the operator
    """

    category: FailureCategory
    policy: RecoveryPolicy
    message: str
    http_status: int | None = None
    explanation: str = ""
    remediation: str = ""


def match_category(message: str) -> FailureCategory:
    """
    Return the first category whose patterns occur in the message.

    Example:
        >>> match_category("ECONNRESET while reading")
        <FailureCategory.NETWORK: 'network'>
    """
    lowered = message.lower()
    for category, patterns in FAILURE_PATTERNS:
        if any(pattern in lowered for pattern in patterns):
            return category
    return FailureCategory.UNKNOWN


def extract_http_status(message: str) -> int | None:
    """Return the first 4xx/5xx status code mentioned in a message."""
    match = HTTP_STATUS_PATTERN.search(message)
    return int(match.group(1)) if match else None


def _error_message(error: BaseException) -> str:
    message = str(error)
    if not message:
        message = type(error).__name__
    return message


def classify_failure(error: BaseException | str) -> FailureClassification:
    """
    Classify an exception (or raw error text) raised while running a query.

    Typed errors take precedence:
    - SurfaceBlockedError -> captcha_required
    - asyncio.TimeoutError / httpx.TimeoutException -> timeout
    - SurfaceResponseError -> pattern match, else invalid_response
    - SurfaceTransportError / httpx.TransportError -> pattern match, else network
    Anything else is pattern matched on its message.

    Args:
        error: Exception instance or error message string

    Returns:
        FailureClassification with category, policy and operator guidance
    """
    if isinstance(error, str):
        message = error
    else:
        message = _error_message(error)

    status = None
    if isinstance(error, SurfaceError):
        status = error.status_code
    if status is None:
        status = extract_http_status(message)

    if isinstance(error, SurfaceBlockedError):
        category = FailureCategory.CAPTCHA_REQUIRED
    elif isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        category = FailureCategory.TIMEOUT
    else:
        # Status code in the text lets "HTTP error: status=503" classify
        # even when the adapter message omits the phrase
        text = f"{message} {status}" if status else message
        category = match_category(text)
        if category == FailureCategory.UNKNOWN:
            if isinstance(error, SurfaceResponseError):
                category = FailureCategory.INVALID_RESPONSE
            elif isinstance(error, (SurfaceTransportError, httpx.TransportError)):
                category = FailureCategory.NETWORK

    explanation, remediation = CATEGORY_GUIDANCE[category](status)

    return FailureClassification(
        category=category,
        policy=CATEGORY_POLICIES[category],
        message=message,
        http_status=status,
        explanation=explanation,
        remediation=remediation,
    )


# ============================================================================
# Failure summary
# ============================================================================


@dataclass
class FailureSummary:
    """
    Aggregate view of a study's failed results.

    Attributes:
        total_failures: Number of failed results
        by_category: Count of failures per category value
        failed_query_indices: Indices of failed results, ascending
        most_common_category: Most frequent category, or None
        failure_pattern: "none", "transient", "systematic" or "mixed"
        recommendations: Remediation text for each category seen
    """

    total_failures: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    failed_query_indices: list[int] = field(default_factory=list)
    most_common_category: str | None = None
    failure_pattern: str = "none"
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_failures": self.total_failures,
            "by_category": dict(self.by_category),
            "failed_query_indices": list(self.failed_query_indices),
            "most_common_category": self.most_common_category,
            "failure_pattern": self.failure_pattern,
            "recommendations": list(self.recommendations),
        }


def summarize_failures(results: list[QueryResult]) -> FailureSummary:
    """
    Summarize failures across a study's results.

    The pattern is "systematic" when every failure is in a category that
    will not clear on its own (auth, quota, content policy), "transient" when
    none are, and "mixed" otherwise.
    """
    failed = [r for r in results if not r.success]
    if not failed:
        return FailureSummary()

    counts = Counter(
        (r.failure_category or FailureCategory.UNKNOWN) for r in failed
    )
    systematic = sum(n for cat, n in counts.items() if cat in SYSTEMATIC_CATEGORIES)

    if systematic == len(failed):
        pattern = "systematic"
    elif systematic == 0:
        pattern = "transient"
    else:
        pattern = "mixed"

    most_common = counts.most_common(1)[0][0]

    return FailureSummary(
        total_failures=len(failed),
        by_category={cat.value: n for cat, n in counts.most_common()},
        failed_query_indices=sorted(r.query_index for r in failed),
        most_common_category=most_common.value,
        failure_pattern=pattern,
        recommendations=[CATEGORY_GUIDANCE[cat](None)[1] for cat, _ in counts.most_common()],
    )
