"""
Data model for the Resilient Query Engine.

Dataclasses shared by the study runner, recovery controller, checkpoint store
and surface adapters. Every record that reaches disk has a to_dict() method
and, where it must be read back on resume, a from_dict() classmethod.

Key types:
- Query: One immutable (index, text) pair; index is the resume identity
- EgressIdentity: One candidate network path (proxy + claimed location)
- SessionHandle: Live browser context or HTTP client bound to an identity
- QueryResult: Outcome of one query index (last write for an index wins)
- RecoveryState: Transient counters owned by one study worker
- Checkpoint / CheckpointInfo: Durable partial progress and its file metadata
- StudyResult / StudySummary: Final study outcome returned to callers
"""

import random
import re
import statistics
import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any

from ..utils.time import utc_timestamp


class FailureCategory(str, Enum):
    """Deterministic classification of a failed query."""

    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    TIMEOUT = "timeout"
    NETWORK = "network"
    CONTENT_POLICY = "content_policy"
    SERVICE_UNAVAILABLE = "service_unavailable"
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID_RESPONSE = "invalid_response"
    SESSION_EXPIRED = "session_expired"
    CAPTCHA_REQUIRED = "captcha_required"
    UNKNOWN = "unknown"


class StudyState(str, Enum):
    """Recovery controller states plus the terminal COMPLETED state."""

    RUNNING = "running"
    RECOVERING = "recovering"
    AWAITING_OPERATOR = "awaiting_operator"
    ABORTED = "aborted"
    COMPLETED = "completed"


class OperatorDecision(str, Enum):
    """Responses accepted from a human operator in AWAITING_OPERATOR."""

    CONTINUE = "continue"
    SKIP = "skip"
    ABORT = "abort"


class WarningCode(str, Enum):
    IP_MISMATCH = "IP_MISMATCH"
    IP_NOT_CHANGED = "IP_NOT_CHANGED"
    IP_UNVERIFIED = "IP_UNVERIFIED"
    PROXY_SESSION_FAILED = "PROXY_SESSION_FAILED"
    NO_PROXY_CONFIGURED = "NO_PROXY_CONFIGURED"
    SESSION_RECOVERED = "SESSION_RECOVERED"
    CAPTCHA_SOLVED = "CAPTCHA_SOLVED"
    STUDY_ABORTED = "STUDY_ABORTED"
    OPERATOR_SKIPPED = "OPERATOR_SKIPPED"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"


# ============================================================================
# Queries and warnings
# ============================================================================


@dataclass(frozen=True)
class Query:
    """
    One query in a study.

    Attributes:
        index: Zero-based position; the stable identity used for resume
        text: Natural-language query text before any prompt transform
    """

    index: int
    text: str


@dataclass
class ExecutionWarning:
    """
    Non-fatal condition recorded against a study or a single query.

    Attributes:
        code: WarningCode value (e.g. "IP_MISMATCH")
        message: Human-readable description
        severity: "info", "warning" or "error"
        timestamp: UTC timestamp when the warning was raised
        query_index: Query index the warning refers to, if any
        context: Additional structured data
    """

    code: str
    message: str
    severity: str = "warning"
    timestamp: str = field(default_factory=utc_timestamp)
    query_index: int | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionWarning":
        return cls(
            code=data["code"],
            message=data["message"],
            severity=data.get("severity", "warning"),
            timestamp=data.get("timestamp", ""),
            query_index=data.get("query_index"),
            context=dict(data.get("context") or {}),
        )


# ============================================================================
# Egress identities and sessions
# ============================================================================

# Username segment used by session-scoped rotating proxies
SESSION_TOKEN_PATTERN = re.compile(r"sessid-[^-]+-sessTime")

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def mint_session_token(now_ms: int | None = None, rng: random.Random | None = None) -> str:
    """
    Mint a new proxy session token.

    Format: "G" + base36 millisecond timestamp + 6 random base36 characters.
    The timestamp part keeps tokens unique across processes; the random part
    keeps them unique within one millisecond.

    Example:
        >>> mint_session_token(now_ms=0, rng=random.Random(1)).startswith("G0")
        True
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    rng = rng or random.Random()
    suffix = "".join(rng.choice(_BASE36) for _ in range(6))
    return f"G{_to_base36(now_ms)}{suffix}"


@dataclass(frozen=True)
class EgressIdentity:
    """
    One candidate network path to a surface.

    A None server means the ambient direct path (no proxy).

    Attributes:
        name: Unique identity name (e.g. "proxy-in-1"); used for blocking
        location: Claimed location (e.g. "in-mum", "us-national", "unknown")
        server: Proxy server "scheme://host:port", or None for direct
        username: Optional proxy username
        password: Optional proxy password (never logged)
        session_id_suffix: Current session token for rotating proxies
    """

    name: str
    location: str
    server: str | None = None
    username: str | None = None
    password: str | None = None
    session_id_suffix: str | None = None

    @classmethod
    def direct(cls, location: str) -> "EgressIdentity":
        """Return the ambient/default network path for a location."""
        return cls(name="direct", location=location)

    @property
    def is_direct(self) -> bool:
        return self.server is None

    @property
    def uses_session_rotation(self) -> bool:
        """True when the proxy grants a new IP per session token."""
        return bool(self.username and SESSION_TOKEN_PATTERN.search(self.username))

    @property
    def label(self) -> str:
        """Log-safe identifier (never includes credentials)."""
        return f"{self.name}@{self.location}"

    def with_fresh_session_token(self, token: str | None = None) -> "EgressIdentity":
        """
        Return a copy with a newly minted session token in the username.

        Identities without session-scoped rotation are returned unchanged.
        """
        if not self.uses_session_rotation:
            return self
        token = token or mint_session_token()
        username = SESSION_TOKEN_PATTERN.sub(
            f"sessid-{token}-sessTime", self.username, count=1
        )
        return replace(self, username=username, session_id_suffix=token)

    def proxy_url(self) -> str | None:
        """Full proxy URL including credentials, for httpx and Steel."""
        if self.server is None:
            return None
        if not self.username:
            return self.server
        scheme, _, host = self.server.partition("://")
        return f"{scheme}://{self.username}:{self.password or ''}@{host}"

    def playwright_proxy(self) -> dict | None:
        """Proxy settings in the shape Playwright's launch() expects."""
        if self.server is None:
            return None
        proxy = {"server": self.server}
        if self.username:
            proxy["username"] = self.username
            proxy["password"] = self.password or ""
        return proxy

    def to_public_dict(self) -> dict:
        """Identity description with the password removed."""
        return {
            "name": self.name,
            "location": self.location,
            "server": self.server,
            "username": self.username,
            "has_password": bool(self.password),
        }


@dataclass
class IPInfo:
    """Egress address details as reported by the IP-geolocation service."""

    ip: str = "unknown"
    country: str = "unknown"
    city: str = "unknown"
    region: str = "unknown"
    org: str = "unknown"
    timezone: str = "unknown"
    loc: str = "unknown"
    postal: str = "unknown"
    hostname: str = "unknown"
    asn: str = "unknown"

    @classmethod
    def from_payload(cls, payload: dict) -> "IPInfo":
        """Build from an ipinfo.io JSON payload; missing fields become 'unknown'."""
        asn = payload.get("asn")
        if isinstance(asn, dict):
            asn = asn.get("asn")
        return cls(
            ip=str(payload.get("ip") or "unknown"),
            country=str(payload.get("country") or "unknown"),
            city=str(payload.get("city") or "unknown"),
            region=str(payload.get("region") or "unknown"),
            org=str(payload.get("org") or "unknown"),
            timezone=str(payload.get("timezone") or "unknown"),
            loc=str(payload.get("loc") or "unknown"),
            postal=str(payload.get("postal") or "unknown"),
            hostname=str(payload.get("hostname") or "unknown"),
            asn=str(asn or "unknown"),
        )

    @property
    def is_known(self) -> bool:
        return self.ip != "unknown"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class IPVerification:
    """
    Result of comparing a session's egress location with the expected one.

    Attributes:
        ip: Observed egress IP ("unknown" if the lookup failed)
        country: Observed country code
        expected_country: Country code derived from the study location
        verified: True when countries match (case-insensitive)
        confidence: "high" (verified), "low" (mismatch) or "unknown" (lookup failed)
        warning: Human-readable mismatch/lookup warning, if any
        ip_info: Full lookup payload
    """

    ip: str
    country: str
    expected_country: str
    verified: bool
    confidence: str
    warning: str | None = None
    ip_info: IPInfo = field(default_factory=IPInfo)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SessionHandle:
    """
    Live connection bound to one identity.

    Owned exclusively by one study worker. Exactly one handle is current at a
    time; the runner closes the previous handle before a replacement opens.

    Attributes:
        identity: Identity (with its minted session token) this handle uses
        kind: "browser" or "http"
        context: Playwright BrowserContext for browser sessions, None for HTTP
        page: Playwright Page for browser sessions, None for HTTP
        client: httpx.AsyncClient for HTTP sessions, None for browser
        verified_ip: Result of the last IP lookup through this session
        session_key: Unique key for logs and artifacts
        opened_at: UTC timestamp when the session opened
        resources: Manager-owned objects needed to close the session
    """

    identity: EgressIdentity
    kind: str
    session_key: str
    context: Any = None
    page: Any = None
    client: Any = None
    verified_ip: IPInfo | None = None
    opened_at: str = field(default_factory=utc_timestamp)
    resources: dict[str, Any] = field(default_factory=dict)
    closed: bool = False


# ============================================================================
# Query results and recovery state
# ============================================================================


@dataclass
class QueryResult:
    """
    Outcome of one query index.

    Append-only: a result for an index may only be replaced by a newer
    attempt for that same index.
    """

    query_index: int
    query: str
    response: str
    success: bool
    duration_ms: int
    error: str | None = None
    failure_category: FailureCategory | None = None
    warnings: list[ExecutionWarning] = field(default_factory=list)
    citations: list[dict] = field(default_factory=list)
    organic_results: list[dict] = field(default_factory=list)
    identity_name: str | None = None
    timestamp_utc: str = field(default_factory=utc_timestamp)
    attempt: int = 1

    def to_dict(self) -> dict:
        return {
            "query_index": self.query_index,
            "query": self.query,
            "response": self.response,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "failure_category": (
                self.failure_category.value if self.failure_category else None
            ),
            "warnings": [w.to_dict() for w in self.warnings],
            "citations": self.citations,
            "organic_results": self.organic_results,
            "identity_name": self.identity_name,
            "timestamp_utc": self.timestamp_utc,
            "attempt": self.attempt,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueryResult":
        category = data.get("failure_category")
        return cls(
            query_index=int(data["query_index"]),
            query=data["query"],
            response=data.get("response", ""),
            success=bool(data["success"]),
            duration_ms=int(data.get("duration_ms", 0)),
            error=data.get("error"),
            failure_category=FailureCategory(category) if category else None,
            warnings=[ExecutionWarning.from_dict(w) for w in data.get("warnings", [])],
            citations=list(data.get("citations") or []),
            organic_results=list(data.get("organic_results") or []),
            identity_name=data.get("identity_name"),
            timestamp_utc=data.get("timestamp_utc", ""),
            attempt=int(data.get("attempt", 1)),
        )


@dataclass
class RecoveryState:
    """
    Transient recovery counters for one study worker.

    Attributes:
        consecutive_failures: Failures since the last success
        recovery_attempts: Number of RECOVERING entries so far
        blocked_identities: Names this study has marked blocked
        state: Current controller state
    """

    consecutive_failures: int = 0
    recovery_attempts: int = 0
    blocked_identities: set[str] = field(default_factory=set)
    state: StudyState = StudyState.RUNNING

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def record_failure(self) -> int:
        self.consecutive_failures += 1
        return self.consecutive_failures


# ============================================================================
# Checkpoints
# ============================================================================


@dataclass
class CheckpointInfo:
    """Metadata describing one saved checkpoint file."""

    file_path: str
    saved_at: str
    queries_completed: int
    total_queries: int
    file_size_bytes: int
    study_id: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Checkpoint:
    """
    Durable snapshot of a study's progress.

    completed_results always covers the contiguous prefix
    [0, queries_completed); the remaining indices are incomplete.
    """

    study_id: str
    completed_results: list[QueryResult]
    total_queries: int
    saved_at: str = field(default_factory=utc_timestamp)
    status: str = "in_progress"
    abort_reason: str | None = None
    recovery_attempts: int = 0

    @property
    def queries_completed(self) -> int:
        return len(self.completed_results)

    def to_dict(self) -> dict:
        completed = self.queries_completed
        return {
            "study_id": self.study_id,
            "saved_at": self.saved_at,
            "status": self.status,
            "queries_completed": completed,
            "total_queries": self.total_queries,
            "completed_range": [0, completed],
            "incomplete_range": [completed, self.total_queries],
            "abort_reason": self.abort_reason,
            "recovery_attempts": self.recovery_attempts,
            "completed_results": [r.to_dict() for r in self.completed_results],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        results = [QueryResult.from_dict(r) for r in data.get("completed_results", [])]
        results.sort(key=lambda r: r.query_index)
        return cls(
            study_id=data["study_id"],
            completed_results=results,
            total_queries=int(data["total_queries"]),
            saved_at=data.get("saved_at", ""),
            status=data.get("status", "in_progress"),
            abort_reason=data.get("abort_reason"),
            recovery_attempts=int(data.get("recovery_attempts", 0)),
        )


# ============================================================================
# Study results
# ============================================================================


@dataclass
class StudySummary:
    """Counts and duration statistics over a study's results."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    failure_rate: float = 0.0
    avg_duration_ms: int = 0
    median_duration_ms: int = 0
    p95_duration_ms: int = 0

    @classmethod
    def from_results(cls, results: list[QueryResult]) -> "StudySummary":
        """
        Compute counts over all results and durations over successful ones.

        p95 uses the nearest-rank method on the sorted successful durations.
        """
        total = len(results)
        successful = sum(1 for r in results if r.success)
        durations = sorted(r.duration_ms for r in results if r.success)

        if durations:
            avg = round(sum(durations) / len(durations))
            median = round(statistics.median(durations))
            rank = max(1, -(-95 * len(durations) // 100))
            p95 = durations[rank - 1]
        else:
            avg = median = p95 = 0

        return cls(
            total=total,
            successful=successful,
            failed=total - successful,
            failure_rate=round((total - successful) / total, 4) if total else 0.0,
            avg_duration_ms=avg,
            median_duration_ms=median,
            p95_duration_ms=p95,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class StudyResult:
    """
    Final outcome of running one study against one surface.

    results are in index order. For an ABORTED study they cover only the
    completed prefix; abort_reason explains why the rest is missing.
    """

    study_id: str
    surface_id: str
    final_state: StudyState
    results: list[QueryResult]
    total_queries: int
    summary: StudySummary
    warnings: list[ExecutionWarning] = field(default_factory=list)
    checkpoints: list[CheckpointInfo] = field(default_factory=list)
    abort_reason: str | None = None
    recovery_attempts: int = 0
    failure_summary: Any = None
    started_at: str = field(default_factory=utc_timestamp)
    completed_at: str | None = None

    @property
    def aborted(self) -> bool:
        return self.final_state == StudyState.ABORTED

    @property
    def queries_completed(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict:
        return {
            "study_id": self.study_id,
            "surface_id": self.surface_id,
            "final_state": self.final_state.value,
            "total_queries": self.total_queries,
            "queries_completed": self.queries_completed,
            "abort_reason": self.abort_reason,
            "recovery_attempts": self.recovery_attempts,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "summary": self.summary.to_dict(),
            "failure_summary": (
                self.failure_summary.to_dict() if self.failure_summary else None
            ),
            "warnings": [w.to_dict() for w in self.warnings],
            "checkpoints": [c.to_dict() for c in self.checkpoints],
            "results": [r.to_dict() for r in self.results],
        }
