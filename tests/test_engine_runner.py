"""
Tests for engine.runner module.

The runner is exercised end to end with in-memory fakes for the session
manager, surface adapter and IP lookup, and with all delays set to zero.

Tests cover:
- Happy path: every index recorded once, in order, checkpoints on schedule
- Failures below the consecutive threshold are recorded and skipped past
- Threshold and rotate-policy failures trigger recovery on a new identity
- Recovery is bounded by max_recovery_attempts
- Unchanged egress IP after rotation escalates to the operator
- Operator continue / skip / abort decisions, including a lone identity reused
  after a pool reset
- Resume from the latest checkpoint (and rejection of mismatched checkpoints)
- Cancellation, timeouts, challenge pages and CAPTCHA solving
"""

import asyncio
import json
import logging
import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from resilient_query_engine.adapters.base import SurfaceResponse
from resilient_query_engine.config.schema import DelaySettings, StudyConfig
from resilient_query_engine.engine.block_detector import BlockDetection
from resilient_query_engine.engine.checkpoint import CheckpointStore
from resilient_query_engine.engine.identity_pool import IdentityPool
from resilient_query_engine.engine.ip_verifier import IPVerifier
from resilient_query_engine.engine.models import (
    Checkpoint,
    EgressIdentity,
    FailureCategory,
    IPInfo,
    OperatorDecision,
    Query,
    QueryResult,
    SessionHandle,
    StudyState,
)
from resilient_query_engine.engine.operator import ScriptedOperatorChannel
from resilient_query_engine.engine.pacing import CancellationToken
from resilient_query_engine.engine.runner import (
    SKIPPED_BY_OPERATOR,
    StudyRunner,
    validate_queries,
)
from resilient_query_engine.exceptions import (
    InvalidQueryListError,
    ResumeError,
    SessionOpenError,
    SurfaceBlockedError,
    SurfaceResponseError,
)

ZERO_DELAYS = DelaySettings(
    base_ms=0,
    after_failure_ms=0,
    variance=0.0,
    recovery_cooldown_ms=0,
    between_studies_ms=0,
)

STUDY_ID = "google-india"


class FakeSessionManager:
    """Opens in-memory handles; identities in fail_identities cannot open."""

    kind = "http"

    def __init__(self, fail_identities=None):
        self.fail_identities = set(fail_identities or [])
        self.opened: list[SessionHandle] = []

    async def open(self, identity, warm_up):
        if identity.name in self.fail_identities:
            raise SessionOpenError(f"Failed to open session for {identity.label}")
        handle = SessionHandle(
            identity=identity,
            kind="http",
            session_key=f"{identity.name}-{len(self.opened)}",
        )
        self.opened.append(handle)
        return handle

    async def close(self, handle):
        handle.closed = True

    async def shutdown(self):
        return None


class FakeAdapter:
    """
    Scripted surface.

    failures: query text -> exceptions raised on successive submits
    identity_errors: identity name -> exception raised on every submit
    responses: query text -> response text override
    """

    adapter_name = "fake"

    def __init__(self, kind="api", failures=None, identity_errors=None, responses=None):
        self.kind = kind
        self.failures = {text: list(errors) for text, errors in (failures or {}).items()}
        self.identity_errors = dict(identity_errors or {})
        self.responses = dict(responses or {})
        self.calls: list[tuple[str, str]] = []

    async def submit(self, handle, query_text, timeout_ms):
        self.calls.append((query_text, handle.identity.name))
        if handle.identity.name in self.identity_errors:
            raise self.identity_errors[handle.identity.name]
        pending = self.failures.get(query_text)
        if pending:
            raise pending.pop(0)
        text = self.responses.get(query_text, f"answer to {query_text}")
        return SurfaceResponse(response_text=text, duration_ms=120)


class SlowAdapter:
    adapter_name = "slow"
    kind = "api"

    async def submit(self, handle, query_text, timeout_ms):
        await asyncio.sleep(5)


class FakeIPVerifier(IPVerifier):
    """Real verification logic over a fixed identity -> IP table."""

    def __init__(self, ips, country="IN"):
        super().__init__()
        self.ips = ips
        self.country = country

    async def lookup(self, handle):
        return IPInfo(ip=self.ips.get(handle.identity.name, "203.0.113.9"), country=self.country)


class FakeBlockDetector:
    """Returns scripted detections, then 'not detected' forever."""

    def __init__(self, detections=None, always=False):
        self.detections = list(detections or [])
        self.always = always

    async def detect(self, handle):
        if self.always:
            return BlockDetection(detected=True, indicator="unusual traffic")
        if self.detections:
            return self.detections.pop(0)
        return BlockDetection(detected=False)


def study_config(**overrides) -> StudyConfig:
    settings = {
        "study_id": STUDY_ID,
        "surface_id": "fake",
        "expected_location": "in-mum",
        "warm_up": False,
        "verify_ip": False,
        "delays": ZERO_DELAYS,
        "max_consecutive_failures": 3,
        "max_recovery_attempts": 5,
        "checkpoint_every": 5,
    }
    settings.update(overrides)
    return StudyConfig(**settings)


def make_queries(count: int) -> list[Query]:
    return [Query(index=i, text=f"query {i}") for i in range(count)]


def make_pool(*names: str) -> IdentityPool:
    return IdentityPool(
        [EgressIdentity(name, "in-mum", f"http://{name}.example:8000") for name in names]
    )


def warning_codes(result) -> list[str]:
    return [w.code for w in result.warnings]


@pytest.fixture
def store(tmp_path):
    return CheckpointStore(tmp_path)


@pytest.fixture
def manager():
    return FakeSessionManager()


def make_runner(store, manager, **kwargs) -> StudyRunner:
    kwargs.setdefault("rng", random.Random(0))
    return StudyRunner(session_manager=manager, checkpoint_store=store, **kwargs)


class TestValidateQueries:
    """Test suite for validate_queries()."""

    def test_empty(self):
        """Test an empty query list is rejected."""
        with pytest.raises(InvalidQueryListError, match="empty"):
            validate_queries([])

    def test_out_of_order(self):
        """Test indices must be contiguous from 0."""
        with pytest.raises(InvalidQueryListError, match="position 1"):
            validate_queries([Query(0, "a"), Query(2, "b")])

    @pytest.mark.asyncio
    async def test_run_rejects_invalid_queries(self, store, manager):
        """Test run() validates the query list before doing anything."""
        runner = make_runner(store, manager)

        with pytest.raises(InvalidQueryListError):
            await runner.run(study_config(), [], FakeAdapter(), make_pool("proxy-in-1"))

        assert manager.opened == []


class TestHappyPath:
    """Test suite for studies without failures."""

    @pytest.mark.asyncio
    async def test_all_queries_succeed(self, store, manager, tmp_path):
        """Test ten successes give ten ordered results and a final checkpoint of 10."""
        adapter = FakeAdapter()
        runner = make_runner(store, manager)

        result = await runner.run(study_config(), make_queries(10), adapter, make_pool("proxy-in-1"))

        assert result.final_state == StudyState.COMPLETED
        assert [r.query_index for r in result.results] == list(range(10))
        assert all(r.success for r in result.results)
        assert result.summary.successful == 10
        assert result.summary.p95_duration_ms == 120
        assert result.recovery_attempts == 0
        assert result.abort_reason is None

        latest = store.load(STUDY_ID)
        assert latest.queries_completed == 10
        assert latest.status == "completed"
        names = sorted(p.name for p in tmp_path.glob("*-checkpoint-*.json"))
        assert names == [
            "google-india-checkpoint-00005.json",
            "google-india-checkpoint-00010.json",
        ]

    @pytest.mark.asyncio
    async def test_checkpoint_infos_returned(self, store, manager):
        """Test every save is reported in StudyResult.checkpoints."""
        runner = make_runner(store, manager)

        result = await runner.run(
            study_config(checkpoint_every=2), make_queries(4), FakeAdapter(), make_pool("proxy-in-1")
        )

        assert [c.queries_completed for c in result.checkpoints] == [2, 4, 4]

    @pytest.mark.asyncio
    async def test_progress_callback(self, store, manager):
        """Test the progress callback receives each completed count."""
        progress = []
        runner = make_runner(store, manager, on_progress=lambda *args: progress.append(args))

        await runner.run(study_config(), make_queries(3), FakeAdapter(), make_pool("proxy-in-1"))

        assert progress == [(STUDY_ID, 1, 3), (STUDY_ID, 2, 3), (STUDY_ID, 3, 3)]

    @pytest.mark.asyncio
    async def test_prompt_transform_applied_at_submit(self, store, manager):
        """Test the location suffix is applied to the submitted and recorded text."""
        adapter = FakeAdapter()
        runner = make_runner(store, manager)

        result = await runner.run(
            study_config(prompt_transform="in India"),
            [Query(0, "best crm?")],
            adapter,
            make_pool("proxy-in-1"),
        )

        assert adapter.calls == [("best crm in India?", "proxy-in-1")]
        assert result.results[0].query == "best crm in India?"

    @pytest.mark.asyncio
    async def test_no_identity_uses_direct(self, store, manager):
        """Test a location without identities runs direct with a warning."""
        runner = make_runner(store, manager)

        result = await runner.run(study_config(), make_queries(2), FakeAdapter(), IdentityPool([]))

        assert result.final_state == StudyState.COMPLETED
        assert result.results[0].identity_name == "direct"
        assert "NO_PROXY_CONFIGURED" in warning_codes(result)

    @pytest.mark.asyncio
    async def test_empty_response_is_success_with_warning(self, store, manager):
        """Test an empty answer is recorded as a success carrying EMPTY_RESPONSE."""
        adapter = FakeAdapter(responses={"query 0": "  "})
        runner = make_runner(store, manager)

        result = await runner.run(study_config(), make_queries(1), adapter, make_pool("proxy-in-1"))

        assert result.results[0].success is True
        assert [w.code for w in result.results[0].warnings] == ["EMPTY_RESPONSE"]

    @pytest.mark.asyncio
    async def test_sessions_closed_and_lease_released(self, store, manager):
        """Test the session is closed and the identity released at the end."""
        pool = make_pool("proxy-in-1")
        runner = make_runner(store, manager)

        await runner.run(study_config(), make_queries(2), FakeAdapter(), pool)

        assert all(handle.closed for handle in manager.opened)
        selection = await pool.acquire("other-study", "in-mum")
        assert selection.identity.name == "proxy-in-1"


class TestFailureHandling:
    """Test suite for per-query failures that do not need recovery."""

    @pytest.mark.asyncio
    async def test_failure_below_threshold_recorded(self, store, manager):
        """Test a transient failure is recorded and the runner moves on."""
        adapter = FakeAdapter(failures={"query 2": [RuntimeError("ECONNRESET")]})
        runner = make_runner(store, manager)

        result = await runner.run(study_config(), make_queries(5), adapter, make_pool("proxy-in-1"))

        assert result.final_state == StudyState.COMPLETED
        assert [r.query_index for r in result.results] == list(range(5))
        failed = result.results[2]
        assert failed.success is False
        assert failed.failure_category == FailureCategory.NETWORK
        assert failed.error == "ECONNRESET"
        assert result.recovery_attempts == 0
        assert result.failure_summary.failed_query_indices == [2]

    @pytest.mark.asyncio
    async def test_failure_logged_with_study_context(self, store, manager, caplog):
        """Test failed queries are logged with the study id and query context."""
        adapter = FakeAdapter(failures={"query 1": [RuntimeError("ECONNRESET")]})
        runner = make_runner(store, manager)

        with caplog.at_level(logging.WARNING, logger="resilient_query_engine.engine.runner"):
            await runner.run(study_config(), make_queries(2), adapter, make_pool("proxy-in-1"))

        record = next(r for r in caplog.records if "query 1 failed" in r.getMessage())
        assert record.study_id == STUDY_ID
        assert record.context == {
            "query_index": 1,
            "category": "network",
            "identity": "proxy-in-1",
        }

    @pytest.mark.asyncio
    async def test_skip_policy_does_not_recover(self, store, manager):
        """Test content-policy failures are recorded without recovery."""
        adapter = FakeAdapter(
            failures={
                "query 0": [SurfaceResponseError("Gemini blocked content due to safety policy")],
                "query 1": [SurfaceResponseError("Gemini blocked content due to safety policy")],
                "query 2": [SurfaceResponseError("Gemini blocked content due to safety policy")],
            }
        )
        runner = make_runner(store, manager)

        result = await runner.run(
            study_config(max_consecutive_failures=1), make_queries(4), adapter, make_pool("proxy-in-1")
        )

        assert result.final_state == StudyState.COMPLETED
        assert result.recovery_attempts == 0
        assert [r.failure_category for r in result.results[:3]] == [FailureCategory.CONTENT_POLICY] * 3
        assert result.results[3].success is True

    @pytest.mark.asyncio
    async def test_timeout_is_classified(self, store, manager):
        """Test a submit exceeding timeout_ms is recorded as a timeout failure."""
        runner = make_runner(store, manager)

        result = await runner.run(
            study_config(timeout_ms=20), make_queries(1), SlowAdapter(), make_pool("proxy-in-1")
        )

        assert result.results[0].success is False
        assert result.results[0].failure_category == FailureCategory.TIMEOUT


class TestRecovery:
    """Test suite for recovery episodes."""

    @pytest.mark.asyncio
    async def test_threshold_triggers_rotation(self, store, manager):
        """Test consecutive failures rotate to a new identity and retry the index."""
        adapter = FakeAdapter(identity_errors={"proxy-in-1": RuntimeError("ECONNRESET")})
        runner = make_runner(store, manager)

        result = await runner.run(
            study_config(max_consecutive_failures=2),
            make_queries(5),
            adapter,
            make_pool("proxy-in-1", "proxy-in-2"),
        )

        assert result.final_state == StudyState.COMPLETED
        assert result.recovery_attempts == 1
        assert [r.query_index for r in result.results] == list(range(5))
        assert result.results[0].success is False
        assert result.results[1].success is True
        assert result.results[1].attempt == 2
        assert result.results[1].identity_name == "proxy-in-2"
        assert "SESSION_RECOVERED" in warning_codes(result)

    @pytest.mark.asyncio
    async def test_blocked_rotates_immediately(self, store, manager):
        """Test a challenge page rotates on the first failure."""
        adapter = FakeAdapter(
            identity_errors={"proxy-in-1": SurfaceBlockedError("Challenge page detected")}
        )
        runner = make_runner(store, manager)

        result = await runner.run(
            study_config(), make_queries(3), adapter, make_pool("proxy-in-1", "proxy-in-2")
        )

        assert result.final_state == StudyState.COMPLETED
        assert all(r.success for r in result.results)
        assert result.results[0].attempt == 2
        assert result.recovery_attempts == 1

    @pytest.mark.asyncio
    async def test_recovery_is_bounded(self, store, manager):
        """Test a surface that never recovers aborts after max_recovery_attempts."""
        blocked = SurfaceBlockedError("Challenge page detected")
        adapter = FakeAdapter(identity_errors={"proxy-in-1": blocked, "proxy-in-2": blocked})
        runner = make_runner(store, manager)

        result = await runner.run(
            study_config(max_recovery_attempts=3),
            make_queries(5),
            adapter,
            make_pool("proxy-in-1", "proxy-in-2"),
        )

        assert result.final_state == StudyState.ABORTED
        assert result.recovery_attempts == 3
        assert "Recovery limit reached" in result.abort_reason
        assert result.results == []
        assert len(adapter.calls) == 4
        assert "STUDY_ABORTED" in warning_codes(result)

        latest = store.load(STUDY_ID)
        assert latest.status == "aborted"
        assert latest.recovery_attempts == 3
        assert latest.queries_completed == 0

    @pytest.mark.asyncio
    async def test_initial_session_failure_recovers(self, store):
        """Test a session that fails to open counts as a recovery attempt."""
        manager = FakeSessionManager(fail_identities={"proxy-in-1"})
        runner = make_runner(store, manager)

        result = await runner.run(
            study_config(), make_queries(2), FakeAdapter(), make_pool("proxy-in-1", "proxy-in-2")
        )

        assert result.final_state == StudyState.COMPLETED
        assert result.recovery_attempts == 1
        assert result.results[0].identity_name == "proxy-in-2"
        assert "PROXY_SESSION_FAILED" in warning_codes(result)

    @pytest.mark.asyncio
    async def test_no_session_can_open(self, store):
        """Test a run where no identity can open aborts within the budget."""
        manager = FakeSessionManager(fail_identities={"proxy-in-1", "proxy-in-2"})
        runner = make_runner(store, manager)

        result = await runner.run(
            study_config(max_recovery_attempts=2),
            make_queries(2),
            FakeAdapter(),
            make_pool("proxy-in-1", "proxy-in-2"),
        )

        assert result.final_state == StudyState.ABORTED
        assert result.recovery_attempts == 2
        assert result.results == []


class TestOperatorEscalation:
    """Test suite for unchanged-IP escalation and operator decisions."""

    def ip_verifier(self):
        # Both proxies exit through the same address
        return FakeIPVerifier({"proxy-in-1": "198.51.100.7", "proxy-in-2": "198.51.100.7"})

    @pytest.mark.asyncio
    async def test_unchanged_ip_then_operator_abort(self, store, manager):
        """Test rotating to an identity with the same IP blocks it and asks the operator."""
        operator = ScriptedOperatorChannel()
        adapter = FakeAdapter(
            identity_errors={"proxy-in-1": SurfaceBlockedError("Challenge page detected")}
        )
        runner = make_runner(store, manager, operator=operator, ip_verifier=self.ip_verifier())

        result = await runner.run(
            study_config(verify_ip=True),
            make_queries(3),
            adapter,
            make_pool("proxy-in-1", "proxy-in-2"),
        )

        assert result.final_state == StudyState.ABORTED
        assert result.abort_reason.startswith("Operator aborted")
        assert result.recovery_attempts == 1
        assert "IP_NOT_CHANGED" in warning_codes(result)
        assert len(operator.requests) == 1
        context = operator.requests[0]
        assert context.study_id == STUDY_ID
        assert context.query_index == 0
        assert context.blocked_identities == ["proxy-in-1", "proxy-in-2"]
        assert all(handle.closed for handle in manager.opened)

    @pytest.mark.asyncio
    async def test_single_identity_reset_then_operator_abort(self, store, manager):
        """Test a lone identity is reused after a pool reset, then blocked on the same IP."""
        operator = ScriptedOperatorChannel()
        network_error = RuntimeError("ECONNRESET")
        adapter = FakeAdapter(
            failures={f"query {i}": [network_error] for i in (2, 3, 4)}
        )
        runner = make_runner(store, manager, operator=operator, ip_verifier=self.ip_verifier())

        result = await runner.run(
            study_config(verify_ip=True, max_consecutive_failures=3, max_recovery_attempts=2),
            make_queries(8),
            adapter,
            make_pool("proxy-in-1"),
        )

        assert result.final_state == StudyState.ABORTED
        assert result.abort_reason.startswith("Operator aborted")
        assert result.recovery_attempts == 1
        assert result.queries_completed == 4
        assert [r.success for r in result.results] == [True, True, False, False]
        assert warning_codes(result) == ["IP_NOT_CHANGED", "STUDY_ABORTED"]
        assert [handle.identity.name for handle in manager.opened] == ["proxy-in-1", "proxy-in-1"]
        assert len(operator.requests) == 1
        assert operator.requests[0].query_index == 4
        assert operator.requests[0].blocked_identities == ["proxy-in-1"]

    @pytest.mark.asyncio
    async def test_operator_skip_completes_remaining(self, store, manager):
        """Test an operator skip marks the remaining indices failed and completes."""
        operator = ScriptedOperatorChannel([OperatorDecision.SKIP])
        adapter = FakeAdapter(failures={"query 2": [SurfaceBlockedError("Challenge page detected")]})
        runner = make_runner(store, manager, operator=operator, ip_verifier=self.ip_verifier())

        result = await runner.run(
            study_config(verify_ip=True),
            make_queries(4),
            adapter,
            make_pool("proxy-in-1", "proxy-in-2"),
        )

        assert result.final_state == StudyState.COMPLETED
        assert [r.query_index for r in result.results] == [0, 1, 2, 3]
        assert [r.success for r in result.results] == [True, True, False, False]
        assert result.results[3].error == SKIPPED_BY_OPERATOR
        assert "OPERATOR_SKIPPED" in warning_codes(result)
        assert store.load(STUDY_ID).queries_completed == 4

    @pytest.mark.asyncio
    async def test_operator_continue_retries(self, store, manager):
        """Test an operator continue clears blocks and retries the same index."""
        operator = ScriptedOperatorChannel([OperatorDecision.CONTINUE])
        adapter = FakeAdapter(failures={"query 2": [SurfaceBlockedError("Challenge page detected")]})
        runner = make_runner(store, manager, operator=operator, ip_verifier=self.ip_verifier())

        result = await runner.run(
            study_config(verify_ip=True),
            make_queries(4),
            adapter,
            make_pool("proxy-in-1", "proxy-in-2"),
        )

        assert result.final_state == StudyState.COMPLETED
        assert all(r.success for r in result.results)
        assert result.results[2].attempt == 2
        assert result.results[2].identity_name == "proxy-in-1"

    @pytest.mark.asyncio
    async def test_ip_mismatch_is_warning_only(self, store, manager):
        """Test an egress IP in the wrong country warns but still runs."""
        verifier = FakeIPVerifier({"proxy-in-1": "198.51.100.7"}, country="US")
        runner = make_runner(store, manager, ip_verifier=verifier)

        result = await runner.run(
            study_config(verify_ip=True), make_queries(2), FakeAdapter(), make_pool("proxy-in-1")
        )

        assert result.final_state == StudyState.COMPLETED
        assert "IP_MISMATCH" in warning_codes(result)


class TestResume:
    """Test suite for resuming from checkpoints."""

    def save_prefix(self, store, count: int, total: int, text: str = "query {i}"):
        results = [
            QueryResult(
                query_index=i,
                query=text.format(i=i),
                response=f"old answer {i}",
                success=True,
                duration_ms=50,
            )
            for i in range(count)
        ]
        store.save(STUDY_ID, Checkpoint(study_id=STUDY_ID, completed_results=results, total_queries=total))

    @pytest.mark.asyncio
    async def test_resume_skips_completed_prefix(self, store, manager):
        """Test only indices after the checkpoint are submitted."""
        self.save_prefix(store, 3, 6)
        adapter = FakeAdapter()
        runner = make_runner(store, manager)

        result = await runner.run(study_config(), make_queries(6), adapter, make_pool("proxy-in-1"))

        assert [text for text, _identity in adapter.calls] == ["query 3", "query 4", "query 5"]
        assert [r.query_index for r in result.results] == list(range(6))
        assert result.results[0].response == "old answer 0"
        assert result.results[3].response == "answer to query 3"

    @pytest.mark.asyncio
    async def test_repeated_load_gives_same_resume_offset(self, store, manager):
        """Test loading the checkpoint again does not move the resume point."""
        self.save_prefix(store, 2, 4)
        assert store.load(STUDY_ID).to_dict() == store.load(STUDY_ID).to_dict()
        adapter = FakeAdapter()
        runner = make_runner(store, manager)

        result = await runner.run(study_config(), make_queries(4), adapter, make_pool("proxy-in-1"))

        assert [text for text, _identity in adapter.calls] == ["query 2", "query 3"]
        assert [r.query_index for r in result.results] == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_resume_completed_study(self, store, manager):
        """Test a fully checkpointed study opens no session."""
        self.save_prefix(store, 3, 3)
        runner = make_runner(store, manager)

        result = await runner.run(study_config(), make_queries(3), FakeAdapter(), make_pool("proxy-in-1"))

        assert result.final_state == StudyState.COMPLETED
        assert manager.opened == []
        assert len(result.results) == 3

    @pytest.mark.asyncio
    async def test_resume_total_mismatch(self, store, manager):
        """Test a checkpoint for a different query count is rejected."""
        self.save_prefix(store, 2, 5)
        runner = make_runner(store, manager)

        with pytest.raises(ResumeError, match="covers 5 queries"):
            await runner.run(study_config(), make_queries(6), FakeAdapter(), make_pool("proxy-in-1"))

    @pytest.mark.asyncio
    async def test_resume_text_mismatch(self, store, manager):
        """Test a checkpoint whose query text differs is rejected."""
        self.save_prefix(store, 2, 4, text="other {i}")
        runner = make_runner(store, manager)

        with pytest.raises(ResumeError, match="does not match query 0"):
            await runner.run(study_config(), make_queries(4), FakeAdapter(), make_pool("proxy-in-1"))

    @pytest.mark.asyncio
    async def test_resume_after_abort_is_unchanged_prefix(self, store):
        """Test an aborted run resumes with the same prefix and finishes the rest."""
        blocked = SurfaceBlockedError("Challenge page detected")
        first = FakeAdapter(failures={"query 2": [blocked] * 10})
        aborted = await make_runner(store, FakeSessionManager()).run(
            study_config(max_recovery_attempts=1), make_queries(5), first, make_pool("proxy-in-1")
        )
        assert aborted.final_state == StudyState.ABORTED
        assert len(aborted.results) == 2

        second = FakeAdapter()
        resumed = await make_runner(store, FakeSessionManager()).run(
            study_config(), make_queries(5), second, make_pool("proxy-in-1")
        )

        assert resumed.final_state == StudyState.COMPLETED
        assert [text for text, _identity in second.calls] == ["query 2", "query 3", "query 4"]
        assert [r.response for r in resumed.results[:2]] == [
            r.response for r in aborted.results
        ]


class TestCancellation:
    """Test suite for external cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_mid_study(self, store, manager):
        """Test cancellation stops after the current query and checkpoints."""
        cancel = CancellationToken()

        def on_progress(study_id, completed, total):
            if completed == 2:
                cancel.cancel("interrupted")

        runner = make_runner(store, manager, cancel=cancel, on_progress=on_progress)

        result = await runner.run(study_config(), make_queries(5), FakeAdapter(), make_pool("proxy-in-1"))

        assert result.final_state == StudyState.ABORTED
        assert result.abort_reason == "Cancelled: interrupted"
        assert len(result.results) == 2
        latest = store.load(STUDY_ID)
        assert latest.queries_completed == 2
        assert latest.status == "aborted"


class TestSessionSurfaces:
    """Test suite for challenge handling on browser-session surfaces."""

    @pytest.mark.asyncio
    async def test_captcha_solved_before_submit(self, store, manager):
        """Test a solved CAPTCHA lets the query run and is recorded as a warning."""
        detector = FakeBlockDetector([BlockDetection(detected=True, indicator="recaptcha")])
        resolver = MagicMock()
        resolver.resolve = AsyncMock(return_value=True)
        adapter = FakeAdapter(kind="session")
        runner = make_runner(store, manager, block_detector=detector, captcha_resolver=resolver)

        result = await runner.run(study_config(), make_queries(1), adapter, make_pool("proxy-in-1"))

        assert result.results[0].success is True
        assert [w.code for w in result.results[0].warnings] == ["CAPTCHA_SOLVED"]
        resolver.resolve.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unresolved_challenge_never_submits(self, store, manager):
        """Test a persistent challenge page rotates and finally aborts without submitting."""
        adapter = FakeAdapter(kind="session")
        runner = make_runner(store, manager, block_detector=FakeBlockDetector(always=True))

        result = await runner.run(
            study_config(max_recovery_attempts=1), make_queries(2), adapter, make_pool("proxy-in-1")
        )

        assert result.final_state == StudyState.ABORTED
        assert adapter.calls == []
        assert "captcha_required" in result.abort_reason

    @pytest.mark.asyncio
    async def test_challenge_after_submit(self, store, manager):
        """Test a challenge page appearing after submit fails the attempt."""
        detector = FakeBlockDetector(
            [
                BlockDetection(detected=False),
                BlockDetection(detected=True, indicator="sorry/index"),
            ]
        )
        adapter = FakeAdapter(kind="session")
        runner = make_runner(store, manager, block_detector=detector)

        result = await runner.run(
            study_config(), make_queries(1), adapter, make_pool("proxy-in-1", "proxy-in-2")
        )

        assert result.final_state == StudyState.COMPLETED
        assert result.recovery_attempts == 1
        assert result.results[0].identity_name == "proxy-in-2"


class TestStudyResultSerialization:
    """Test suite for the written result document."""

    @pytest.mark.asyncio
    async def test_to_dict_is_json_serializable(self, store, manager):
        """Test the StudyResult document serializes to JSON."""
        adapter = FakeAdapter(failures={"query 1": [RuntimeError("ECONNRESET")]})
        runner = make_runner(store, manager)

        result = await runner.run(study_config(), make_queries(3), adapter, make_pool("proxy-in-1"))
        data = json.loads(json.dumps(result.to_dict()))

        assert data["study_id"] == STUDY_ID
        assert data["final_state"] == "completed"
        assert len(data["results"]) == 3
