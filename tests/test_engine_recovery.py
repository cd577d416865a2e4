"""
Tests for engine.recovery module.

Tests cover:
- open_session() IP verification warnings
- Budget check before each attempt (never exceeds max_recovery_attempts)
- Cancellation during recovery
- Escalation to the operator when no identity is left
- Operator continue retried when the fresh session fails to open
- Cancellation while the operator has not answered
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from resilient_query_engine.config.schema import DelaySettings, StudyConfig
from resilient_query_engine.engine.identity_pool import IdentityPool
from resilient_query_engine.engine.ip_verifier import IPVerifier
from resilient_query_engine.engine.models import (
    EgressIdentity,
    IPInfo,
    OperatorDecision,
    RecoveryState,
    SessionHandle,
    StudyState,
)
from resilient_query_engine.engine.operator import ScriptedOperatorChannel
from resilient_query_engine.engine.pacing import CancellationToken
from resilient_query_engine.engine.recovery import RecoveryController
from resilient_query_engine.exceptions import SessionOpenError

ZERO_DELAYS = DelaySettings(
    base_ms=0, after_failure_ms=0, variance=0.0, recovery_cooldown_ms=0, between_studies_ms=0
)


class StubSessionManager:
    kind = "http"

    def __init__(self, failures=0):
        # Number of opens that fail before one succeeds
        self.failures = failures
        self.opened = []
        self.closed = []

    async def open(self, identity, warm_up):
        if self.failures > 0:
            self.failures -= 1
            raise SessionOpenError(f"Failed to open session for {identity.label}")
        handle = SessionHandle(identity=identity, kind="http", session_key=identity.name)
        self.opened.append(handle)
        return handle

    async def close(self, handle):
        self.closed.append(handle)

    async def shutdown(self):
        return None


def make_controller(pool, manager=None, operator=None, ip_verifier=None, cancel=None, **overrides):
    settings = {
        "study_id": "google-india",
        "surface_id": "fake",
        "expected_location": "in-mum",
        "warm_up": False,
        "verify_ip": ip_verifier is not None,
        "delays": ZERO_DELAYS,
        "max_recovery_attempts": 3,
    }
    settings.update(overrides)
    warnings = []
    controller = RecoveryController(
        study=StudyConfig(**settings),
        state=RecoveryState(),
        pool=pool,
        session_manager=manager or StubSessionManager(),
        operator=operator or ScriptedOperatorChannel(),
        ip_verifier=ip_verifier,
        cancel=cancel,
        total_queries=10,
        on_warning=warnings.append,
    )
    return controller, warnings


def identities(*names):
    return [EgressIdentity(name, "in-mum", f"http://{name}.example:8000") for name in names]


class TestOpenSession:
    """Test suite for RecoveryController.open_session()."""

    @pytest.mark.asyncio
    async def test_unverified_ip_warns(self):
        """Test a failed IP lookup produces an IP_UNVERIFIED warning."""
        verifier = IPVerifier()
        verifier.lookup = AsyncMock(side_effect=RuntimeError("lookup down"))
        controller, warnings = make_controller(IdentityPool([]), ip_verifier=verifier)

        handle, verification = await controller.open_session(identities("proxy-in-1")[0], 0)

        assert handle.identity.name == "proxy-in-1"
        assert verification.confidence == "unknown"
        assert [w.code for w in warnings] == ["IP_UNVERIFIED"]

    @pytest.mark.asyncio
    async def test_verification_skipped_when_disabled(self):
        """Test verify_ip=False skips the lookup."""
        verifier = IPVerifier()
        verifier.lookup = AsyncMock()
        controller, warnings = make_controller(
            IdentityPool([]), ip_verifier=verifier, verify_ip=False
        )

        _handle, verification = await controller.open_session(identities("proxy-in-1")[0])

        assert verification is None
        verifier.lookup.assert_not_awaited()
        assert warnings == []


class TestRecover:
    """Test suite for RecoveryController.recover()."""

    @pytest.mark.asyncio
    async def test_successful_rotation(self):
        """Test recovery switches to the next identity and resets the streak."""
        pool = IdentityPool(identities("proxy-in-1", "proxy-in-2"))
        manager = StubSessionManager()
        controller, warnings = make_controller(pool, manager)
        controller.state.consecutive_failures = 3
        current = SessionHandle(identity=pool.identities[0], kind="http", session_key="old")

        outcome = await controller.recover(current, 4, "timeout: slow")

        assert outcome.state == StudyState.RUNNING
        assert outcome.handle.identity.name == "proxy-in-2"
        assert controller.state.recovery_attempts == 1
        assert controller.state.consecutive_failures == 0
        assert controller.state.blocked_identities == {"proxy-in-1"}
        assert manager.closed == [current]
        assert [w.code for w in warnings] == ["SESSION_RECOVERED"]

    @pytest.mark.asyncio
    async def test_budget_checked_before_attempt(self):
        """Test an exhausted budget aborts without consuming another attempt."""
        pool = IdentityPool(identities("proxy-in-1", "proxy-in-2"))
        controller, _warnings = make_controller(pool)
        controller.state.recovery_attempts = 3

        outcome = await controller.recover(None, 7, "network: reset")

        assert outcome.state == StudyState.ABORTED
        assert controller.state.recovery_attempts == 3
        assert "Recovery limit reached (3 attempts) at query 7" in outcome.reason
        assert controller.state.state == StudyState.ABORTED

    @pytest.mark.asyncio
    async def test_session_failures_consume_attempts(self):
        """Test failed session opens count against the budget."""
        pool = IdentityPool(identities("proxy-in-1", "proxy-in-2"))
        manager = StubSessionManager(failures=10)
        controller, warnings = make_controller(pool, manager)

        outcome = await controller.recover(None, 0, "initial", failed_identity=pool.identities[0])

        assert outcome.state == StudyState.ABORTED
        assert controller.state.recovery_attempts == 3
        assert [w.code for w in warnings].count("PROXY_SESSION_FAILED") == 3

    @pytest.mark.asyncio
    async def test_cancelled(self):
        """Test recovery stops immediately when cancelled."""
        cancel = CancellationToken()
        cancel.cancel("shutdown")
        controller, _warnings = make_controller(
            IdentityPool(identities("proxy-in-1")), cancel=cancel
        )

        outcome = await controller.recover(None, 0, "timeout")

        assert outcome.state == StudyState.ABORTED
        assert outcome.reason == "Cancelled: shutdown"
        assert controller.state.recovery_attempts == 0

    @pytest.mark.asyncio
    async def test_no_identities_asks_operator(self):
        """Test a location without any identity escalates to the operator."""
        operator = ScriptedOperatorChannel()
        controller, _warnings = make_controller(IdentityPool([]), operator=operator)

        outcome = await controller.recover(None, 2, "captcha_required: challenge")

        assert outcome.state == StudyState.ABORTED
        assert outcome.decision == OperatorDecision.ABORT
        assert "No identity available for in-mum" in operator.requests[0].reason
        assert operator.requests[0].total_queries == 10

    @pytest.mark.asyncio
    async def test_unchanged_ip_with_spare_identity_keeps_rotating(self):
        """Test an unchanged IP blocks the identity and tries the next one."""
        pool = IdentityPool(identities("proxy-in-1", "proxy-in-2", "proxy-in-3"))
        verifier = IPVerifier()
        ips = {"proxy-in-2": "192.0.2.1", "proxy-in-3": "192.0.2.99"}

        async def lookup(handle):
            return IPInfo(ip=ips[handle.identity.name], country="IN")

        verifier.lookup = lookup
        controller, warnings = make_controller(pool, ip_verifier=verifier)
        current = SessionHandle(
            identity=pool.identities[0],
            kind="http",
            session_key="old",
            verified_ip=IPInfo(ip="192.0.2.1", country="IN"),
        )

        outcome = await controller.recover(current, 0, "captcha_required")

        assert outcome.state == StudyState.RUNNING
        assert outcome.handle.identity.name == "proxy-in-3"
        assert controller.state.recovery_attempts == 2
        assert controller.state.blocked_identities == {"proxy-in-1", "proxy-in-2"}
        assert "IP_NOT_CHANGED" in [w.code for w in warnings]


class TestAwaitOperator:
    """Test suite for operator decisions inside recovery."""

    @pytest.mark.asyncio
    async def test_continue_retries_after_session_failure(self):
        """Test a continue whose session fails asks the operator again."""
        operator = ScriptedOperatorChannel([OperatorDecision.CONTINUE, OperatorDecision.CONTINUE])
        manager = StubSessionManager(failures=1)
        controller, warnings = make_controller(IdentityPool([]), manager, operator=operator)

        outcome = await controller.recover(None, 1, "network")

        assert outcome.state == StudyState.RUNNING
        assert outcome.handle.identity.is_direct
        assert len(operator.requests) == 2
        assert "Session failed after operator continue" in operator.requests[1].reason
        assert "PROXY_SESSION_FAILED" in [w.code for w in warnings]

    @pytest.mark.asyncio
    async def test_skip(self):
        """Test an operator skip completes the study."""
        operator = ScriptedOperatorChannel([OperatorDecision.SKIP])
        controller, _warnings = make_controller(IdentityPool([]), operator=operator)

        outcome = await controller.recover(None, 5, "network")

        assert outcome.state == StudyState.COMPLETED
        assert outcome.decision == OperatorDecision.SKIP
        assert controller.state.state == StudyState.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_while_awaiting_operator(self):
        """Test cancellation ends the study even if the operator never answers."""

        class SilentOperator:
            def __init__(self):
                self.cancelled = False

            async def request_decision(self, context):
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    self.cancelled = True
                    raise

        operator = SilentOperator()
        cancel = CancellationToken()
        controller, _warnings = make_controller(
            IdentityPool([]), operator=operator, cancel=cancel
        )

        task = asyncio.create_task(controller.recover(None, 0, "captcha_required"))
        await asyncio.sleep(0.01)
        assert controller.state.state == StudyState.AWAITING_OPERATOR

        cancel.cancel("interrupted by operator (SIGINT)")
        outcome = await asyncio.wait_for(task, timeout=1.0)

        assert outcome.state == StudyState.ABORTED
        assert outcome.reason == "Cancelled: interrupted by operator (SIGINT)"
        assert controller.state.state == StudyState.ABORTED
        assert operator.cancelled is True
