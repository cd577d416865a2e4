"""
Recovery controller: bounded, identity-rotating recovery for one study.

State machine:

    RUNNING -> RECOVERING -> RUNNING            (new identity, new IP)
                          -> RECOVERING         (IP unchanged or session failed,
                                                 another identity available)
                          -> AWAITING_OPERATOR  (no identity left)
                          -> ABORTED            (recovery budget exhausted)
    AWAITING_OPERATOR -> RUNNING | COMPLETED (skip) | ABORTED

Every entry into RECOVERING consumes one recovery attempt. The budget is
checked before the attempt is taken, so recovery_attempts never exceeds
max_recovery_attempts.
"""

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass

from ..config.schema import StudyConfig
from ..exceptions import SessionOpenError
from ..utils.logging import log_with_context
from .identity_pool import IdentityPool
from .ip_verifier import IPVerifier
from .models import (
    EgressIdentity,
    ExecutionWarning,
    IPVerification,
    OperatorDecision,
    RecoveryState,
    SessionHandle,
    StudyState,
    WarningCode,
)
from .operator import OperatorChannel, OperatorContext
from .pacing import CancellationToken
from .session import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class RecoveryOutcome:
    """
    Result of a recovery episode.

    Attributes:
        state: RUNNING (retry the same index), COMPLETED (operator skipped
            the remainder) or ABORTED
        handle: Session to continue with (None when none is open)
        decision: Operator decision, if the operator was asked
        reason: Abort or skip reason
    """

    state: StudyState
    handle: SessionHandle | None
    decision: OperatorDecision | None = None
    reason: str | None = None


class RecoveryController:
    """
    Drives recovery for one study worker.

    Attributes:
        study: Study settings (location, bounds, delays)
        state: RecoveryState shared with the runner
    """

    def __init__(
        self,
        study: StudyConfig,
        state: RecoveryState,
        pool: IdentityPool,
        session_manager: SessionManager,
        operator: OperatorChannel,
        ip_verifier: IPVerifier | None = None,
        cancel: CancellationToken | None = None,
        total_queries: int = 0,
        on_warning: Callable[[ExecutionWarning], None] | None = None,
        rng: random.Random | None = None,
    ):
        self.study = study
        self.state = state
        self.pool = pool
        self.session_manager = session_manager
        self.operator = operator
        self.ip_verifier = ip_verifier
        self.cancel = cancel or CancellationToken()
        self.total_queries = total_queries
        self._on_warning = on_warning
        self._rng = rng or random.Random()

    def _warn(
        self,
        code: WarningCode,
        message: str,
        severity: str = "warning",
        query_index: int | None = None,
        **context,
    ) -> None:
        warning = ExecutionWarning(
            code=code.value,
            message=message,
            severity=severity,
            query_index=query_index,
            context=context,
        )
        if self._on_warning is not None:
            self._on_warning(warning)

    # ------------------------------------------------------------------
    # Session opening
    # ------------------------------------------------------------------

    async def open_session(
        self, identity: EgressIdentity, query_index: int | None = None
    ) -> tuple[SessionHandle, IPVerification | None]:
        """
        Open a session with warm-up and verify its egress IP.

        Raises:
            SessionOpenError: If the session cannot be opened
        """
        handle = await self.session_manager.open(identity, warm_up=self.study.warm_up)
        verification = None
        if self.study.verify_ip and self.ip_verifier is not None:
            verification = await self.ip_verifier.verify(handle, self.study.expected_location)
            if verification.confidence == "unknown":
                self._warn(
                    WarningCode.IP_UNVERIFIED,
                    verification.warning or "Egress IP could not be verified",
                    query_index=query_index,
                    identity=identity.name,
                )
            elif not verification.verified:
                self._warn(
                    WarningCode.IP_MISMATCH,
                    verification.warning or "Egress IP country mismatch",
                    query_index=query_index,
                    identity=identity.name,
                    ip=verification.ip,
                    country=verification.country,
                    expected_country=verification.expected_country,
                )
        return handle, verification

    async def _close(self, handle: SessionHandle | None) -> None:
        if handle is not None:
            await self.session_manager.close(handle)

    # ------------------------------------------------------------------
    # Recovery episode
    # ------------------------------------------------------------------

    def _abort(self, handle: SessionHandle | None, reason: str) -> RecoveryOutcome:
        self.state.state = StudyState.ABORTED
        log_with_context(
            logger,
            logging.ERROR,
            f"Study {self.study.study_id} aborted: {reason}",
            context={"recovery_attempts": self.state.recovery_attempts},
            study_id=self.study.study_id,
        )
        return RecoveryOutcome(state=StudyState.ABORTED, handle=handle, reason=reason)

    async def recover(
        self,
        handle: SessionHandle | None,
        query_index: int,
        trigger: str,
        failed_identity: EgressIdentity | None = None,
    ) -> RecoveryOutcome:
        """
        Run one recovery episode.

        Args:
            handle: Current session (None if it could not be opened)
            query_index: Index that will be retried after recovery
            trigger: Failure description that caused recovery
            failed_identity: Identity to abandon when handle is None

        Returns:
            RecoveryOutcome; the caller owns outcome.handle
        """
        study_id = self.study.study_id
        location = self.study.expected_location
        abandon = handle.identity if handle is not None else failed_identity
        previous_ip = None
        if handle is not None and handle.verified_ip is not None and handle.verified_ip.is_known:
            previous_ip = handle.verified_ip.ip
        allow_reset = True
        current = handle

        while True:
            if self.cancel.is_cancelled:
                return self._abort(current, f"Cancelled: {self.cancel.reason}")

            if self.state.recovery_attempts >= self.study.max_recovery_attempts:
                return self._abort(
                    current,
                    f"Recovery limit reached ({self.study.max_recovery_attempts} attempts) "
                    f"at query {query_index}; last failure: {trigger}",
                )

            self.state.recovery_attempts += 1
            self.state.state = StudyState.RECOVERING
            log_with_context(
                logger,
                logging.WARNING,
                f"Study {study_id} recovering (attempt "
                f"{self.state.recovery_attempts}/{self.study.max_recovery_attempts}) "
                f"at query {query_index}: {trigger}",
                context={"query_index": query_index, "trigger": trigger},
                study_id=study_id,
            )

            selection = await self.pool.rotate(study_id, location, abandon, allow_reset=allow_reset)
            if abandon is not None and not abandon.is_direct:
                self.state.blocked_identities.add(abandon.name)
            if selection.pool_reset:
                allow_reset = False
                logger.info(f"Identity pool for {location} reset during recovery")

            if selection.identity is None:
                return await self._await_operator(
                    current, query_index, f"No identity available for {location} ({trigger})"
                )

            await self._close(current)
            current = None

            try:
                new_handle, verification = await self.open_session(selection.identity, query_index)
            except SessionOpenError as e:
                self._warn(
                    WarningCode.PROXY_SESSION_FAILED,
                    str(e),
                    query_index=query_index,
                    identity=selection.identity.name,
                )
                abandon = selection.identity
                continue

            new_ip = verification.ip if verification is not None else None
            if previous_ip is not None and new_ip == previous_ip:
                await self.pool.mark_blocked(selection.identity)
                self.state.blocked_identities.add(selection.identity.name)
                self._warn(
                    WarningCode.IP_NOT_CHANGED,
                    f"Egress IP {new_ip} unchanged after rotating to {selection.identity.label}",
                    query_index=query_index,
                    identity=selection.identity.name,
                    ip=new_ip,
                )
                current = new_handle
                abandon = selection.identity
                allow_reset = False
                if await self.pool.available_count(location) > 0:
                    continue
                return await self._await_operator(
                    current,
                    query_index,
                    f"Egress IP unchanged after rotation and no other identity for {location}",
                )

            self.state.consecutive_failures = 0
            self._warn(
                WarningCode.SESSION_RECOVERED,
                f"Recovered with {selection.identity.label}",
                severity="info",
                query_index=query_index,
                identity=selection.identity.name,
                ip=new_ip,
            )
            cooldown = self.study.delays.recovery_cooldown_ms / 1000.0
            if await self.cancel.sleep(cooldown):
                return self._abort(new_handle, f"Cancelled: {self.cancel.reason}")

            self.state.state = StudyState.RUNNING
            log_with_context(
                logger,
                logging.INFO,
                f"Study {study_id} resumed on {selection.identity.label}",
                context={"identity": selection.identity.name, "ip": new_ip},
                study_id=study_id,
            )
            return RecoveryOutcome(state=StudyState.RUNNING, handle=new_handle)

    async def _request_decision(self, context: OperatorContext) -> OperatorDecision | None:
        """Ask the operator, returning None if the study is cancelled first."""
        if self.cancel.is_cancelled:
            return None
        decision_task = asyncio.ensure_future(self.operator.request_decision(context))
        cancel_task = asyncio.ensure_future(self.cancel.wait())
        try:
            await asyncio.wait({decision_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
        if decision_task.done():
            return decision_task.result()
        decision_task.cancel()
        logger.warning(
            f"Study {context.study_id} cancelled while awaiting operator: {self.cancel.reason}"
        )
        return None

    async def _await_operator(
        self, handle: SessionHandle | None, query_index: int, reason: str
    ) -> RecoveryOutcome:
        study_id = self.study.study_id
        location = self.study.expected_location

        while True:
            self.state.state = StudyState.AWAITING_OPERATOR
            log_with_context(
                logger,
                logging.WARNING,
                f"Study {study_id} awaiting operator: {reason}",
                context={"query_index": query_index},
                study_id=study_id,
            )
            context = OperatorContext(
                study_id=study_id,
                expected_location=location,
                reason=reason,
                query_index=query_index,
                total_queries=self.total_queries,
                recovery_attempts=self.state.recovery_attempts,
                blocked_identities=sorted(self.pool.blocked_names),
            )
            decision = await self._request_decision(context)
            if decision is None:
                return self._abort(handle, f"Cancelled: {self.cancel.reason}")

            if decision == OperatorDecision.ABORT:
                outcome = self._abort(handle, f"Operator aborted: {reason}")
                outcome.decision = decision
                return outcome

            if decision == OperatorDecision.SKIP:
                self.state.state = StudyState.COMPLETED
                return RecoveryOutcome(
                    state=StudyState.COMPLETED,
                    handle=handle,
                    decision=decision,
                    reason=f"Operator skipped remaining queries: {reason}",
                )

            await self.pool.reset_blocks(location)
            self.state.blocked_identities.clear()
            selection = await self.pool.acquire(study_id, location)
            identity = selection.identity or EgressIdentity.direct(location)

            await self._close(handle)
            handle = None
            try:
                handle, _verification = await self.open_session(identity, query_index)
            except SessionOpenError as e:
                self._warn(
                    WarningCode.PROXY_SESSION_FAILED,
                    str(e),
                    query_index=query_index,
                    identity=identity.name,
                )
                reason = f"Session failed after operator continue: {e}"
                continue

            self.state.consecutive_failures = 0
            self.state.state = StudyState.RUNNING
            return RecoveryOutcome(state=StudyState.RUNNING, handle=handle, decision=decision)
