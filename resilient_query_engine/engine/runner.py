"""
Study runner: executes one study's queries against one surface.

The runner owns everything that belongs to a single study worker: its
session handle, its RecoveryState, and its checkpoint files. Queries run
strictly one at a time in index order, so checkpoints are always a
contiguous prefix of the query list.

Per index:
1. Stop if cancelled
2. Session surfaces: detect a challenge page; try the CAPTCHA resolver and
   re-detect; a block that remains is a captcha_required failure
3. Submit through the adapter, bounded by timeout_ms
4. Session surfaces: detect a challenge page again
5. Success: record, reset the failure streak, advance, pause
6. Failure: classify and apply the category's policy (retry, rotate, skip)

Checkpoints are written every checkpoint_every results, immediately before
and after each recovery episode, and at the end of the run.
"""

import asyncio
import logging
import random
from collections.abc import Callable

from ..adapters.base import SurfaceAdapter
from ..config.loader import apply_prompt_transform
from ..config.schema import StudyConfig
from ..exceptions import (
    InvalidQueryListError,
    ResumeError,
    SessionOpenError,
    SurfaceBlockedError,
)
from ..utils.logging import log_with_context
from ..utils.time import elapsed_ms, monotonic_ms, utc_timestamp
from .block_detector import BlockDetector
from .captcha import CaptchaResolver
from .checkpoint import CheckpointStore
from .classifier import FailureClassification, RecoveryPolicy, classify_failure, summarize_failures
from .identity_pool import IdentityPool
from .ip_verifier import IPVerifier
from .models import (
    Checkpoint,
    CheckpointInfo,
    EgressIdentity,
    ExecutionWarning,
    FailureCategory,
    Query,
    QueryResult,
    RecoveryState,
    SessionHandle,
    StudyResult,
    StudyState,
    StudySummary,
    WarningCode,
)
from .operator import OperatorChannel, ScriptedOperatorChannel
from .pacing import CancellationToken, inter_query_delay_ms
from .recovery import RecoveryController
from .session import SessionManager

logger = logging.getLogger(__name__)

SKIPPED_BY_OPERATOR = "skipped by operator"


def validate_queries(queries: list[Query]) -> None:
    """
    Check that queries are non-empty and indexed contiguously from 0.

    Raises:
        InvalidQueryListError: If the list is empty or an index is out of place
    """
    if not queries:
        raise InvalidQueryListError("Query list is empty")
    for position, query in enumerate(queries):
        if query.index != position:
            raise InvalidQueryListError(
                f"Query index {query.index} found at position {position}"
            )


class StudyRunner:
    """
    Runs one study to completion or abort.

    Collaborators are injected so tests can substitute fakes for the
    browser, network and operator.

    Attributes:
        session_manager: Opens and closes sessions for identities
        checkpoint_store: Checkpoint persistence for the run directory
        operator: Operator channel (defaults to always-abort)
        ip_verifier: Egress IP verifier (None skips verification)
        block_detector: Challenge detector for session surfaces
        captcha_resolver: CAPTCHA resolver (None disables solving)
        cancel: Cancellation token for this study
        on_progress: Called with (study_id, completed, total) after each result
    """

    def __init__(
        self,
        session_manager: SessionManager,
        checkpoint_store: CheckpointStore,
        operator: OperatorChannel | None = None,
        ip_verifier: IPVerifier | None = None,
        block_detector: BlockDetector | None = None,
        captcha_resolver: CaptchaResolver | None = None,
        cancel: CancellationToken | None = None,
        on_progress: Callable[[str, int, int], None] | None = None,
        rng: random.Random | None = None,
    ):
        self.session_manager = session_manager
        self.checkpoint_store = checkpoint_store
        self.operator = operator or ScriptedOperatorChannel()
        self.ip_verifier = ip_verifier
        self.block_detector = block_detector or BlockDetector()
        self.captcha_resolver = captcha_resolver
        self.cancel = cancel or CancellationToken()
        self.on_progress = on_progress
        self.rng = rng or random.Random()

    async def run(
        self,
        config: StudyConfig,
        queries: list[Query],
        adapter: SurfaceAdapter,
        identity_pool: IdentityPool,
    ) -> StudyResult:
        """
        Execute a study, resuming from its latest checkpoint if one exists.

        Args:
            config: Immutable study settings
            queries: Ordered query list, indices 0..n-1
            adapter: Surface adapter
            identity_pool: Shared identity pool

        Returns:
            StudyResult with final_state COMPLETED or ABORTED

        Raises:
            InvalidQueryListError: If queries are empty or not contiguous
            CheckpointCorruptError: If the latest checkpoint cannot be parsed
            ResumeError: If the checkpoint does not match the query list
            CheckpointWriteError: If a checkpoint cannot be written
        """
        validate_queries(queries)
        return await _StudyExecution(self, config, queries, adapter, identity_pool).execute()


class _StudyExecution:
    """Mutable state of one StudyRunner.run() call."""

    def __init__(
        self,
        runner: StudyRunner,
        config: StudyConfig,
        queries: list[Query],
        adapter: SurfaceAdapter,
        pool: IdentityPool,
    ):
        self.runner = runner
        self.config = config
        self.queries = queries
        self.adapter = adapter
        self.pool = pool
        self.total = len(queries)
        self.results: list[QueryResult] = []
        self.warnings: list[ExecutionWarning] = []
        self.checkpoints: list[CheckpointInfo] = []
        self.state = RecoveryState()
        self.started_at = utc_timestamp()
        self.abort_reason: str | None = None
        self.handle: SessionHandle | None = None
        self.controller = RecoveryController(
            study=config,
            state=self.state,
            pool=pool,
            session_manager=runner.session_manager,
            operator=runner.operator,
            ip_verifier=runner.ip_verifier,
            cancel=runner.cancel,
            total_queries=self.total,
            on_warning=self.warnings.append,
            rng=runner.rng,
        )

    @property
    def study_id(self) -> str:
        return self.config.study_id

    def _warn(self, code: WarningCode, message: str, severity: str = "warning", **context) -> None:
        self.warnings.append(
            ExecutionWarning(code=code.value, message=message, severity=severity, context=context)
        )

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def _resume(self) -> None:
        checkpoint = self.runner.checkpoint_store.load(self.study_id)
        if checkpoint is None:
            return

        if checkpoint.total_queries != self.total:
            raise ResumeError(
                f"Checkpoint for {self.study_id} covers {checkpoint.total_queries} queries "
                f"but the study now has {self.total}"
            )
        for result in checkpoint.completed_results:
            expected = apply_prompt_transform(
                self.queries[result.query_index].text, self.config.prompt_transform
            )
            if result.query != expected:
                raise ResumeError(
                    f"Checkpoint for {self.study_id} does not match query {result.query_index}: "
                    f"'{result.query}' != '{expected}'"
                )

        self.results = list(checkpoint.completed_results)
        log_with_context(
            logger,
            logging.INFO,
            f"Resuming {self.study_id} from query {len(self.results)}/{self.total} "
            f"(checkpoint status: {checkpoint.status})",
            context={"queries_completed": len(self.results), "total_queries": self.total},
            study_id=self.study_id,
        )

    def _save_checkpoint(self, status: str = "in_progress") -> None:
        checkpoint = Checkpoint(
            study_id=self.study_id,
            completed_results=list(self.results),
            total_queries=self.total,
            status=status,
            abort_reason=self.abort_reason,
            recovery_attempts=self.state.recovery_attempts,
        )
        self.checkpoints.append(self.runner.checkpoint_store.save(self.study_id, checkpoint))

    def _record(self, result: QueryResult) -> None:
        if result.query_index < len(self.results):
            self.results[result.query_index] = result
        else:
            self.results.append(result)

        completed = len(self.results)
        if completed % self.config.checkpoint_every == 0:
            self._save_checkpoint()
        if self.runner.on_progress is not None:
            self.runner.on_progress(self.study_id, completed, self.total)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self) -> StudyResult:
        self._resume()
        index = len(self.results)

        try:
            if index < self.total:
                await self._open_initial_session(index)
                if self.abort_reason is None and len(self.results) < self.total:
                    await self._loop(len(self.results))
        finally:
            if self.handle is not None:
                await self.runner.session_manager.close(self.handle)
                self.handle = None
            await self.pool.release(self.study_id)

        final_state = StudyState.ABORTED if self.abort_reason else StudyState.COMPLETED
        if final_state == StudyState.ABORTED:
            self._warn(WarningCode.STUDY_ABORTED, self.abort_reason, severity="error")
        self._save_checkpoint(status=final_state.value)

        summary = StudySummary.from_results(self.results)
        log_with_context(
            logger,
            logging.INFO,
            f"Study {self.study_id} {final_state.value}: "
            f"{summary.successful}/{self.total} succeeded, "
            f"{self.state.recovery_attempts} recovery attempts",
            context={
                "successful": summary.successful,
                "failed": summary.failed,
                "recovery_attempts": self.state.recovery_attempts,
            },
            study_id=self.study_id,
        )
        return StudyResult(
            study_id=self.study_id,
            surface_id=self.config.surface_id,
            final_state=final_state,
            results=list(self.results),
            total_queries=self.total,
            summary=summary,
            warnings=list(self.warnings),
            checkpoints=list(self.checkpoints),
            abort_reason=self.abort_reason,
            recovery_attempts=self.state.recovery_attempts,
            failure_summary=summarize_failures(self.results),
            started_at=self.started_at,
            completed_at=utc_timestamp(),
        )

    async def _open_initial_session(self, index: int) -> None:
        location = self.config.expected_location
        selection = await self.pool.acquire(self.study_id, location)
        identity = selection.identity
        if identity is None:
            identity = EgressIdentity.direct(location)
            logger.warning(f"No proxy configured for {location}; {self.study_id} uses direct egress")
            self._warn(
                WarningCode.NO_PROXY_CONFIGURED,
                f"No egress identity configured for location {location}; using direct connection",
                location=location,
            )

        try:
            self.handle, _verification = await self.controller.open_session(identity, index)
        except SessionOpenError as e:
            self._warn(WarningCode.PROXY_SESSION_FAILED, str(e), identity=identity.name)
            await self._recover(index, f"Initial session failed: {e}", failed_identity=identity)

    async def _loop(self, index: int) -> None:
        after_failure = False
        attempts: dict[int, int] = {}

        while index < self.total and self.abort_reason is None:
            if self.runner.cancel.is_cancelled:
                self.abort_reason = f"Cancelled: {self.runner.cancel.reason}"
                break

            if self.handle is None:
                self.abort_reason = "No session available"
                break

            query = self.queries[index]
            attempts[index] = attempts.get(index, 0) + 1
            result, classification = await self._attempt(query, attempts[index])

            if result.success:
                self._record(result)
                self.state.record_success()
                index += 1
                after_failure = False
            else:
                policy = classification.policy
                if policy == RecoveryPolicy.SKIP:
                    self._record(result)
                    index += 1
                    after_failure = True
                elif (
                    policy == RecoveryPolicy.RETRY
                    and self.state.record_failure() < self.config.max_consecutive_failures
                ):
                    self._record(result)
                    index += 1
                    after_failure = True
                else:
                    trigger = f"{classification.category.value}: {classification.message}"
                    if not await self._recover(index, trigger):
                        break
                    if self.state.state == StudyState.COMPLETED:
                        break
                    after_failure = False
                    continue

            if index < self.total:
                delay_ms = inter_query_delay_ms(
                    self.config.delays, after_failure, self.runner.rng
                )
                if await self.runner.cancel.sleep(delay_ms / 1000.0):
                    self.abort_reason = f"Cancelled: {self.runner.cancel.reason}"

    async def _recover(
        self,
        index: int,
        trigger: str,
        failed_identity: EgressIdentity | None = None,
    ) -> bool:
        """
        Run a recovery episode around checkpoint saves.

        Returns:
            True if the study should keep running (including after an
            operator skip, which completes the remaining indices)
        """
        self._save_checkpoint()
        outcome = await self.controller.recover(
            self.handle, index, trigger, failed_identity=failed_identity
        )
        self.handle = outcome.handle

        if outcome.state == StudyState.ABORTED:
            # The final checkpoint written by execute() records the abort
            self.abort_reason = outcome.reason
            return False

        if outcome.state == StudyState.COMPLETED:
            self._skip_remaining(index, outcome.reason)

        self._save_checkpoint()
        return True

    def _skip_remaining(self, index: int, reason: str | None) -> None:
        skipped = self.total - index
        for query in self.queries[index:]:
            self._record(
                QueryResult(
                    query_index=query.index,
                    query=apply_prompt_transform(query.text, self.config.prompt_transform),
                    response="",
                    success=False,
                    duration_ms=0,
                    error=SKIPPED_BY_OPERATOR,
                    failure_category=FailureCategory.UNKNOWN,
                )
            )
        self._warn(
            WarningCode.OPERATOR_SKIPPED,
            f"Operator skipped {skipped} remaining queries",
            reason=reason,
            first_skipped_index=index,
        )

    async def _attempt(
        self, query: Query, attempt: int
    ) -> tuple[QueryResult, FailureClassification | None]:
        text = apply_prompt_transform(query.text, self.config.prompt_transform)
        handle = self.handle
        warnings: list[ExecutionWarning] = []
        start = monotonic_ms()

        try:
            if self.adapter.kind == "session":
                await self._clear_challenge(handle, query.index, warnings)

            response = await asyncio.wait_for(
                self.adapter.submit(handle, text, self.config.timeout_ms),
                timeout=self.config.timeout_ms / 1000.0,
            )

            if self.adapter.kind == "session":
                detection = await self.runner.block_detector.detect(handle)
                if detection.detected:
                    raise SurfaceBlockedError(
                        f"Challenge page detected after submit: {detection.indicator}"
                    )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            classification = classify_failure(e)
            log_with_context(
                logger,
                logging.WARNING,
                f"{self.study_id} query {query.index} failed "
                f"({classification.category.value}): {classification.message}",
                context={
                    "query_index": query.index,
                    "category": classification.category.value,
                    "identity": handle.identity.name,
                },
                study_id=self.study_id,
            )
            return (
                QueryResult(
                    query_index=query.index,
                    query=text,
                    response="",
                    success=False,
                    duration_ms=elapsed_ms(start),
                    error=classification.message,
                    failure_category=classification.category,
                    warnings=warnings,
                    identity_name=handle.identity.name,
                    attempt=attempt,
                ),
                classification,
            )

        if not response.response_text.strip():
            warnings.append(
                ExecutionWarning(
                    code=WarningCode.EMPTY_RESPONSE.value,
                    message="Surface returned no response text",
                    query_index=query.index,
                )
            )

        logger.debug(f"{self.study_id} query {query.index} succeeded")
        return (
            QueryResult(
                query_index=query.index,
                query=text,
                response=response.response_text,
                success=True,
                duration_ms=response.duration_ms or elapsed_ms(start),
                warnings=warnings,
                citations=response.citations,
                organic_results=response.organic_results,
                identity_name=handle.identity.name,
                attempt=attempt,
            ),
            None,
        )

    async def _clear_challenge(
        self, handle: SessionHandle, query_index: int, warnings: list[ExecutionWarning]
    ) -> None:
        detection = await self.runner.block_detector.detect(handle)
        if not detection.detected:
            return

        resolver = self.runner.captcha_resolver
        if resolver is not None and await resolver.resolve(handle, self.runner.cancel):
            detection = await self.runner.block_detector.detect(handle)
            if not detection.detected:
                warnings.append(
                    ExecutionWarning(
                        code=WarningCode.CAPTCHA_SOLVED.value,
                        message="CAPTCHA solved before submission",
                        severity="info",
                        query_index=query_index,
                    )
                )
                return

        raise SurfaceBlockedError(f"Challenge page detected: {detection.indicator}")
