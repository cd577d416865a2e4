"""
Run orchestration: executes the selected studies of one run.

One asyncio task per study, bounded by run_settings.max_concurrent_studies.
Studies share only the IdentityPool; each owns its session, recovery state
and checkpoint files. Each study after the first waits between_studies_ms
before it starts so studies do not hit their surfaces in lockstep.

Output:
    {output_dir}/{run_id}/
        run_meta.json
        {study_id}-results.json
        {study_id}-checkpoint-{n:05d}.json

Resuming passes the earlier run directory; the runners pick up each study's
latest checkpoint from there.

Example:
    >>> config = load_config("engine.config.yaml")
    >>> outcome = await run_studies(config)
    >>> outcome.aborted_studies
    0
"""

import asyncio
import logging
import os
import random
from collections.abc import Callable
from dataclasses import dataclass, field

from ..adapters import AdapterRegistry
from ..adapters.base import SurfaceAdapter
from ..adapters.retry_config import REQUEST_TIMEOUT
from ..config.schema import RuntimeConfig, RuntimeStudy
from ..exceptions import ConfigValidationError
from ..storage.layout import run_id_from_directory
from ..storage.writer import create_run_directory, write_run_meta, write_study_result
from ..utils.time import parse_timestamp, run_id_from_timestamp, utc_timestamp
from .block_detector import BlockDetector
from .captcha import CaptchaResolver
from .checkpoint import CheckpointStore
from .identity_pool import IdentityPool
from .ip_verifier import IPVerifier
from .models import StudyResult
from .operator import OperatorChannel, ScriptedOperatorChannel
from .pacing import CancellationToken
from .runner import StudyRunner
from .session import BrowserSessionManager, HttpSessionManager, SessionManager

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    """
    Result of run_studies().

    Attributes:
        run_id: Run identifier (directory name)
        run_dir: Directory holding checkpoints and results
        results: StudyResult per study, in configuration order
    """

    run_id: str
    run_dir: str
    results: list[StudyResult] = field(default_factory=list)
    started_at: str = field(default_factory=utc_timestamp)
    completed_at: str | None = None

    @property
    def total_queries(self) -> int:
        return sum(r.total_queries for r in self.results)

    @property
    def successful_queries(self) -> int:
        return sum(r.summary.successful for r in self.results)

    @property
    def failed_queries(self) -> int:
        return sum(r.summary.failed for r in self.results)

    @property
    def aborted_studies(self) -> int:
        return sum(1 for r in self.results if r.aborted)

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        elapsed = parse_timestamp(self.completed_at) - parse_timestamp(self.started_at)
        return elapsed.total_seconds()

    def to_meta(self) -> dict:
        return {
            "run_id": self.run_id,
            "output_dir": self.run_dir,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
            "total_studies": len(self.results),
            "aborted_studies": self.aborted_studies,
            "total_queries": self.total_queries,
            "successful_queries": self.successful_queries,
            "failed_queries": self.failed_queries,
            "studies": [study_row(r) for r in self.results],
        }


def study_row(result: StudyResult) -> dict:
    """Flat per-study summary used by run_meta.json and the CLI table."""
    return {
        "study_id": result.study_id,
        "surface_id": result.surface_id,
        "final_state": result.final_state.value,
        "queries_completed": result.queries_completed,
        "total_queries": result.total_queries,
        "successful": result.summary.successful,
        "failed": result.summary.failed,
        "recovery_attempts": result.recovery_attempts,
        "p95_duration_ms": result.summary.p95_duration_ms,
        "abort_reason": result.abort_reason,
    }


def build_adapters(studies: list[RuntimeStudy]) -> dict[str, SurfaceAdapter]:
    """
    Create one adapter per study through the registry.

    Raises:
        ConfigValidationError: If an adapter is unknown or its config invalid
    """
    adapters = {}
    for study in studies:
        try:
            adapters[study.config.study_id] = AdapterRegistry.create_adapter(
                study.surface.adapter, study.surface.config
            )
        except (ValueError, KeyError) as e:
            raise ConfigValidationError(f"Study '{study.config.study_id}': {e}") from e
    return adapters


def build_session_managers(
    config: RuntimeConfig, kinds: set[str], rng: random.Random | None = None
) -> dict[str, SessionManager]:
    """Session manager per adapter kind actually used by the run."""
    managers: dict[str, SessionManager] = {}
    if "session" in kinds:
        managers["session"] = BrowserSessionManager(config.session, rng=rng)
    if "api" in kinds:
        managers["api"] = HttpSessionManager(timeout_seconds=REQUEST_TIMEOUT, rng=rng)
    return managers


async def run_studies(
    config: RuntimeConfig,
    studies: list[RuntimeStudy] | None = None,
    resume_dir: str | None = None,
    operator: OperatorChannel | None = None,
    progress_callback: Callable[[str, int, int], None] | None = None,
    cancel: CancellationToken | None = None,
    session_managers: dict[str, SessionManager] | None = None,
    rng: random.Random | None = None,
) -> RunOutcome:
    """
    Execute studies concurrently and write their result artifacts.

    Args:
        config: Resolved runtime configuration
        studies: Studies to run (default: all configured studies)
        resume_dir: Existing run directory to resume in
        operator: Operator channel shared by all studies (default: always abort)
        progress_callback: Called with (study_id, completed, total)
        cancel: Shared cancellation token
        session_managers: Session managers by adapter kind (built if omitted)
        rng: Random source for pacing and fingerprints

    Returns:
        RunOutcome with one StudyResult per study

    Raises:
        ConfigValidationError: If an adapter cannot be created
        CheckpointError: If a checkpoint cannot be written or read
        ResumeError: If a checkpoint does not match its study's queries
        OSError: If result files cannot be written
    """
    studies = list(studies if studies is not None else config.studies)
    rng = rng or random.Random()
    cancel = cancel or CancellationToken()
    operator = operator or ScriptedOperatorChannel()

    if resume_dir:
        run_id = run_id_from_directory(resume_dir)
        run_dir = create_run_directory(os.path.dirname(os.path.normpath(resume_dir)) or ".", run_id)
        logger.info(f"Resuming run {run_id} in {run_dir}")
    else:
        run_id = run_id_from_timestamp()
        run_dir = create_run_directory(config.run_settings.output_dir, run_id)
        logger.info(f"Starting run {run_id}")

    adapters = build_adapters(studies)
    owns_managers = session_managers is None
    if session_managers is None:
        session_managers = build_session_managers(
            config, {adapter.kind for adapter in adapters.values()}, rng
        )

    outcome = RunOutcome(run_id=run_id, run_dir=run_dir)
    pool = IdentityPool(config.identities)
    store = CheckpointStore(run_dir)
    ip_verifier = IPVerifier(config.session.ip_lookup_url, config.session.ip_lookup_timeout_seconds)
    captcha_resolver = (
        CaptchaResolver(config.captcha_api_key, config.captcha) if config.captcha_api_key else None
    )
    block_detector = BlockDetector()

    max_concurrent = config.run_settings.max_concurrent_studies
    semaphore = asyncio.Semaphore(max_concurrent)
    started = 0
    logger.info(f"Running {len(studies)} studies, max {max_concurrent} concurrently")

    async def _run_study(study: RuntimeStudy) -> StudyResult:
        nonlocal started
        async with semaphore:
            if started > 0:
                await cancel.sleep(study.config.delays.between_studies_ms / 1000.0)
            started += 1

            adapter = adapters[study.config.study_id]
            runner = StudyRunner(
                session_manager=session_managers[adapter.kind],
                checkpoint_store=store,
                operator=operator,
                ip_verifier=ip_verifier,
                block_detector=block_detector,
                captcha_resolver=captcha_resolver,
                cancel=cancel,
                on_progress=progress_callback,
                rng=rng,
            )
            logger.info(
                f"Study {study.config.study_id} starting: {len(study.queries)} queries "
                f"on {study.surface.adapter} from {study.config.expected_location}"
            )
            result = await runner.run(study.config, study.queries, adapter, pool)
            write_study_result(run_dir, result)
            return result

    try:
        gathered = await asyncio.gather(
            *(_run_study(study) for study in studies), return_exceptions=True
        )
    finally:
        if owns_managers:
            for manager in session_managers.values():
                await manager.shutdown()

    errors = []
    for study, item in zip(studies, gathered):
        if isinstance(item, BaseException):
            logger.error(f"Study {study.config.study_id} failed: {item}", exc_info=item)
            errors.append(item)
        else:
            outcome.results.append(item)

    outcome.completed_at = utc_timestamp()
    write_run_meta(run_dir, outcome.to_meta())

    if errors:
        raise errors[0]

    logger.info(
        f"Run {run_id} complete: {outcome.successful_queries}/{outcome.total_queries} "
        f"successful, {outcome.aborted_studies} aborted studies"
    )
    return outcome
