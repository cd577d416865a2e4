"""
Operator channel for studies that cannot recover on their own.

When every identity for a location is exhausted the recovery controller
asks a human what to do: continue (after fixing the proxy or waiting),
skip the remaining queries, or abort the study.

Key components:
- OperatorContext: What the operator is shown
- OperatorChannel: Protocol used by the recovery controller
- ConsoleOperatorChannel: rich instructions + typer prompt on a worker thread
- ScriptedOperatorChannel: Preset answers for tests and --yes mode
"""

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

import typer
from rich.console import Console
from rich.panel import Panel

from .models import OperatorDecision

logger = logging.getLogger(__name__)

DECISION_ALIASES = {
    "": OperatorDecision.CONTINUE,
    "c": OperatorDecision.CONTINUE,
    "continue": OperatorDecision.CONTINUE,
    "s": OperatorDecision.SKIP,
    "skip": OperatorDecision.SKIP,
    "a": OperatorDecision.ABORT,
    "abort": OperatorDecision.ABORT,
}


@dataclass
class OperatorContext:
    """
    Situation presented to the operator.

    Attributes:
        study_id: Study waiting for a decision
        expected_location: Location whose identities are exhausted
        reason: Why automatic recovery stopped
        query_index: Index that will be retried on continue
        total_queries: Study size
        recovery_attempts: Recovery attempts used so far
        blocked_identities: Identity names currently blocked
    """

    study_id: str
    expected_location: str
    reason: str
    query_index: int
    total_queries: int
    recovery_attempts: int = 0
    blocked_identities: list[str] = field(default_factory=list)


class OperatorChannel(Protocol):
    async def request_decision(self, context: OperatorContext) -> OperatorDecision: ...


def parse_decision(answer: str) -> OperatorDecision | None:
    """
    Map operator input to a decision.

    ENTER or "continue" continues; unknown input returns None.

    Example:
        >>> parse_decision(" Skip ")
        <OperatorDecision.SKIP: 'skip'>
    """
    return DECISION_ALIASES.get(answer.strip().lower())


class ConsoleOperatorChannel:
    """
    Interactive operator prompt on the terminal.

    Prompts from concurrent studies are serialised with a lock. The blocking
    read runs on a daemon thread so other studies keep running and an
    unanswered prompt never holds up interpreter or event-loop shutdown.

    Attributes:
        timeout_seconds: Give up after this long and abort; None waits forever
    """

    def __init__(
        self,
        console: Console | None = None,
        timeout_seconds: float | None = None,
        prompt_func: Callable[..., str] | None = None,
    ):
        self.console = console or Console(stderr=True)
        self.timeout_seconds = timeout_seconds
        self._prompt_func = prompt_func or typer.prompt
        self._lock = asyncio.Lock()

    def _print_instructions(self, context: OperatorContext) -> None:
        blocked = ", ".join(context.blocked_identities) or "none"
        body = (
            f"[bold]Study:[/bold] {context.study_id}\n"
            f"[bold]Location:[/bold] {context.expected_location}\n"
            f"[bold]Reason:[/bold] {context.reason}\n"
            f"[bold]Progress:[/bold] {context.query_index}/{context.total_queries} "
            f"queries completed\n"
            f"[bold]Recovery attempts:[/bold] {context.recovery_attempts}\n"
            f"[bold]Blocked identities:[/bold] {blocked}\n\n"
            "Fix the proxy configuration or wait for the block to clear, then:\n"
            "  [green]ENTER / continue[/green]  clear blocks and retry with a fresh session\n"
            "  [yellow]skip[/yellow]              mark the remaining queries failed and finish\n"
            "  [red]abort[/red]             stop this study (progress is checkpointed)"
        )
        self.console.print(
            Panel(body, title="[bold red]Operator action required[/bold red]", border_style="red")
        )

    async def _read_answer(self) -> str:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()

        def settle(answer: str | None, error: Exception | None) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(answer)

        def read() -> None:
            answer, error = None, None
            try:
                answer = self._prompt_func(
                    "Decision [continue/skip/abort]", default="", show_default=False
                )
            except Exception as e:
                error = e
            try:
                loop.call_soon_threadsafe(settle, answer, error)
            except RuntimeError:
                # Loop already closed; the study was cancelled
                logger.debug("Operator answer arrived after the event loop closed")

        threading.Thread(target=read, name="operator-prompt", daemon=True).start()
        return await future

    async def _prompt_until_valid(self) -> OperatorDecision:
        while True:
            answer = await self._read_answer()
            decision = parse_decision(answer)
            if decision is not None:
                return decision
            self.console.print(f"[yellow]Unknown response '{answer}'. Type continue, skip or abort.")

    async def request_decision(self, context: OperatorContext) -> OperatorDecision:
        async with self._lock:
            self._print_instructions(context)
            try:
                if self.timeout_seconds is None:
                    decision = await self._prompt_until_valid()
                else:
                    decision = await asyncio.wait_for(
                        self._prompt_until_valid(), timeout=self.timeout_seconds
                    )
            except TimeoutError:
                self.console.print(
                    f"[red]No operator response within {self.timeout_seconds:.0f}s; aborting."
                )
                decision = OperatorDecision.ABORT

        logger.info(f"Operator decision for {context.study_id}: {decision.value}")
        return decision


class ScriptedOperatorChannel:
    """
    Returns preset decisions in order, then a default.

    With no decisions and the default ABORT this is the --yes channel:
    automation never blocks waiting for a human.

    Attributes:
        requests: Every context received, for inspection in tests
    """

    def __init__(
        self,
        decisions: list[OperatorDecision] | None = None,
        default: OperatorDecision = OperatorDecision.ABORT,
    ):
        self._decisions = list(decisions or [])
        self.default = default
        self.requests: list[OperatorContext] = []

    async def request_decision(self, context: OperatorContext) -> OperatorDecision:
        self.requests.append(context)
        decision = self._decisions.pop(0) if self._decisions else self.default
        logger.info(f"Scripted operator decision for {context.study_id}: {decision.value}")
        return decision
