"""
Tests for engine.operator module.

Tests cover:
- parse_decision() aliases
- ScriptedOperatorChannel ordering and default
- ConsoleOperatorChannel instructions, re-prompting, timeout handling and
  cancellation of an unanswered prompt
"""

import asyncio
import io
import threading
import time

import pytest
from rich.console import Console

from resilient_query_engine.engine.models import OperatorDecision
from resilient_query_engine.engine.operator import (
    ConsoleOperatorChannel,
    OperatorContext,
    ScriptedOperatorChannel,
    parse_decision,
)


@pytest.fixture
def context():
    return OperatorContext(
        study_id="google-india",
        expected_location="in-mum",
        reason="Egress IP unchanged after rotation",
        query_index=12,
        total_queries=40,
        recovery_attempts=2,
        blocked_identities=["proxy-in-1", "proxy-in-2"],
    )


def capture_console() -> tuple[Console, io.StringIO]:
    buffer = io.StringIO()
    return Console(file=buffer, width=120, force_terminal=False), buffer


class TestParseDecision:
    """Test suite for parse_decision()."""

    @pytest.mark.parametrize(
        "answer,expected",
        [
            ("", OperatorDecision.CONTINUE),
            ("c", OperatorDecision.CONTINUE),
            ("Continue", OperatorDecision.CONTINUE),
            (" skip ", OperatorDecision.SKIP),
            ("s", OperatorDecision.SKIP),
            ("ABORT", OperatorDecision.ABORT),
            ("a", OperatorDecision.ABORT),
        ],
    )
    def test_aliases(self, answer, expected):
        """Test accepted spellings map to decisions."""
        assert parse_decision(answer) == expected

    def test_unknown(self):
        """Test unknown input returns None."""
        assert parse_decision("maybe") is None


class TestScriptedOperatorChannel:
    """Test suite for ScriptedOperatorChannel."""

    @pytest.mark.asyncio
    async def test_decisions_in_order_then_default(self, context):
        """Test preset decisions are used in order, then the default."""
        channel = ScriptedOperatorChannel([OperatorDecision.CONTINUE, OperatorDecision.SKIP])

        decisions = [await channel.request_decision(context) for _ in range(3)]

        assert decisions == [
            OperatorDecision.CONTINUE,
            OperatorDecision.SKIP,
            OperatorDecision.ABORT,
        ]
        assert len(channel.requests) == 3

    @pytest.mark.asyncio
    async def test_custom_default(self, context):
        """Test the default decision can be changed."""
        channel = ScriptedOperatorChannel(default=OperatorDecision.SKIP)

        assert await channel.request_decision(context) == OperatorDecision.SKIP


class TestConsoleOperatorChannel:
    """Test suite for ConsoleOperatorChannel."""

    @pytest.mark.asyncio
    async def test_prints_instructions(self, context):
        """Test the operator sees the study, reason and blocked identities."""
        console, buffer = capture_console()
        channel = ConsoleOperatorChannel(console=console, prompt_func=lambda *a, **k: "abort")

        decision = await channel.request_decision(context)

        output = buffer.getvalue()
        assert decision == OperatorDecision.ABORT
        assert "Operator action required" in output
        assert "google-india" in output
        assert "Egress IP unchanged after rotation" in output
        assert "proxy-in-1, proxy-in-2" in output
        assert "12/40" in output

    @pytest.mark.asyncio
    async def test_reprompts_on_unknown_input(self, context):
        """Test unknown answers are rejected until a valid one arrives."""
        console, buffer = capture_console()
        answers = iter(["later", "skip"])
        channel = ConsoleOperatorChannel(
            console=console, prompt_func=lambda *a, **k: next(answers)
        )

        decision = await channel.request_decision(context)

        assert decision == OperatorDecision.SKIP
        assert "Unknown response 'later'" in buffer.getvalue()

    @pytest.mark.asyncio
    async def test_enter_continues(self, context):
        """Test pressing ENTER (empty answer) continues."""
        console, _buffer = capture_console()
        channel = ConsoleOperatorChannel(console=console, prompt_func=lambda *a, **k: "")

        assert await channel.request_decision(context) == OperatorDecision.CONTINUE

    @pytest.mark.asyncio
    async def test_timeout_aborts(self, context):
        """Test no answer within the timeout is treated as abort."""
        console, buffer = capture_console()

        def slow_prompt(*args, **kwargs):
            time.sleep(0.3)
            return "continue"

        channel = ConsoleOperatorChannel(
            console=console, timeout_seconds=0.05, prompt_func=slow_prompt
        )

        decision = await channel.request_decision(context)

        assert decision == OperatorDecision.ABORT
        assert "No operator response" in buffer.getvalue()

    @pytest.mark.asyncio
    async def test_cancelled_prompt_runs_on_daemon_thread(self, context):
        """Test cancelling an unanswered prompt leaves only a daemon thread behind."""
        console, _buffer = capture_console()
        release = threading.Event()
        threads = []

        def blocked_prompt(*args, **kwargs):
            threads.append(threading.current_thread())
            release.wait(5)
            return "continue"

        channel = ConsoleOperatorChannel(console=console, prompt_func=blocked_prompt)
        task = asyncio.create_task(channel.request_decision(context))
        await asyncio.sleep(0.05)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert threads[0].daemon is True
        release.set()
        threads[0].join(1)
        assert not threads[0].is_alive()
