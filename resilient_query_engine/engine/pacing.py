"""
Delays and cancellation for study workers.

Every wait in the engine is an explicit, bounded sleep that wakes early when
the study is cancelled. Nothing busy-loops.

Key components:
- CancellationToken: asyncio.Event wrapper carrying a cancellation reason
- inter_query_delay_ms(): Randomized pause between queries
- human_pause(): Short randomized pause between browser actions
"""

import asyncio
import random

from ..config.schema import DelaySettings


class CancellationToken:
    """
    External cancellation signal shared by a study worker and its helpers.

    Checked at the top of each runner loop iteration and between bounded
    polls. In-flight network calls are never interrupted; they run to their
    own timeout.

    Example:
        >>> token = CancellationToken()
        >>> token.cancel("operator abort")
        >>> token.is_cancelled
        True
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep for up to `seconds`, waking early on cancellation.

        Returns:
            True if cancelled before or during the sleep, False otherwise
        """
        if self.is_cancelled:
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True


def inter_query_delay_ms(
    delays: DelaySettings, after_failure: bool, rng: random.Random | None = None
) -> int:
    """
    Compute the pause before the next query.

    Base is delays.base_ms, or delays.after_failure_ms when the previous
    attempt failed; up to `variance` of the base is added at random.

    Example:
        >>> inter_query_delay_ms(DelaySettings(base_ms=4000, variance=0.0), False)
        4000
    """
    rng = rng or random.Random()
    base = delays.after_failure_ms if after_failure else delays.base_ms
    return int(base + rng.random() * base * delays.variance)


async def human_pause(
    base_ms: int,
    rng: random.Random | None = None,
    cancel: CancellationToken | None = None,
) -> None:
    """Pause for base_ms plus up to 50% random jitter."""
    rng = rng or random.Random()
    seconds = (base_ms + rng.random() * base_ms * 0.5) / 1000.0
    if cancel is not None:
        await cancel.sleep(seconds)
    else:
        await asyncio.sleep(seconds)
