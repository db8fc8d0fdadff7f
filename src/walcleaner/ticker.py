"""Fixed-period ticker for the background cleanup loop."""

import asyncio
from typing import Awaitable, Callable, Optional


class Ticker:
    """
    Deliver ticks on a fixed grid ``start + k * period``.

    Ticks are not drift corrected against the consumer: a tick is due
    ``period`` after the previous tick was due, not after the consumer finished
    handling it. When the consumer falls behind, one overdue tick is delivered
    immediately and every other tick that came due meanwhile is dropped and
    counted in ``missed``. The following tick lands on the next grid point in
    the future.
    """

    def __init__(
        self,
        period: float,
        clock: Optional[Callable[[], float]] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        if period <= 0:
            raise ValueError(f"period must be > 0, got {period}")
        self.period = period
        self._clock = clock or asyncio.get_running_loop().time
        self._sleep = sleep
        self._next = self._clock() + period
        self.ticks = 0
        self.missed = 0

    @property
    def next_deadline(self) -> float:
        return self._next

    async def tick(self) -> float:
        """Wait for the next tick and return the time it was due."""
        now = self._clock()
        delay = self._next - now
        if delay > 0:
            await self._sleep(delay)
            now = self._clock()

        due = self._next
        # sleep may wake marginally early, never count that as negative lag
        behind = max(0, int((now - due) // self.period))
        self.missed += behind
        self._next = due + (behind + 1) * self.period
        self.ticks += 1
        return due
