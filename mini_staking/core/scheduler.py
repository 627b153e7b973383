"""Periodic readiness notifications."""
import asyncio
from typing import Callable, List, Optional, Set, Tuple

from loguru import logger

from .reader import StakeReader
from .stake import Stake, is_ready_for_withdrawal, now_ms

# Called with (stake index, stake) once the stake can be withdrawn
MaturedCallback = Callable[[int, Stake], None]


class ReadinessScheduler:
    """Emits one "matured" notification per stake per process lifetime.

    A stake is identified by its index and timestamps, so a different stake
    showing up at a reused index is notified again.
    """

    def __init__(
        self,
        reader: StakeReader,
        interval: float = 30.0,
        on_matured: Optional[MaturedCallback] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.reader = reader
        self.interval = interval
        self.on_matured = on_matured
        self.clock = clock
        self._notified: Set[Tuple[int, int, int]] = set()
        self._task: Optional[asyncio.Task] = None

    def check(self, now: Optional[int] = None) -> List[int]:
        """Notify every newly matured stake.

        Args:
            now: Current time in milliseconds; the clock if None

        Returns:
            Indices notified by this call
        """
        stakes = self.reader.snapshot.user_stakes
        if not stakes:
            return []
        now = self.clock() if now is None else now

        matured = []
        for index, stake in enumerate(stakes):
            key = (index, stake.start_time, stake.end_time)
            if key in self._notified or not is_ready_for_withdrawal(stake, now):
                continue
            self._notified.add(key)
            matured.append(index)
            logger.info(f"Stake #{index} is ready to withdraw")
            if self.on_matured is not None:
                self.on_matured(index, stake)
        return matured

    async def _run(self) -> None:
        while True:
            self.check()
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        """Run `check` now and then every `interval` seconds."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
