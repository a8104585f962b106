import asyncio
from typing import Awaitable, Callable, Optional

from ranksync.logging_config import get_logger
from ranksync.reconciler import DrainReport

logger = get_logger(__name__)


class Poller:
    """
    Calls ``drain`` after ``initial_delay`` seconds and then every ``interval``
    seconds until stopped. A cycle that comes due while the previous drain is
    still running is skipped.
    """

    def __init__(self, drain: Callable[[], Awaitable[DrainReport]], *, initial_delay: float = 30.0, interval: float = 30.0):
        self.drain = drain
        self.initial_delay = initial_delay
        self.interval = interval
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_once(self) -> Optional[DrainReport]:
        if self._lock.locked():
            logger.info("Skipping drain cycle; previous cycle still running")
            return None
        async with self._lock:
            return await self.drain()

    async def run_forever(self) -> None:
        await asyncio.sleep(self.initial_delay)
        while True:
            try:
                await self.run_once()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Drain cycle failed error=%s", exc)
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            logger.info("Starting poller initial_delay=%ss interval=%ss", self.initial_delay, self.interval)
            self._task = asyncio.get_running_loop().create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
