import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Protocol, TypeVar

from ranksync.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

MAIN_THREAD_NAME = "ranksync-main"


class Messenger(Protocol):
    def send_message(self, identity: str, text: str) -> None:
        """Deliver a chat message. Must be called on the host's main context."""


class MainThread:
    """
    The host's single-threaded execution context. Anything touching live
    player state is submitted here; everything else stays off it.
    """

    def __init__(self, name: str = MAIN_THREAD_NAME):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)

    async def run(self, fn: Callable[..., T], *args) -> T:
        return await asyncio.wrap_future(self._executor.submit(fn, *args))

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class LogMessenger:
    """Messenger for hosts without a chat channel; writes notifications to the log."""

    def send_message(self, identity: str, text: str) -> None:
        logger.info("Player message identity=%s text=%s", identity, text)
