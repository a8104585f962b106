import threading
from dataclasses import dataclass
from typing import Optional

from ranksync.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlayerSession:
    username: str
    identity: str
    server: Optional[str] = None


class PlayerDirectory:
    """
    Live registry of connected players, fed by host connect/disconnect callbacks.
    Usernames match case-insensitively.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: dict[str, PlayerSession] = {}

    def connect(self, username: str, identity: str, server: Optional[str] = None) -> PlayerSession:
        session = PlayerSession(username=username, identity=identity, server=server)
        with self._lock:
            self._sessions[username.lower()] = session
        logger.info("Player connected username=%s identity=%s server=%s", username, identity, server)
        return session

    def disconnect(self, username: str) -> Optional[PlayerSession]:
        with self._lock:
            session = self._sessions.pop(username.lower(), None)
        if session:
            logger.info("Player disconnected username=%s", username)
        return session

    def find(self, username: str) -> Optional[PlayerSession]:
        with self._lock:
            return self._sessions.get(username.lower())

    def is_online(self, identity: str) -> bool:
        with self._lock:
            return any(session.identity == identity for session in self._sessions.values())

    def sessions(self) -> list[PlayerSession]:
        with self._lock:
            return list(self._sessions.values())
