import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep module-level app construction away from real files.
os.environ["DB_URL"] = "sqlite://"
os.environ["RANKSYNC_CONFIG"] = str(ROOT / "tests" / "does-not-exist.json")

from ranksync.config import Settings  # noqa: E402
from ranksync.database import Base, build_engine, build_session_factory  # noqa: E402
from ranksync.errors import RankSyncError  # noqa: E402
from ranksync.ledger import SqlLedgerClient  # noqa: E402
from ranksync.players import PlayerDirectory, PlayerSession  # noqa: E402
from ranksync.security import compute_signature  # noqa: E402

WEBHOOK_SECRET = "test-webhook-secret"


class RecordingDispatcher:
    """Stands in for the relay; remembers every dispatch and can be told to fail."""

    def __init__(self):
        self.calls: list[tuple[str, str, str, str | None]] = []
        self.failures: dict[str, RankSyncError] = {}

    def fail_for(self, username: str, error: RankSyncError) -> None:
        self.failures[username.lower()] = error

    async def dispatch(self, session: PlayerSession, rank_name: str, purchase_id: str) -> None:
        error = self.failures.get(session.username.lower())
        if error is not None:
            raise error
        self.calls.append((session.username, rank_name, purchase_id, session.server))


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return SqlLedgerClient(session_factory, timeout=5.0)


@pytest.fixture
def players():
    return PlayerDirectory()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def config(tmp_path):
    return Settings(
        db_url=f"sqlite:///{tmp_path / 'unused.db'}",
        webhook_secret=WEBHOOK_SECRET,
        bearer_token=None,
        relay_token=None,
        poll_initial_delay_seconds=0.01,
        poll_interval_seconds=0.01,
        request_timeout_seconds=5.0,
    )


def signed_headers(body: bytes, secret: str = WEBHOOK_SECRET) -> dict:
    return {
        "X-Webhook-Signature": compute_signature(body, secret),
        "Content-Type": "application/json",
    }


@pytest.fixture
def sign():
    return signed_headers
