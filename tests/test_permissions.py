import asyncio
import threading

import pytest

from ranksync.config import default_ranks
from ranksync.errors import BackendUnavailable, IdentityNotFound, RankNotFound, UserLoadError
from ranksync.host import MAIN_THREAD_NAME, MainThread
from ranksync.permissions import Membership, MemoryPermissionBackend, PermissionApplier


class RecordingMessenger:
    def __init__(self):
        self.messages: list[tuple[str, str, str]] = []

    def send_message(self, identity: str, text: str) -> None:
        self.messages.append((identity, text, threading.current_thread().name))


@pytest.fixture
def backend():
    backend = MemoryPermissionBackend.from_rank_definitions(default_ranks())
    backend.add_group("default")
    backend.add_group("LEGEND", parents=["ELITE"])
    backend.register_user("Alice", "uuid-alice")
    return backend


@pytest.fixture
def messenger():
    return RecordingMessenger()


@pytest.fixture
def main_thread():
    thread = MainThread()
    yield thread
    thread.shutdown()


@pytest.fixture
def applier(backend, players, messenger, main_thread):
    return PermissionApplier(backend, players, messenger, main_thread, timeout=5.0)


def _groups(backend, identity):
    user = asyncio.run(backend.load_user(identity))
    return asyncio.run(backend.inherited_groups(user))


def test_apply_replaces_previous_rank_but_keeps_other_grants(applier, backend):
    async def seed():
        user = await backend.load_user("uuid-alice")
        await backend.add_membership(user, "default", category="grant")
        await backend.add_membership(user, "VIP")
        await backend.persist_user(user)

    asyncio.run(seed())

    asyncio.run(applier.apply_rank("uuid-alice", "MVP"))

    user = asyncio.run(backend.load_user("uuid-alice"))
    assert sorted((m.group, m.category) for m in user.memberships) == [("MVP", "rank"), ("default", "grant")]


def test_apply_then_remove_restores_membership_set(applier, backend):
    async def seed():
        user = await backend.load_user("uuid-alice")
        user.memberships.append(Membership(group="default", category="grant"))
        await backend.persist_user(user)

    asyncio.run(seed())
    before = _groups(backend, "uuid-alice")

    asyncio.run(applier.apply_rank("uuid-alice", "VIP"))
    assert "VIP" in _groups(backend, "uuid-alice")
    removed = asyncio.run(applier.remove_rank("uuid-alice", "VIP"))

    assert removed is True
    assert _groups(backend, "uuid-alice") == before


@pytest.mark.parametrize("rank_name", ["GOLD", "vip", ""])
def test_unknown_rank_fails_without_mutation(applier, backend, messenger, rank_name):
    before = asyncio.run(backend.load_user("uuid-alice"))

    with pytest.raises(RankNotFound):
        asyncio.run(applier.apply_rank("uuid-alice", rank_name))

    assert asyncio.run(backend.load_user("uuid-alice")) == before
    assert messenger.messages == []


def test_remove_missing_membership_is_not_an_error(applier, messenger):
    assert asyncio.run(applier.remove_rank("uuid-alice", "ELITE")) is False
    assert messenger.messages == []


def test_has_rank_follows_inheritance(applier):
    asyncio.run(applier.apply_rank("uuid-alice", "LEGEND"))

    assert asyncio.run(applier.has_rank("uuid-alice", "LEGEND")) is True
    assert asyncio.run(applier.has_rank("uuid-alice", "ELITE")) is True
    assert asyncio.run(applier.has_rank("uuid-alice", "VIP")) is False


def test_online_player_notified_on_main_thread(applier, players, messenger):
    players.connect("Alice", "uuid-alice", "lobby")

    asyncio.run(applier.apply_rank("uuid-alice", "VIP"))

    assert len(messenger.messages) == 1
    identity, text, thread_name = messenger.messages[0]
    assert identity == "uuid-alice"
    assert "VIP" in text
    assert thread_name.startswith(MAIN_THREAD_NAME)


def test_offline_player_gets_no_message(applier, messenger):
    asyncio.run(applier.apply_rank("uuid-alice", "VIP"))
    assert messenger.messages == []


def test_resolve_identity_prefers_live_session(applier, players):
    players.connect("alice", "uuid-live", "lobby")
    assert asyncio.run(applier.resolve_identity("Alice")) == "uuid-live"


def test_resolve_identity_falls_back_to_backend(applier):
    assert asyncio.run(applier.resolve_identity("ALICE")) == "uuid-alice"


def test_resolve_unknown_username(applier):
    with pytest.raises(IdentityNotFound):
        asyncio.run(applier.resolve_identity("nobody"))


def test_user_load_failure_is_reported(players, messenger, main_thread):
    class FlakyBackend(MemoryPermissionBackend):
        async def load_user(self, identity):
            raise BackendUnavailable("storage offline")

    flaky = FlakyBackend()
    flaky.add_group("VIP")
    applier = PermissionApplier(flaky, players, messenger, main_thread)

    with pytest.raises(UserLoadError):
        asyncio.run(applier.apply_rank("uuid-alice", "VIP"))
