import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from ranksync import models
from ranksync.config import default_ranks
from ranksync.errors import BackendUnavailable
from ranksync.host import MainThread
from ranksync.main import create_app
from ranksync.node import create_node_app
from ranksync.permissions import MemoryPermissionBackend
from ranksync.relay import CommandRelayClient


class FlakyBackend(MemoryPermissionBackend):
    async def load_user(self, identity):
        raise BackendUnavailable("permission storage offline")


class QuietMessenger:
    def send_message(self, identity, text):
        pass


@pytest.fixture
def node_backend():
    backend = MemoryPermissionBackend.from_rank_definitions(default_ranks())
    backend.register_user("Alice", "uuid-alice")
    return backend


@pytest.fixture
def main_thread():
    thread = MainThread()
    yield thread
    thread.shutdown()


def _coordinator(config, ledger, players, backend, main_thread):
    node = create_node_app(config, backend=backend, messenger=QuietMessenger(), main_thread=main_thread)
    relay = CommandRelayClient(
        {"survival": "http://survival"},
        max_retries=0,
        transport=httpx.ASGITransport(app=node),
    )
    app = create_app(config, ledger=ledger, players=players, dispatcher=relay, start_poller=False)
    return TestClient(app)


def _purchase(rank="VIP", purchase_id="p-100") -> bytes:
    return json.dumps({"username": "Alice", "rank": rank, "purchaseId": purchase_id}).encode()


def _groups(backend):
    return asyncio.run(backend.load_user("uuid-alice")).groups()


def _rows(session_factory, model, purchase_id):
    with session_factory() as db:
        return db.query(model).filter(model.purchase_id == purchase_id).first()


def test_online_purchase_is_applied_on_the_node(config, ledger, players, node_backend, main_thread, session_factory, sign):
    client = _coordinator(config, ledger, players, node_backend, main_thread)
    players.connect("Alice", "uuid-alice", "survival")
    body = _purchase()

    resp = client.post("/webhook/purchase", content=body, headers=sign(body))

    assert resp.status_code == 200
    assert _groups(node_backend) == {"VIP"}
    assert _rows(session_factory, models.Purchase, "p-100").status == "applied"


def test_online_unknown_rank_is_reported_as_error(config, ledger, players, node_backend, main_thread, session_factory, sign):
    client = _coordinator(config, ledger, players, node_backend, main_thread)
    players.connect("Alice", "uuid-alice", "survival")
    body = _purchase(rank="GOLD")

    resp = client.post("/webhook/purchase", content=body, headers=sign(body))

    assert resp.status_code == 500
    purchase = _rows(session_factory, models.Purchase, "p-100")
    assert purchase.status == "error"
    assert purchase.message == "Rank does not exist: GOLD"
    assert _groups(node_backend) == set()
    assert _rows(session_factory, models.RankUpdate, "p-100") is None


def test_drained_unknown_rank_moves_record_to_error(config, ledger, players, node_backend, main_thread, session_factory, sign):
    client = _coordinator(config, ledger, players, node_backend, main_thread)
    body = _purchase(rank="GOLD")
    client.post("/webhook/purchase", content=body, headers=sign(body))
    players.connect("Alice", "uuid-alice", "survival")

    report = client.post("/admin/drain").json()

    assert (report["applied"], report["failed"], report["pending"]) == (0, 1, 0)
    assert _rows(session_factory, models.RankUpdate, "p-100").status == "error"
    assert _rows(session_factory, models.Purchase, "p-100").status == "error"
    assert _groups(node_backend) == set()


def test_drained_purchase_is_applied_on_the_node(config, ledger, players, node_backend, main_thread, session_factory, sign):
    client = _coordinator(config, ledger, players, node_backend, main_thread)
    body = _purchase(rank="MVP")
    client.post("/webhook/purchase", content=body, headers=sign(body))
    players.connect("Alice", "uuid-alice", "survival")

    report = client.post("/admin/drain").json()

    assert report["applied"] == 1
    assert _rows(session_factory, models.RankUpdate, "p-100").status == "applied"
    assert _groups(node_backend) == {"MVP"}


def test_user_load_failure_keeps_record_pending(config, ledger, players, main_thread, session_factory, sign):
    backend = FlakyBackend.from_rank_definitions(default_ranks())
    backend.register_user("Alice", "uuid-alice")
    client = _coordinator(config, ledger, players, backend, main_thread)
    body = _purchase()
    client.post("/webhook/purchase", content=body, headers=sign(body))
    players.connect("Alice", "uuid-alice", "survival")

    report = client.post("/admin/drain").json()

    assert (report["applied"], report["failed"], report["pending"]) == (0, 0, 1)
    assert _rows(session_factory, models.RankUpdate, "p-100").status == "pending"
    assert _rows(session_factory, models.Purchase, "p-100").status == "queued"


def test_online_user_load_failure_is_reported(config, ledger, players, main_thread, session_factory, sign):
    backend = FlakyBackend.from_rank_definitions(default_ranks())
    backend.register_user("Alice", "uuid-alice")
    client = _coordinator(config, ledger, players, backend, main_thread)
    players.connect("Alice", "uuid-alice", "survival")
    body = _purchase()

    resp = client.post("/webhook/purchase", content=body, headers=sign(body))

    assert resp.status_code == 500
    purchase = _rows(session_factory, models.Purchase, "p-100")
    assert purchase.status == "error"
    assert "503" in purchase.message
