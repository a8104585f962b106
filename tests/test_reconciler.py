import asyncio
from datetime import timedelta

import pytest

from ranksync.config import PurchaseStatus, RankUpdateStatus
from ranksync.errors import BackendUnavailable, RankNotFound
from ranksync.helpers import utcnow
from ranksync.reconciler import RankReconciler, ReconcileOutcome
from ranksync.schemas import RankUpdateRecord


@pytest.fixture
def reconciler(ledger, players, dispatcher):
    return RankReconciler(ledger, players, dispatcher)


def test_offline_update_twice_leaves_one_pending_record(reconciler, ledger):
    async def scenario():
        first = await reconciler.process_rank_update("Alice", "VIP", "p-100")
        second = await reconciler.process_rank_update("Alice", "VIP", "p-100")
        return first, second, await ledger.query_by_status(RankUpdateStatus.PENDING)

    first, second, pending = asyncio.run(scenario())

    assert first.outcome == ReconcileOutcome.QUEUED
    assert second.outcome == ReconcileOutcome.QUEUED
    assert [record.purchase_id for record in pending] == ["p-100"]


def test_online_update_applies_and_marks_purchase(reconciler, ledger, players, dispatcher):
    players.connect("Alice", "uuid-alice", "survival")

    result = asyncio.run(reconciler.process_rank_update("Alice", "VIP", "p-100"))
    purchase = asyncio.run(ledger.get_purchase("p-100"))

    assert result.outcome == ReconcileOutcome.APPLIED
    assert dispatcher.calls == [("Alice", "VIP", "p-100", "survival")]
    assert purchase.status == PurchaseStatus.APPLIED


def test_online_failure_is_reported_not_queued(reconciler, ledger, players, dispatcher):
    players.connect("Alice", "uuid-alice", "survival")
    dispatcher.fail_for("Alice", RankNotFound("GOLD"))

    result = asyncio.run(reconciler.process_rank_update("Alice", "GOLD", "p-100"))

    assert result.outcome == ReconcileOutcome.FAILED
    assert asyncio.run(ledger.get("p-100")) is None
    purchase = asyncio.run(ledger.get_purchase("p-100"))
    assert purchase.status == PurchaseStatus.ERROR
    assert purchase.message == "Rank does not exist: GOLD"


def test_applied_purchase_is_not_applied_again(reconciler, players, dispatcher):
    players.connect("Alice", "uuid-alice", "survival")

    async def scenario():
        await reconciler.process_rank_update("Alice", "VIP", "p-100")
        return await reconciler.process_rank_update("Alice", "VIP", "p-100")

    repeat = asyncio.run(scenario())

    assert repeat.outcome == ReconcileOutcome.ALREADY_PROCESSED
    assert len(dispatcher.calls) == 1


def test_concurrent_updates_for_one_purchase_dispatch_once(ledger, players):
    players.connect("Alice", "uuid-alice", "survival")

    class SlowDispatcher:
        def __init__(self):
            self.calls = 0

        async def dispatch(self, session, rank_name, purchase_id):
            self.calls += 1
            await asyncio.sleep(0.05)

    slow = SlowDispatcher()
    reconciler = RankReconciler(ledger, players, slow)

    async def scenario():
        return await asyncio.gather(
            reconciler.process_rank_update("Alice", "VIP", "p-100"),
            reconciler.process_rank_update("Alice", "VIP", "p-100"),
        )

    results = asyncio.run(scenario())

    assert slow.calls == 1
    assert sorted(result.outcome.value for result in results) == ["applied", "in_progress"]


def test_drain_applies_only_online_players(reconciler, ledger, players, dispatcher):
    async def queue_all():
        for index, username in enumerate(["Alice", "Bob", "Carol", "Dave", "Erin"]):
            await reconciler.process_rank_update(username, "VIP", f"p-{index}")

    asyncio.run(queue_all())
    players.connect("Bob", "uuid-bob", "lobby")
    players.connect("Dave", "uuid-dave", "survival")

    report = asyncio.run(reconciler.drain_pending())

    assert (report.applied, report.pending, report.failed) == (2, 3, 0)
    applied = asyncio.run(ledger.query_by_status(RankUpdateStatus.APPLIED))
    pending = asyncio.run(ledger.query_by_status(RankUpdateStatus.PENDING))
    assert sorted(record.username for record in applied) == ["Bob", "Dave"]
    assert sorted(record.username for record in pending) == ["Alice", "Carol", "Erin"]
    assert asyncio.run(ledger.get_purchase("p-1")).status == PurchaseStatus.APPLIED


def test_drain_failure_on_one_record_does_not_stop_batch(reconciler, ledger, players, dispatcher):
    async def queue_all():
        await reconciler.process_rank_update("Alice", "VIP", "p-1")
        await reconciler.process_rank_update("Bob", "VIP", "p-2")

    asyncio.run(queue_all())
    players.connect("Alice", "uuid-alice", "lobby")
    players.connect("Bob", "uuid-bob", "lobby")
    dispatcher.fail_for("Alice", BackendUnavailable("node unreachable"))

    report = asyncio.run(reconciler.drain_pending())

    assert (report.applied, report.pending) == (1, 1)
    assert asyncio.run(ledger.get("p-1")).status == RankUpdateStatus.PENDING
    assert asyncio.run(ledger.get("p-2")).status == RankUpdateStatus.APPLIED


def test_drain_unexpected_error_leaves_record_pending(reconciler, ledger, players, dispatcher):
    asyncio.run(reconciler.process_rank_update("Alice", "VIP", "p-1"))
    players.connect("Alice", "uuid-alice", "lobby")

    async def explode(session, rank_name, purchase_id):
        raise RuntimeError("boom")

    dispatcher.dispatch = explode
    report = asyncio.run(reconciler.drain_pending())

    assert report.pending == 1
    assert asyncio.run(ledger.get("p-1")).status == RankUpdateStatus.PENDING


def test_drain_marks_missing_rank_as_error(reconciler, ledger, players, dispatcher):
    asyncio.run(reconciler.process_rank_update("Alice", "GOLD", "p-1"))
    players.connect("Alice", "uuid-alice", "lobby")
    dispatcher.fail_for("Alice", RankNotFound("GOLD"))

    report = asyncio.run(reconciler.drain_pending())

    assert report.failed == 1
    assert asyncio.run(ledger.get("p-1")).status == RankUpdateStatus.ERROR
    assert asyncio.run(ledger.get_purchase("p-1")).status == PurchaseStatus.ERROR


def test_errored_record_is_not_requeued(reconciler, ledger, players, dispatcher):
    asyncio.run(reconciler.process_rank_update("Alice", "GOLD", "p-1"))
    players.connect("Alice", "uuid-alice", "lobby")
    dispatcher.fail_for("Alice", RankNotFound("GOLD"))
    asyncio.run(reconciler.drain_pending())
    players.disconnect("Alice")

    result = asyncio.run(reconciler.process_rank_update("Alice", "GOLD", "p-1"))

    assert result.outcome == ReconcileOutcome.ALREADY_PROCESSED
    assert asyncio.run(ledger.query_by_status(RankUpdateStatus.PENDING)) == []


def test_drain_counts_stale_records(ledger, players, dispatcher, caplog):
    reconciler = RankReconciler(ledger, players, dispatcher, pending_alert_after=60)
    old = RankUpdateRecord(
        username="Alice",
        rank_name="VIP",
        purchase_id="p-old",
        created_at=utcnow() - timedelta(hours=2),
    )
    fresh = RankUpdateRecord(username="Bob", rank_name="VIP", purchase_id="p-new", created_at=utcnow())

    async def seed():
        await ledger.insert(old)
        await ledger.insert(fresh)

    asyncio.run(seed())
    with caplog.at_level("WARNING"):
        report = asyncio.run(reconciler.drain_pending())

    assert report.stale == 1
    assert report.pending == 2
    assert "p-old" in caplog.text


def test_drain_counts_applied_record_when_status_write_fails(ledger, players, dispatcher):
    class StatusWriteFails:
        def __getattr__(self, name):
            return getattr(ledger, name)

        async def write_purchase_status(self, purchase_id, status, message):
            if status == PurchaseStatus.APPLIED:
                raise BackendUnavailable("purchases table unavailable")
            return await ledger.write_purchase_status(purchase_id, status, message)

    reconciler = RankReconciler(StatusWriteFails(), players, dispatcher)
    asyncio.run(reconciler.process_rank_update("Alice", "VIP", "p-1"))
    players.connect("Alice", "uuid-alice", "lobby")

    report = asyncio.run(reconciler.drain_pending())

    assert (report.applied, report.pending) == (1, 0)
    assert asyncio.run(ledger.get("p-1")).status == RankUpdateStatus.APPLIED
