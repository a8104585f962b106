from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol

from ranksync.config import PurchaseStatus, RankUpdateStatus
from ranksync.errors import (
    BackendUnavailable,
    IdentityNotFound,
    InvalidTransition,
    MalformedCommand,
    RankNotFound,
    RankSyncError,
    RecordNotFound,
)
from ranksync.helpers import utcnow
from ranksync.ledger import LedgerClient
from ranksync.logging_config import get_logger
from ranksync.players import PlayerDirectory, PlayerSession
from ranksync.schemas import RankUpdateRecord

logger = get_logger(__name__)

APPLIED_MESSAGE = "Rank has been applied successfully"
QUEUED_MESSAGE = "Rank update queued"

# Failures that will not clear up by waiting for the next drain cycle.
PERMANENT_FAILURES = (RankNotFound, IdentityNotFound, MalformedCommand)


class RankDispatcher(Protocol):
    async def dispatch(self, session: PlayerSession, rank_name: str, purchase_id: str) -> None: ...


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    QUEUED = "queued"
    ALREADY_PROCESSED = "already_processed"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    message: str


@dataclass
class DrainReport:
    applied: int = 0
    pending: int = 0
    failed: int = 0
    stale: int = 0

    def record(self, status: RankUpdateStatus) -> None:
        if status == RankUpdateStatus.APPLIED:
            self.applied += 1
        elif status == RankUpdateStatus.ERROR:
            self.failed += 1
        else:
            self.pending += 1


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class RankReconciler:
    """
    Decides whether a purchased rank is applied now or queued, and drains the queue.

    Pending records are retried on every drain for as long as the player stays
    offline; there is no retry limit. ``pending_alert_after`` (seconds) only
    adds a warning for records that have waited longer than that.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        players: PlayerDirectory,
        dispatcher: RankDispatcher,
        *,
        pending_alert_after: Optional[float] = None,
    ):
        self.ledger = ledger
        self.players = players
        self.dispatcher = dispatcher
        self.pending_alert_after = pending_alert_after
        self._in_flight: set[str] = set()

    async def process_rank_update(
        self, username: str, rank_name: str, purchase_id: str, *, report_processing: bool = False
    ) -> ReconcileResult:
        """
        Apply the rank now when the player is connected, otherwise queue it.
        With ``report_processing`` the purchase is marked processing once it
        is known not to be a repeat.
        """
        if purchase_id in self._in_flight:
            logger.info("Rank update already in flight purchaseId=%s", purchase_id)
            return ReconcileResult(ReconcileOutcome.IN_PROGRESS, "Rank update already in progress")
        self._in_flight.add(purchase_id)
        try:
            return await self._process(username, rank_name, purchase_id, report_processing)
        finally:
            self._in_flight.discard(purchase_id)

    async def _process(self, username: str, rank_name: str, purchase_id: str, report_processing: bool) -> ReconcileResult:
        existing = await self.ledger.get(purchase_id)
        if existing and existing.status != RankUpdateStatus.PENDING:
            return self._already_processed(purchase_id, existing.status.value)
        purchase = await self.ledger.get_purchase(purchase_id)
        if purchase and purchase.status == PurchaseStatus.APPLIED:
            return self._already_processed(purchase_id, purchase.status.value)
        if report_processing:
            await self.ledger.write_purchase_status(purchase_id, PurchaseStatus.PROCESSING, "Processing rank purchase")

        session = self.players.find(username)
        if session is None:
            return await self._enqueue(username, rank_name, purchase_id)

        try:
            await self.dispatcher.dispatch(session, rank_name, purchase_id)
        except RankSyncError as exc:
            # Reported to the storefront, not queued: an online player means the fault is ours.
            logger.error(
                "Rank apply failed username=%s rank=%s purchaseId=%s error=%s",
                username,
                rank_name,
                purchase_id,
                exc,
            )
            await self.ledger.write_purchase_status(purchase_id, PurchaseStatus.ERROR, str(exc))
            return ReconcileResult(ReconcileOutcome.FAILED, str(exc))

        await self._mark_record_applied(purchase_id)
        await self.ledger.write_purchase_status(purchase_id, PurchaseStatus.APPLIED, APPLIED_MESSAGE)
        logger.info("Applied rank username=%s rank=%s purchaseId=%s", username, rank_name, purchase_id)
        return ReconcileResult(ReconcileOutcome.APPLIED, APPLIED_MESSAGE)

    def _already_processed(self, purchase_id: str, status: str) -> ReconcileResult:
        logger.info("Ignoring repeat rank update purchaseId=%s status=%s", purchase_id, status)
        return ReconcileResult(ReconcileOutcome.ALREADY_PROCESSED, f"Purchase already {status}")

    async def _enqueue(self, username: str, rank_name: str, purchase_id: str) -> ReconcileResult:
        record = RankUpdateRecord(
            username=username,
            rank_name=rank_name,
            purchase_id=purchase_id,
            status=RankUpdateStatus.PENDING,
            created_at=utcnow(),
        )
        if await self.ledger.insert(record):
            logger.info("Queued rank update for offline player username=%s purchaseId=%s", username, purchase_id)
        else:
            current = await self.ledger.get(purchase_id)
            if current and current.status != RankUpdateStatus.PENDING:
                return self._already_processed(purchase_id, current.status.value)
            logger.info("Rank update already queued purchaseId=%s", purchase_id)
        await self.ledger.write_purchase_status(purchase_id, PurchaseStatus.QUEUED, QUEUED_MESSAGE)
        return ReconcileResult(ReconcileOutcome.QUEUED, QUEUED_MESSAGE)

    async def _mark_record_applied(self, purchase_id: str) -> bool:
        try:
            await self.ledger.update_status(purchase_id, RankUpdateStatus.APPLIED)
        except (RecordNotFound, InvalidTransition):
            return False
        return True

    async def drain_pending(self) -> DrainReport:
        """
        Try every pending record once. Each record succeeds or fails on its
        own; a failure never stops the rest of the batch.
        """
        report = DrainReport()
        records = await self.ledger.query_by_status(RankUpdateStatus.PENDING)
        now = utcnow()
        for record in records:
            if self._is_stale(record, now):
                report.stale += 1
            if record.purchase_id in self._in_flight:
                report.record(RankUpdateStatus.PENDING)
                continue
            self._in_flight.add(record.purchase_id)
            try:
                status = await self._drain_one(record)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Drain failed purchaseId=%s error=%s", record.purchase_id, exc)
                status = await self._ledger_status(record.purchase_id)
            finally:
                self._in_flight.discard(record.purchase_id)
            report.record(status)
        logger.info(
            "Drain complete applied=%s pending=%s failed=%s stale=%s",
            report.applied,
            report.pending,
            report.failed,
            report.stale,
        )
        return report

    async def _drain_one(self, record: RankUpdateRecord) -> RankUpdateStatus:
        session = self.players.find(record.username)
        if session is None:
            return RankUpdateStatus.PENDING
        try:
            await self.dispatcher.dispatch(session, record.rank_name, record.purchase_id)
        except PERMANENT_FAILURES as exc:
            logger.error("Rank update cannot be applied purchaseId=%s error=%s", record.purchase_id, exc)
            await self.ledger.update_status(record.purchase_id, RankUpdateStatus.ERROR)
            await self.ledger.write_purchase_status(record.purchase_id, PurchaseStatus.ERROR, str(exc))
            return RankUpdateStatus.ERROR
        except BackendUnavailable as exc:
            logger.warning("Rank apply deferred purchaseId=%s error=%s", record.purchase_id, exc)
            return RankUpdateStatus.PENDING
        await self._mark_record_applied(record.purchase_id)
        await self.ledger.write_purchase_status(record.purchase_id, PurchaseStatus.APPLIED, APPLIED_MESSAGE)
        logger.info("Applied queued rank username=%s rank=%s purchaseId=%s", record.username, record.rank_name, record.purchase_id)
        return RankUpdateStatus.APPLIED

    async def _ledger_status(self, purchase_id: str) -> RankUpdateStatus:
        try:
            current = await self.ledger.get(purchase_id)
        except RankSyncError:
            return RankUpdateStatus.PENDING
        return current.status if current else RankUpdateStatus.PENDING

    def _is_stale(self, record: RankUpdateRecord, now: datetime) -> bool:
        if self.pending_alert_after is None or record.created_at is None:
            return False
        age = (now - _as_utc(record.created_at)).total_seconds()
        if age <= self.pending_alert_after:
            return False
        logger.warning(
            "Rank update pending too long purchaseId=%s username=%s age_seconds=%.0f",
            record.purchase_id,
            record.username,
            age,
        )
        return True
