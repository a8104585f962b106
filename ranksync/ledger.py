import asyncio
from typing import Optional, Protocol

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ranksync.clients.postgrest_client import PostgrestLedgerClient
from ranksync.config import PurchaseStatus, RankUpdateStatus, Settings
from ranksync.database import Base, build_engine, build_session_factory
from ranksync.errors import BackendUnavailable, InvalidTransition, RecordNotFound
from ranksync.helpers import utcnow
from ranksync.logging_config import get_logger
from ranksync.models import Purchase, RankUpdate
from ranksync.schemas import PurchaseStatusRecord, RankUpdateRecord

logger = get_logger(__name__)


class LedgerClient(Protocol):
    """Typed access to rank-update records and purchase status records."""

    async def insert(self, record: RankUpdateRecord) -> bool: ...

    async def get(self, purchase_id: str) -> Optional[RankUpdateRecord]: ...

    async def query_by_status(self, status: RankUpdateStatus) -> list[RankUpdateRecord]: ...

    async def list_records(self, status: Optional[RankUpdateStatus] = None, limit: int = 100) -> list[RankUpdateRecord]: ...

    async def update_status(self, purchase_id: str, new_status: RankUpdateStatus, **fields) -> RankUpdateRecord: ...

    async def get_purchase(self, purchase_id: str) -> Optional[PurchaseStatusRecord]: ...

    async def write_purchase_status(self, purchase_id: str, status: PurchaseStatus, message: str) -> PurchaseStatusRecord: ...


class SqlLedgerClient:
    """
    Ledger over a SQLAlchemy database.

    Session work runs in a worker thread so the event loop never blocks on the
    driver, and each call is bounded by ``timeout`` seconds.
    """

    def __init__(self, session_factory: sessionmaker, timeout: float = 10.0):
        self.session_factory = session_factory
        self.timeout = timeout

    async def _run(self, fn, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise BackendUnavailable(f"ledger call timed out after {self.timeout}s") from exc

    async def insert(self, record: RankUpdateRecord) -> bool:
        """
        Store a new record. Returns False when the purchase already has one;
        the unique constraint on purchase_id decides, not a prior read.
        """
        return await self._run(self._insert, record)

    def _insert(self, record: RankUpdateRecord) -> bool:
        with self.session_factory() as db:
            row = RankUpdate(
                username=record.username,
                rank_name=record.rank_name,
                purchase_id=record.purchase_id,
                status=record.status.value,
                created_at=record.created_at or utcnow(),
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("Rank update already recorded purchaseId=%s", record.purchase_id)
                return False
            except SQLAlchemyError as exc:
                db.rollback()
                raise BackendUnavailable(f"ledger insert failed: {exc}") from exc
            return True

    async def get(self, purchase_id: str) -> Optional[RankUpdateRecord]:
        return await self._run(self._get, purchase_id)

    def _get(self, purchase_id: str) -> Optional[RankUpdateRecord]:
        try:
            with self.session_factory() as db:
                row = db.query(RankUpdate).filter(RankUpdate.purchase_id == purchase_id).first()
                return RankUpdateRecord.model_validate(row) if row else None
        except SQLAlchemyError as exc:
            raise BackendUnavailable(f"ledger read failed: {exc}") from exc

    async def query_by_status(self, status: RankUpdateStatus) -> list[RankUpdateRecord]:
        return await self._run(self._list, status, None)

    async def list_records(self, status: Optional[RankUpdateStatus] = None, limit: int = 100) -> list[RankUpdateRecord]:
        return await self._run(self._list, status, limit)

    def _list(self, status: Optional[RankUpdateStatus], limit: Optional[int]) -> list[RankUpdateRecord]:
        try:
            with self.session_factory() as db:
                query = db.query(RankUpdate)
                if status is not None:
                    query = query.filter(RankUpdate.status == status.value)
                query = query.order_by(RankUpdate.created_at.asc(), RankUpdate.id.asc())
                if limit is not None:
                    query = query.limit(limit)
                return [RankUpdateRecord.model_validate(row) for row in query.all()]
        except SQLAlchemyError as exc:
            raise BackendUnavailable(f"ledger query failed: {exc}") from exc

    async def update_status(self, purchase_id: str, new_status: RankUpdateStatus, **fields) -> RankUpdateRecord:
        """
        Move a record out of ``pending``. Records only ever leave pending;
        anything else raises InvalidTransition.
        """
        return await self._run(self._update_status, purchase_id, new_status, fields)

    def _update_status(self, purchase_id: str, new_status: RankUpdateStatus, fields: dict) -> RankUpdateRecord:
        try:
            with self.session_factory() as db:
                row = db.query(RankUpdate).filter(RankUpdate.purchase_id == purchase_id).first()
                if row is None:
                    raise RecordNotFound(purchase_id)
                if new_status == RankUpdateStatus.PENDING:
                    raise InvalidTransition(purchase_id, row.status, new_status.value)
                values = {"status": new_status.value, **fields}
                if new_status == RankUpdateStatus.APPLIED:
                    values.setdefault("applied_at", utcnow())
                updated = (
                    db.query(RankUpdate)
                    .filter(RankUpdate.purchase_id == purchase_id)
                    .filter(RankUpdate.status == RankUpdateStatus.PENDING.value)
                    .update(values, synchronize_session=False)
                )
                if updated == 0:
                    db.rollback()
                    db.refresh(row)
                    raise InvalidTransition(purchase_id, row.status, new_status.value)
                db.commit()
                db.refresh(row)
                return RankUpdateRecord.model_validate(row)
        except SQLAlchemyError as exc:
            raise BackendUnavailable(f"ledger update failed: {exc}") from exc

    async def get_purchase(self, purchase_id: str) -> Optional[PurchaseStatusRecord]:
        return await self._run(self._get_purchase, purchase_id)

    def _get_purchase(self, purchase_id: str) -> Optional[PurchaseStatusRecord]:
        try:
            with self.session_factory() as db:
                row = db.query(Purchase).filter(Purchase.purchase_id == purchase_id).first()
                return PurchaseStatusRecord.model_validate(row) if row else None
        except SQLAlchemyError as exc:
            raise BackendUnavailable(f"purchase read failed: {exc}") from exc

    async def write_purchase_status(self, purchase_id: str, status: PurchaseStatus, message: str) -> PurchaseStatusRecord:
        return await self._run(self._write_purchase_status, purchase_id, status, message)

    def _write_purchase_status(self, purchase_id: str, status: PurchaseStatus, message: str) -> PurchaseStatusRecord:
        try:
            with self.session_factory() as db:
                for attempt in range(2):
                    row = db.query(Purchase).filter(Purchase.purchase_id == purchase_id).first()
                    if row is None:
                        row = Purchase(purchase_id=purchase_id)
                        db.add(row)
                    row.status = status.value
                    row.message = message
                    row.updated_at = utcnow()
                    try:
                        db.commit()
                    except IntegrityError:
                        # Lost an insert race with another writer; update its row instead.
                        db.rollback()
                        if attempt:
                            raise
                        continue
                    db.refresh(row)
                    logger.info("Purchase status purchaseId=%s status=%s", purchase_id, status.value)
                    return PurchaseStatusRecord.model_validate(row)
        except SQLAlchemyError as exc:
            raise BackendUnavailable(f"purchase status write failed: {exc}") from exc
        raise BackendUnavailable(f"purchase status write failed for {purchase_id}")


def build_ledger(config: Settings) -> LedgerClient:
    if config.ledger_backend == "postgrest":
        return PostgrestLedgerClient(
            config.supabase_url,
            config.supabase_key,
            timeout=config.request_timeout_seconds,
            max_retries=config.max_retries,
            retry_backoff_seconds=config.retry_backoff_seconds,
        )
    engine = build_engine(config.db_url)
    Base.metadata.create_all(bind=engine)
    return SqlLedgerClient(build_session_factory(engine), timeout=config.request_timeout_seconds)
