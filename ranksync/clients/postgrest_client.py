from typing import Optional

from ranksync.config import PurchaseStatus, RankUpdateStatus
from ranksync.errors import BackendUnavailable, InvalidTransition, RecordNotFound
from ranksync.helpers import RetryingClient, utcnow
from ranksync.logging_config import get_logger
from ranksync.schemas import PurchaseStatusRecord, RankUpdateRecord

logger = get_logger(__name__)

RANK_UPDATES = "/rank_updates"
PURCHASES = "/purchases"


def rest_base_url(project_url: str) -> str:
    url = project_url.rstrip("/")
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return f"{url}/rest/v1"


def _record_from_row(row: dict) -> RankUpdateRecord:
    return RankUpdateRecord(
        id=row.get("id"),
        username=row["username"],
        rank_name=row["rank"],
        purchase_id=row["purchase_id"],
        status=row["status"],
        created_at=row.get("created_at"),
        applied_at=row.get("applied_at"),
    )


class PostgrestLedgerClient(RetryingClient):
    """
    Ledger over a Supabase/PostgREST HTTP API.

    Inserts rely on the table's unique constraint on purchase_id together with
    ``resolution=ignore-duplicates``; an empty representation means the row
    already existed.
    """

    def __init__(self, project_url: str, api_key: str, **kwargs):
        headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        super().__init__(rest_base_url(project_url), headers=headers, **kwargs)

    async def _call(self, method: str, url: str, **kwargs) -> list[dict]:
        resp = await self._request_with_retry(method, url, **kwargs)
        if resp.status_code >= 400:
            raise BackendUnavailable(f"ledger {method} {url} returned {resp.status_code}: {resp.text}")
        if not resp.content:
            return []
        return resp.json()

    async def insert(self, record: RankUpdateRecord) -> bool:
        body = {
            "username": record.username,
            "rank": record.rank_name,
            "purchase_id": record.purchase_id,
            "status": record.status.value,
            "created_at": (record.created_at or utcnow()).isoformat(),
        }
        rows = await self._call(
            "POST",
            RANK_UPDATES,
            params={"on_conflict": "purchase_id"},
            json=body,
            headers={"Prefer": "resolution=ignore-duplicates,return=representation"},
        )
        if not rows:
            logger.info("Rank update already recorded purchaseId=%s", record.purchase_id)
        return bool(rows)

    async def get(self, purchase_id: str) -> Optional[RankUpdateRecord]:
        rows = await self._call("GET", RANK_UPDATES, params={"purchase_id": f"eq.{purchase_id}", "select": "*"})
        return _record_from_row(rows[0]) if rows else None

    async def query_by_status(self, status: RankUpdateStatus) -> list[RankUpdateRecord]:
        rows = await self._call(
            "GET",
            RANK_UPDATES,
            params={"status": f"eq.{status.value}", "select": "*", "order": "created_at.asc"},
        )
        return [_record_from_row(row) for row in rows]

    async def list_records(self, status: Optional[RankUpdateStatus] = None, limit: int = 100) -> list[RankUpdateRecord]:
        params = {"select": "*", "order": "created_at.asc", "limit": str(limit)}
        if status is not None:
            params["status"] = f"eq.{status.value}"
        rows = await self._call("GET", RANK_UPDATES, params=params)
        return [_record_from_row(row) for row in rows]

    async def update_status(self, purchase_id: str, new_status: RankUpdateStatus, **fields) -> RankUpdateRecord:
        if new_status == RankUpdateStatus.PENDING:
            raise InvalidTransition(purchase_id, "unknown", new_status.value)
        body = {"status": new_status.value}
        if new_status == RankUpdateStatus.APPLIED:
            fields.setdefault("applied_at", utcnow())
        body.update({key: value.isoformat() if hasattr(value, "isoformat") else value for key, value in fields.items()})
        rows = await self._call(
            "PATCH",
            RANK_UPDATES,
            params={"purchase_id": f"eq.{purchase_id}", "status": f"eq.{RankUpdateStatus.PENDING.value}"},
            json=body,
            headers={"Prefer": "return=representation"},
        )
        if rows:
            return _record_from_row(rows[0])
        existing = await self.get(purchase_id)
        if existing is None:
            raise RecordNotFound(purchase_id)
        raise InvalidTransition(purchase_id, existing.status.value, new_status.value)

    async def get_purchase(self, purchase_id: str) -> Optional[PurchaseStatusRecord]:
        rows = await self._call(
            "GET",
            PURCHASES,
            params={"purchase_id": f"eq.{purchase_id}", "select": "purchase_id,status,message,updated_at"},
        )
        return PurchaseStatusRecord(**rows[0]) if rows else None

    async def write_purchase_status(self, purchase_id: str, status: PurchaseStatus, message: str) -> PurchaseStatusRecord:
        """
        Purchases rows belong to the storefront; only their status columns are updated here.
        """
        updated_at = utcnow()
        rows = await self._call(
            "PATCH",
            PURCHASES,
            params={"purchase_id": f"eq.{purchase_id}"},
            json={"status": status.value, "message": message, "updated_at": updated_at.isoformat()},
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            logger.warning("No storefront purchase row to update purchaseId=%s status=%s", purchase_id, status.value)
        logger.info("Purchase status purchaseId=%s status=%s", purchase_id, status.value)
        return PurchaseStatusRecord(purchase_id=purchase_id, status=status, message=message, updated_at=updated_at)

