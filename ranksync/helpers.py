import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from ranksync.errors import BackendUnavailable
from ranksync.logging_config import get_logger
from ranksync.schemas import RankUpdateRecord

logger = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_rank_update(record: RankUpdateRecord) -> dict:
    return {
        "id": record.id,
        "username": record.username,
        "rank": record.rank_name,
        "purchaseId": record.purchase_id,
        "status": record.status.value,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
        "appliedAt": record.applied_at.isoformat() if record.applied_at else None,
    }


class RetryingClient:
    """
    httpx.AsyncClient wrapper that retries 429 and 5xx responses with exponential backoff.
    Transport errors surface as BackendUnavailable once retries are exhausted.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        headers: Optional[dict] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout, transport=transport)
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds

    async def _request_with_retry(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        retries = 0
        backoff = self.retry_backoff_seconds
        while True:
            try:
                response = await self.client.request(method, url, **kwargs)
            except httpx.RequestError as exc:
                if retries >= self.max_retries:
                    raise BackendUnavailable(f"{method} {url} failed: {exc}") from exc
                logger.warning("Request error method=%s url=%s error=%s retry=%s", method, url, exc, retries + 1)
                await asyncio.sleep(backoff)
                retries += 1
                backoff *= 2
                continue
            if response.status_code == 429 or response.status_code >= 500:
                if retries >= self.max_retries:
                    return response
                retry_after = response.headers.get("Retry-After")
                wait = float(retry_after) if retry_after else backoff
                await asyncio.sleep(wait)
                retries += 1
                backoff *= 2
                continue
            return response

    async def aclose(self) -> None:
        await self.client.aclose()
