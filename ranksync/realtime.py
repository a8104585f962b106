from typing import Optional

from pydantic import ValidationError

from ranksync.config import RankUpdateStatus
from ranksync.errors import MalformedWebhookPayload
from ranksync.logging_config import get_logger
from ranksync.reconciler import RankReconciler, ReconcileResult
from ranksync.schemas import RealtimeEvent

logger = get_logger(__name__)

WATCHED_TABLE = "rank_updates"
INSERT = "INSERT"


class RealtimeSubscriber:
    """
    Forwards pushed ledger inserts to the reconciler.

    Delivery is at-least-once; repeats are absorbed by the reconciler's
    per-purchase checks, so this class keeps no delivery state of its own.
    """

    def __init__(self, reconciler: RankReconciler):
        self.reconciler = reconciler

    async def handle_event(self, payload: bytes | dict) -> Optional[ReconcileResult]:
        try:
            if isinstance(payload, (bytes, str)):
                event = RealtimeEvent.model_validate_json(payload)
            else:
                event = RealtimeEvent.model_validate(payload)
        except ValidationError as exc:
            raise MalformedWebhookPayload(f"invalid realtime event: {exc.error_count()} error(s)") from exc

        if event.type.upper() != INSERT or event.table != WATCHED_TABLE or event.record is None:
            logger.debug("Ignoring realtime event type=%s table=%s", event.type, event.table)
            return None
        record = event.record
        if record.status != RankUpdateStatus.PENDING:
            return None
        logger.info("Realtime rank update username=%s rank=%s purchaseId=%s", record.username, record.rank, record.purchase_id)
        return await self.reconciler.process_rank_update(record.username, record.rank, record.purchase_id)
