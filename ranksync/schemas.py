from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ranksync.config import PurchaseStatus, RankUpdateStatus


class PurchaseWebhookPayload(BaseModel):
    username: str = Field(..., min_length=1)
    rank: str = Field(..., min_length=1)
    purchaseId: str = Field(..., min_length=1)


class WebhookResponse(BaseModel):
    status: int
    message: str


class RankUpdateRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    username: str
    rank_name: str
    purchase_id: str
    status: RankUpdateStatus = RankUpdateStatus.PENDING
    created_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None


class PurchaseStatusRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    purchase_id: str
    status: PurchaseStatus
    message: Optional[str] = None
    updated_at: Optional[datetime] = None


class RealtimeRecord(BaseModel):
    username: str
    rank: str
    purchase_id: str
    status: RankUpdateStatus = RankUpdateStatus.PENDING


class RealtimeEvent(BaseModel):
    """Database-change push in the shape Supabase database webhooks send."""

    type: str
    table: str
    record: Optional[RealtimeRecord] = None


class PlayerConnect(BaseModel):
    username: str
    identity: str
    server: Optional[str] = None


class PlayerDisconnect(BaseModel):
    username: str
