from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from ranksync.database import Base


class RankUpdate(Base):
    __tablename__ = "rank_updates"
    id = Column(Integer, primary_key=True)
    username = Column(String, index=True, nullable=False)
    rank_name = Column("rank", String, nullable=False)
    purchase_id = Column(String, nullable=False)
    status = Column(String, index=True, nullable=False, default="pending")  # pending|applied|error
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    applied_at = Column(DateTime(timezone=True), nullable=True)
    __table_args__ = (UniqueConstraint("purchase_id", name="uq_rank_update_purchase"),)


class Purchase(Base):
    __tablename__ = "purchases"
    id = Column(Integer, primary_key=True)
    purchase_id = Column(String, unique=True, index=True, nullable=False)
    status = Column(String, nullable=False)  # processing|queued|applied|error
    message = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
