"""
Order History Model - write-once archive of assignments that left the active set
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text, Index

from app.db.database import Base


class OrderHistory(Base):
    """Archived assignment; rows are never updated after insert"""

    __tablename__ = "order_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    assignment_id = Column(String(36), nullable=False, index=True)
    worker_id = Column(Integer, nullable=False, index=True)
    worker_name = Column(String(200), nullable=True)

    merchant_id = Column(String(64), nullable=False)
    order_id = Column(String(64), nullable=False, index=True)
    order_number = Column(String(64), nullable=True)
    order_snapshot = Column(JSON, nullable=True)

    # terminal local status: completed / removed / released
    status = Column(String(20), nullable=False)

    assigned_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=True)

    final_remote_status = Column(String(200), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_order_history_worker_finished", "worker_id", "finished_at"),
    )
