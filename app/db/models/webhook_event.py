"""
Webhook Event Model - deduplicated projection of order status webhooks.

One row per (order id, status) pair. A second delivery of the same pair hits
the unique key and is reported downstream as a duplicate.
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, JSON, String, Index

from app.db.database import Base


def build_unique_key(order_id: str, status: str) -> str:
    return f"{order_id}:{status}"


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    unique_key = Column(String(300), unique=True, nullable=False)
    event = Column(String(100), nullable=True)
    order_id = Column(String(64), nullable=False)
    status = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_webhook_events_order_id", "order_id"),
    )
