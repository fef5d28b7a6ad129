"""
Webhook Log Model - append-only record of every inbound webhook call.

Written before any parsing decision, including calls whose signature fails
or whose body is not JSON, so the raw body can be replayed later.
"""
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text, Index

from app.db.database import Base


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    method = Column(String(10), nullable=False, default="POST")
    url = Column(Text, nullable=True)
    client_ip = Column(String(64), nullable=True)
    headers = Column(JSON, nullable=True)

    signature = Column(String(256), nullable=True)
    signature_header = Column(String(64), nullable=True)
    verified = Column(Boolean, nullable=False, default=False)

    # best-effort extraction
    event = Column(String(100), nullable=True)
    order_id = Column(String(64), nullable=True)
    status = Column(String(100), nullable=True)

    raw_body = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    parse_error = Column(Text, nullable=True)

    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_webhook_logs_received_at", "received_at"),
        Index("ix_webhook_logs_order_id", "order_id"),
    )
