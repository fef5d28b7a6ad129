"""
High Priority Order Model - orders claimed ahead of age ordering
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint

from app.db.database import Base


class HighPriorityOrder(Base):
    __tablename__ = "high_priority_orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    merchant_id = Column(String(64), nullable=False)
    order_id = Column(String(64), nullable=False)
    order_number = Column(String(64), nullable=True)
    reason = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("merchant_id", "order_id", name="uq_high_priority_orders_order"),
    )
