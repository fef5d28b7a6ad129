"""
Order Worker Model - capacity profile of a warehouse worker
"""
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from app.db.database import Base


class OrderWorker(Base):
    """A named actor eligible to claim orders"""

    __tablename__ = "order_workers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # subject from the identity provider
    user_id = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    auto_assign_enabled = Column(Boolean, default=True, nullable=False)
    max_concurrent_orders = Column(Integer, default=1, nullable=False)
    # remote status id or slug; None means the default new-order pool
    status_scope = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
