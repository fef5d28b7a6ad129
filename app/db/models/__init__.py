"""
Database Models
"""
from app.db.models.order_worker import OrderWorker
from app.db.models.order_assignment import OrderAssignment, AssignmentStatus
from app.db.models.order_history import OrderHistory
from app.db.models.high_priority_order import HighPriorityOrder
from app.db.models.webhook_log import WebhookLog
from app.db.models.webhook_event import WebhookEvent

__all__ = [
    "OrderWorker",
    "OrderAssignment",
    "AssignmentStatus",
    "OrderHistory",
    "HighPriorityOrder",
    "WebhookLog",
    "WebhookEvent",
]
