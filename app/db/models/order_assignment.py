"""
Order Assignment Model - a worker's exclusive claim on one remote order
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    text,
)

from app.db.database import Base


class AssignmentStatus(str, enum.Enum):
    ASSIGNED = "assigned"
    PREPARING = "preparing"
    PREPARED = "prepared"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    REMOVED = "removed"  # remote status drifted, or removed by an admin
    RELEASED = "released"  # handed back to the unclaimed pool


ACTIVE_ASSIGNMENT_STATUSES = frozenset({
    AssignmentStatus.ASSIGNED,
    AssignmentStatus.PREPARING,
    AssignmentStatus.PREPARED,
    AssignmentStatus.SHIPPED,
})

TERMINAL_ASSIGNMENT_STATUSES = frozenset({
    AssignmentStatus.COMPLETED,
    AssignmentStatus.REMOVED,
    AssignmentStatus.RELEASED,
})

# partial index predicate; must match ACTIVE_ASSIGNMENT_STATUSES
_ACTIVE_PREDICATE = "status IN ('assigned', 'preparing', 'prepared', 'shipped')"


def generate_assignment_id() -> str:
    return str(uuid.uuid4())


class OrderAssignment(Base):
    """Assignment of a remote order to a worker"""

    __tablename__ = "order_assignments"

    id = Column(String(36), primary_key=True, default=generate_assignment_id)
    merchant_id = Column(String(64), nullable=False)
    order_id = Column(String(64), nullable=False, index=True)
    order_number = Column(String(64), nullable=True)
    worker_id = Column(Integer, ForeignKey("order_workers.id"), nullable=False, index=True)

    # stored by value so the partial index predicate can name them
    status = Column(
        SQLEnum(
            AssignmentStatus,
            name="assignment_status",
            native_enum=False,
            length=20,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        default=AssignmentStatus.ASSIGNED,
        index=True,
    )

    # last-known remote status snapshot
    remote_status_id = Column(String(64), nullable=True)
    remote_status_slug = Column(String(100), nullable=True)
    remote_status_name = Column(String(200), nullable=True)

    # items, totals and customer summary captured at claim time
    order_snapshot = Column(JSON, nullable=True)
    is_high_priority = Column(Boolean, default=False, nullable=False)
    notes = Column(Text, nullable=True)

    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    removed_at = Column(DateTime, nullable=True)
    last_checked_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        # at most one active assignment per remote order
        Index(
            "uq_order_assignments_active_order",
            "merchant_id",
            "order_id",
            unique=True,
            postgresql_where=text(_ACTIVE_PREDICATE),
            sqlite_where=text(_ACTIVE_PREDICATE),
        ),
        Index("ix_order_assignments_worker_status", "worker_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ASSIGNMENT_STATUSES

    @property
    def remote_status_label(self) -> str | None:
        """Best human-readable remote status"""
        return self.remote_status_name or self.remote_status_slug or self.remote_status_id
