"""
History Service - write-once archive of assignments leaving the active set
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.order_assignment import (
    ACTIVE_ASSIGNMENT_STATUSES,
    AssignmentStatus,
    OrderAssignment,
)
from app.db.models.order_history import OrderHistory
from app.db.models.order_worker import OrderWorker


def compute_duration_seconds(
    started_at: Optional[datetime],
    finished_at: datetime,
) -> Optional[int]:
    """Whole seconds between start and finish; None without a start"""
    if started_at is None:
        return None
    return max(int((finished_at - started_at).total_seconds()), 0)


@dataclass
class PerformanceStats:
    assigned: int = 0
    completed: int = 0
    active: int = 0
    total_duration_seconds: int = 0

    @property
    def completion_rate(self) -> int:
        """Completed share of assigned, in whole percent"""
        return round(self.completed * 100 / self.assigned) if self.assigned else 0

    @property
    def avg_duration_seconds(self) -> Optional[int]:
        return round(self.total_duration_seconds / self.completed) if self.completed else None

    def add(self, assignment: OrderAssignment) -> None:
        self.assigned += 1
        if assignment.status == AssignmentStatus.COMPLETED and assignment.completed_at is not None:
            self.completed += 1
            self.total_duration_seconds += compute_duration_seconds(
                assignment.started_at or assignment.assigned_at, assignment.completed_at
            ) or 0
        elif assignment.status in ACTIVE_ASSIGNMENT_STATUSES:
            self.active += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "assigned": self.assigned,
            "completed": self.completed,
            "active": self.active,
            "completion_rate": self.completion_rate,
            "avg_duration_seconds": self.avg_duration_seconds,
        }


@dataclass
class WorkerPerformance:
    worker_id: int
    worker_name: Optional[str]
    stats: PerformanceStats = field(default_factory=PerformanceStats)


@dataclass
class PerformanceReport:
    since: datetime
    until: datetime
    workers: list[WorkerPerformance]
    totals: PerformanceStats


class HistoryService:
    """
    Appends OrderHistory rows.

    Entries are added to the caller's session and committed together with
    the assignment's terminal status change, so an assignment leaves the
    active set and gets archived atomically. There is no update method.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def archive(
        self,
        assignment: OrderAssignment,
        *,
        status: AssignmentStatus,
        finished_at: datetime,
        notes: Optional[str] = None,
        final_remote_status: Optional[str] = None,
        duration_start: Optional[datetime] = None,
    ) -> OrderHistory:
        worker = await self.db.get(OrderWorker, assignment.worker_id)
        started = duration_start if duration_start is not None else assignment.started_at

        entry = OrderHistory(
            assignment_id=assignment.id,
            worker_id=assignment.worker_id,
            worker_name=worker.name if worker else None,
            merchant_id=assignment.merchant_id,
            order_id=assignment.order_id,
            order_number=assignment.order_number,
            order_snapshot=assignment.order_snapshot,
            status=status.value,
            assigned_at=assignment.assigned_at,
            started_at=assignment.started_at,
            finished_at=finished_at,
            duration_seconds=compute_duration_seconds(started, finished_at),
            final_remote_status=final_remote_status,
            notes=notes,
        )
        self.db.add(entry)
        return entry

    async def list_history(
        self,
        *,
        worker_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[OrderHistory]:
        query = select(OrderHistory)
        if worker_id is not None:
            query = query.where(OrderHistory.worker_id == worker_id)
        if status:
            query = query.where(OrderHistory.status == status)
        query = query.order_by(OrderHistory.finished_at.desc(), OrderHistory.id.desc())
        result = await self.db.execute(query.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def performance(self, since: datetime, until: datetime) -> PerformanceReport:
        """
        Per-worker counts for assignments claimed within [since, until].

        Duration runs from started_at (else assigned_at) to completion, the
        same measure the archive records. Busiest workers first.
        """
        result = await self.db.execute(
            select(OrderAssignment, OrderWorker.name)
            .join(OrderWorker, OrderWorker.id == OrderAssignment.worker_id)
            .where(OrderAssignment.assigned_at >= since, OrderAssignment.assigned_at <= until)
        )

        by_worker: dict[int, WorkerPerformance] = {}
        totals = PerformanceStats()
        for assignment, worker_name in result.all():
            row = by_worker.setdefault(
                assignment.worker_id, WorkerPerformance(assignment.worker_id, worker_name)
            )
            row.stats.add(assignment)
            totals.add(assignment)

        workers = sorted(by_worker.values(), key=lambda w: (-w.stats.assigned, w.worker_id))
        return PerformanceReport(since=since, until=until, workers=workers, totals=totals)
