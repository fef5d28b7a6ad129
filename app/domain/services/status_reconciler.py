"""
Status Reconciler - drops assignments whose remote order left the allowed statuses.

An order cancelled, refunded or otherwise moved on the commerce platform
must not keep occupying a worker's capacity. Each sweep re-reads the
remote status of every active assignment and archives the ones outside
the allow-list as "removed". Remote errors skip the row; the next sweep
retries it.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import WorkflowConfig
from app.core.exceptions import RemoteServiceError
from app.core.logging import get_logger, log_async_operation
from app.db.models.order_assignment import AssignmentStatus, OrderAssignment
from app.domain.services.commerce.gateway import CommerceGateway
from app.domain.services.commerce.status_catalog import AllowList, StatusCatalog
from app.domain.services.commerce.status_normalizer import RemoteOrder
from app.domain.services.history_service import HistoryService
from app.state_machine.states import RECONCILE_SWEEP_STATUSES

logger = get_logger(__name__)


@dataclass
class ReconcileSummary:
    checked: int = 0
    invalidated: int = 0
    invalidated_order_numbers: list[str] = field(default_factory=list)
    skipped: int = 0

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "invalidated": self.invalidated,
            "invalidated_order_numbers": list(self.invalidated_order_numbers),
            "skipped": self.skipped,
        }


class StatusReconciler:
    def __init__(
        self,
        db: AsyncSession,
        gateway: CommerceGateway,
        config: WorkflowConfig,
        catalog: Optional[StatusCatalog] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.config = config
        self.catalog = catalog or StatusCatalog(gateway, config)
        self.history = HistoryService(db)

    async def _load_sweep_targets(self, worker_id: Optional[int]) -> list[str]:
        query = select(OrderAssignment.id).where(
            OrderAssignment.status.in_(RECONCILE_SWEEP_STATUSES)
        )
        if worker_id is not None:
            query = query.where(OrderAssignment.worker_id == worker_id)
        result = await self.db.execute(query.order_by(OrderAssignment.assigned_at))
        return list(result.scalars().all())

    @log_async_operation("reconcile_assignments")
    async def reconcile(self, worker_id: Optional[int] = None) -> ReconcileSummary:
        """Sweep active assignments (optionally of one worker) against the remote platform"""
        summary = ReconcileSummary()
        assignment_ids = await self._load_sweep_targets(worker_id)
        if not assignment_ids:
            return summary

        allow_list = await self.catalog.resolve_allow_list()

        for assignment_id in assignment_ids:
            # re-fetched per row: a rollback below expires everything loaded so far
            assignment = await self.db.get(OrderAssignment, assignment_id)
            if assignment is None:
                continue
            summary.checked += 1
            try:
                invalidated = await self.reconcile_assignment(assignment, allow_list)
            except RemoteServiceError as exc:
                summary.skipped += 1
                logger.warning(
                    "Reconcile skipped assignment, remote status unavailable",
                    extra_data={
                        "assignment_id": assignment.id,
                        "order_id": assignment.order_id,
                        "error": exc.message,
                    },
                )
                continue
            except SQLAlchemyError as exc:
                await self.db.rollback()
                summary.skipped += 1
                logger.error(
                    "Reconcile failed to persist assignment",
                    extra_data={"assignment_id": assignment_id, "error": str(exc)},
                    exc_info=True,
                )
                continue

            if invalidated:
                summary.invalidated += 1
                summary.invalidated_order_numbers.append(
                    assignment.order_number or assignment.order_id
                )

        logger.info("Reconcile sweep finished", extra_data=summary.to_dict())
        return summary

    async def reconcile_assignment(
        self,
        assignment: OrderAssignment,
        allow_list: Optional[AllowList] = None,
        *,
        remote_order: Optional[RemoteOrder] = None,
    ) -> bool:
        """
        Re-check one assignment. Returns True when it was invalidated.

        Raises RemoteServiceError when the remote order cannot be read;
        the assignment is left untouched in that case.
        """
        if assignment.status not in RECONCILE_SWEEP_STATUSES:
            return False
        if allow_list is None:
            allow_list = await self.catalog.resolve_allow_list()
        if remote_order is None:
            remote_order = await self.gateway.get_order(assignment.order_id)

        now = datetime.utcnow()
        status = remote_order.status
        effective = status.effective
        assignment.remote_status_id = effective.id
        assignment.remote_status_slug = effective.slug
        assignment.remote_status_name = effective.name
        assignment.last_checked_at = now

        if allow_list.permits(status):
            await self.db.commit()
            return False

        label = status.label or "unknown"
        await self.history.archive(
            assignment,
            status=AssignmentStatus.REMOVED,
            finished_at=now,
            notes=f"Status changed remotely to: {label}",
            final_remote_status=label,
        )
        assignment.status = AssignmentStatus.REMOVED
        assignment.removed_at = now
        assignment.updated_at = now
        await self.db.commit()

        logger.info(
            "Assignment invalidated by remote status",
            extra_data={
                "assignment_id": assignment.id,
                "order_id": assignment.order_id,
                "worker_id": assignment.worker_id,
                "remote_status": label,
            },
        )
        return True
