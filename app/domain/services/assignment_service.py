"""
Assignment Service - worker and admin actions on a claimed order.

Every local status change goes through AssignmentStateMachine. Actions may
carry a sync_remote target: the remote order is moved there first, and a
failed write aborts the action before anything local changes.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Principal
from app.core.capabilities import Capability
from app.core.config import WorkflowConfig
from app.core.exceptions import (
    AssignmentNotFoundError,
    ForbiddenError,
    InvalidStateTransitionError,
    RemoteServiceError,
    RemoteStatusPreconditionError,
    WorkerAtCapacityError,
    WorkerNotFoundError,
)
from app.core.logging import get_logger
from app.db.models.order_assignment import (
    ACTIVE_ASSIGNMENT_STATUSES,
    AssignmentStatus,
    OrderAssignment,
)
from app.db.models.order_worker import OrderWorker
from app.domain.services.commerce.gateway import CommerceGateway
from app.domain.services.commerce.status_normalizer import StatusTarget
from app.domain.services.history_service import HistoryService
from app.state_machine import AssignmentStateMachine

logger = get_logger(__name__)


async def ensure_can_act_on(
    db: AsyncSession,
    assignment: OrderAssignment,
    principal: Principal,
) -> None:
    """The assigned worker, or anyone holding MANAGE_ASSIGNMENTS"""
    if principal.can(Capability.MANAGE_ASSIGNMENTS):
        return
    worker = await db.get(OrderWorker, assignment.worker_id)
    if worker is None or worker.user_id != principal.user_id:
        raise ForbiddenError(
            "Only the assigned worker or a supervisor can act on this order",
            details={"assignment_id": assignment.id},
        )


class AssignmentService:
    def __init__(
        self,
        db: AsyncSession,
        gateway: CommerceGateway,
        config: WorkflowConfig,
    ):
        self.db = db
        self.gateway = gateway
        self.config = config
        self.history = HistoryService(db)
        self.state_machine = AssignmentStateMachine(
            in_progress_status_ids=config.in_progress_status_ids,
            in_progress_status_slugs=config.in_progress_status_slugs,
        )

    async def get(self, assignment_id: str) -> OrderAssignment:
        assignment = await self.db.get(OrderAssignment, assignment_id)
        if assignment is None:
            raise AssignmentNotFoundError(assignment_id)
        return assignment

    async def list_active_for_worker(self, worker_id: int) -> list[OrderAssignment]:
        result = await self.db.execute(
            select(OrderAssignment)
            .where(
                OrderAssignment.worker_id == worker_id,
                OrderAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
            )
            .order_by(OrderAssignment.assigned_at)
        )
        return list(result.scalars().all())

    async def _load_for_action(
        self,
        assignment_id: str,
        principal: Principal,
        target: AssignmentStatus,
    ) -> OrderAssignment:
        assignment = await self.get(assignment_id)
        await ensure_can_act_on(self.db, assignment, principal)
        current = AssignmentStatus(assignment.status)
        if not self.state_machine.is_valid_transition(current, target):
            raise InvalidStateTransitionError(current.value, target.value, assignment_id)
        return assignment

    async def _sync_remote(self, assignment: OrderAssignment, target: StatusTarget) -> None:
        """Write the remote status (errors propagate), then refresh the snapshot best effort"""
        await self.gateway.set_order_status(assignment.order_id, target)
        assignment.remote_status_id = target.status_id
        assignment.remote_status_slug = target.slug
        assignment.remote_status_name = None
        try:
            order = await self.gateway.get_order(assignment.order_id)
        except RemoteServiceError as exc:
            logger.warning(
                "Snapshot refresh after remote status write failed",
                extra_data={"assignment_id": assignment.id, "error": exc.message},
            )
            return
        effective = order.status.effective
        if not effective.is_empty:
            assignment.remote_status_id = effective.id
            assignment.remote_status_slug = effective.slug
            assignment.remote_status_name = effective.name
        assignment.last_checked_at = datetime.utcnow()

    async def _transition(
        self,
        assignment_id: str,
        principal: Principal,
        target: AssignmentStatus,
        sync_remote: Optional[StatusTarget],
    ) -> OrderAssignment:
        assignment = await self._load_for_action(assignment_id, principal, target)
        if sync_remote is not None:
            await self._sync_remote(assignment, sync_remote)
        try:
            self.state_machine.ensure_transition(assignment, target)
        except RemoteStatusPreconditionError:
            if sync_remote is not None:
                # keep the refreshed remote status, nothing else changed
                await self.db.commit()
            raise
        return assignment

    async def start(
        self,
        assignment_id: str,
        principal: Principal,
        sync_remote: Optional[StatusTarget] = None,
    ) -> OrderAssignment:
        assignment = await self._transition(
            assignment_id, principal, AssignmentStatus.PREPARING, sync_remote
        )
        now = datetime.utcnow()
        assignment.status = AssignmentStatus.PREPARING
        assignment.started_at = now
        assignment.updated_at = now
        await self.db.commit()
        logger.info(
            "Assignment started",
            extra_data={"assignment_id": assignment_id, "user_id": principal.user_id},
        )
        return assignment

    async def mark_prepared(
        self,
        assignment_id: str,
        principal: Principal,
        sync_remote: Optional[StatusTarget] = None,
    ) -> OrderAssignment:
        assignment = await self._transition(
            assignment_id, principal, AssignmentStatus.PREPARED, sync_remote
        )
        assignment.status = AssignmentStatus.PREPARED
        assignment.updated_at = datetime.utcnow()
        await self.db.commit()
        logger.info(
            "Assignment prepared",
            extra_data={"assignment_id": assignment_id, "user_id": principal.user_id},
        )
        return assignment

    async def mark_shipped(
        self,
        assignment_id: str,
        principal: Principal,
        sync_remote: Optional[StatusTarget] = None,
    ) -> OrderAssignment:
        assignment = await self._transition(
            assignment_id, principal, AssignmentStatus.SHIPPED, sync_remote
        )
        assignment.status = AssignmentStatus.SHIPPED
        assignment.updated_at = datetime.utcnow()
        await self.db.commit()
        logger.info(
            "Assignment shipped",
            extra_data={"assignment_id": assignment_id, "user_id": principal.user_id},
        )
        return assignment

    async def complete(
        self,
        assignment_id: str,
        principal: Principal,
        sync_remote: Optional[StatusTarget] = None,
        notes: Optional[str] = None,
    ) -> OrderAssignment:
        assignment = await self._transition(
            assignment_id, principal, AssignmentStatus.COMPLETED, sync_remote
        )
        now = datetime.utcnow()
        await self.history.archive(
            assignment,
            status=AssignmentStatus.COMPLETED,
            finished_at=now,
            notes=notes,
            final_remote_status=assignment.remote_status_label,
            duration_start=assignment.started_at or assignment.assigned_at,
        )
        assignment.status = AssignmentStatus.COMPLETED
        assignment.completed_at = now
        assignment.updated_at = now
        await self.db.commit()
        logger.info(
            "Assignment completed",
            extra_data={"assignment_id": assignment_id, "user_id": principal.user_id},
        )
        return assignment

    async def refresh_snapshot(
        self,
        assignment_id: str,
        principal: Principal,
    ) -> OrderAssignment:
        """
        Re-fetch order details and items into the snapshot.

        Recovers claims whose items could not be fetched at claim time.
        Remote errors propagate and leave the stored snapshot untouched.
        """
        assignment = await self.get(assignment_id)
        await ensure_can_act_on(self.db, assignment, principal)
        current = AssignmentStatus(assignment.status)
        if current not in ACTIVE_ASSIGNMENT_STATUSES:
            raise InvalidStateTransitionError(current.value, "refreshed", assignment_id)

        order = await self.gateway.get_order(assignment.order_id)
        if not order.items:
            order.items = await self.gateway.get_order_items(assignment.order_id)

        now = datetime.utcnow()
        assignment.order_snapshot = order.snapshot()
        if order.number:
            assignment.order_number = order.number
        effective = order.status.effective
        if not effective.is_empty:
            assignment.remote_status_id = effective.id
            assignment.remote_status_slug = effective.slug
            assignment.remote_status_name = effective.name
        assignment.last_checked_at = now
        assignment.updated_at = now
        await self.db.commit()
        logger.info(
            "Assignment snapshot refreshed",
            extra_data={
                "assignment_id": assignment_id,
                "items": len(order.items),
                "user_id": principal.user_id,
            },
        )
        return assignment

    async def reassign(
        self,
        assignment_id: str,
        worker_id: int,
        principal: Principal,
    ) -> OrderAssignment:
        principal.require(Capability.MANAGE_ASSIGNMENTS)
        assignment = await self.get(assignment_id)
        current = AssignmentStatus(assignment.status)
        if current not in ACTIVE_ASSIGNMENT_STATUSES:
            raise InvalidStateTransitionError(current.value, "reassigned", assignment_id)
        if assignment.worker_id == worker_id:
            return assignment

        worker = await self.db.get(OrderWorker, worker_id)
        if worker is None or not worker.is_active:
            raise WorkerNotFoundError(worker_id)
        active = await self.list_active_for_worker(worker_id)
        if len(active) >= worker.max_concurrent_orders:
            raise WorkerAtCapacityError(worker_id, len(active), worker.max_concurrent_orders)

        previous_worker_id = assignment.worker_id
        assignment.worker_id = worker_id
        assignment.updated_at = datetime.utcnow()
        await self.db.commit()
        logger.info(
            "Assignment reassigned",
            extra_data={
                "assignment_id": assignment_id,
                "from_worker_id": previous_worker_id,
                "to_worker_id": worker_id,
                "by": principal.user_id,
            },
        )
        return assignment

    async def remove(
        self,
        assignment_id: str,
        principal: Principal,
        note: Optional[str] = None,
    ) -> OrderAssignment:
        principal.require(Capability.MANAGE_ASSIGNMENTS)
        assignment = await self.get(assignment_id)
        self.state_machine.ensure_transition(assignment, AssignmentStatus.REMOVED)

        now = datetime.utcnow()
        await self.history.archive(
            assignment,
            status=AssignmentStatus.REMOVED,
            finished_at=now,
            notes=note or f"Removed by {principal.name or principal.user_id}",
            final_remote_status=assignment.remote_status_label,
        )
        assignment.status = AssignmentStatus.REMOVED
        assignment.removed_at = now
        assignment.updated_at = now
        await self.db.commit()
        logger.info(
            "Assignment removed",
            extra_data={"assignment_id": assignment_id, "by": principal.user_id},
        )
        return assignment
