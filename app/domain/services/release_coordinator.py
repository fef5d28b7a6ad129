"""
Release Coordinator - hands an order back to the pool with confirmation.

The remote order is moved to the release target first, then its status is
polled until the platform reports the target (or the poll budget runs
out). The local assignment is released only after the remote write was
accepted, so a failed write leaves the worker's assignment untouched.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Principal
from app.core.config import WorkflowConfig
from app.core.exceptions import (
    AssignmentNotFoundError,
    InvalidStateTransitionError,
    RemoteRejectedError,
    RemoteServiceError,
)
from app.core.logging import get_logger
from app.db.models.order_assignment import AssignmentStatus, OrderAssignment
from app.domain.services.assignment_service import ensure_can_act_on
from app.domain.services.commerce.gateway import CommerceGateway
from app.domain.services.commerce.status_normalizer import RemoteStatus, StatusTarget
from app.domain.services.history_service import HistoryService
from app.state_machine.states import RELEASABLE_STATUSES

logger = get_logger(__name__)


@dataclass
class ReleaseResult:
    confirmed: bool
    message: str
    remote_status: Optional[str] = None
    assignment_id: Optional[str] = None


class ReleaseCoordinator:
    def __init__(
        self,
        db: AsyncSession,
        gateway: CommerceGateway,
        config: WorkflowConfig,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.config = config
        self.history = HistoryService(db)
        self._sleep = sleep or asyncio.sleep

    async def release(
        self,
        assignment_id: str,
        principal: Principal,
        target: Optional[StatusTarget] = None,
    ) -> ReleaseResult:
        assignment = await self.db.get(OrderAssignment, assignment_id)
        if assignment is None:
            raise AssignmentNotFoundError(assignment_id)

        await ensure_can_act_on(self.db, assignment, principal)

        current = AssignmentStatus(assignment.status)
        if current not in RELEASABLE_STATUSES:
            raise InvalidStateTransitionError(current.value, AssignmentStatus.RELEASED.value, assignment_id)

        target = target or StatusTarget.parse(self.config.release_target_status_id)
        order_id = assignment.order_id

        try:
            await self.gateway.set_order_status(order_id, target)
        except RemoteRejectedError:
            raise
        except RemoteServiceError as exc:
            raise RemoteRejectedError(
                f"Releasing order {assignment.order_number or order_id} failed: {exc.message}",
                details={"assignment_id": assignment_id, "target": target.label, **exc.details},
            ) from exc

        observed = await self._await_confirmation(order_id, target)
        confirmed = observed is not None and observed.matches(target.status_id, target.slug)

        now = datetime.utcnow()
        snapshot = observed.effective if confirmed else None
        assignment.remote_status_id = snapshot.id if snapshot else target.status_id
        assignment.remote_status_slug = snapshot.slug if snapshot else target.slug
        assignment.remote_status_name = snapshot.name if snapshot else None
        assignment.last_checked_at = now

        remote_label = (observed.label if confirmed else None) or target.label
        await self.history.archive(
            assignment,
            status=AssignmentStatus.RELEASED,
            finished_at=now,
            notes=f"Released by {principal.name or principal.user_id}",
            final_remote_status=remote_label,
        )
        assignment.status = AssignmentStatus.RELEASED
        assignment.removed_at = now
        assignment.updated_at = now
        await self.db.commit()

        order_label = assignment.order_number or order_id
        if confirmed:
            message = f"Order {order_label} released and confirmed as '{remote_label}'"
        else:
            message = (
                f"Order {order_label} released; the platform has not confirmed "
                f"'{target.label}' yet"
            )

        logger.info(
            "Assignment released",
            extra_data={
                "assignment_id": assignment_id,
                "order_id": order_id,
                "released_by": principal.user_id,
                "confirmed": confirmed,
                "remote_status": remote_label,
            },
        )
        return ReleaseResult(
            confirmed=confirmed,
            message=message,
            remote_status=remote_label,
            assignment_id=assignment_id,
        )

    async def _await_confirmation(
        self,
        order_id: str,
        target: StatusTarget,
    ) -> Optional[RemoteStatus]:
        """Last observed remote status; stops early once it matches the target"""
        observed: Optional[RemoteStatus] = None
        attempts = self.config.release_poll_attempts
        for attempt in range(1, attempts + 1):
            try:
                order = await self.gateway.get_order(order_id)
            except RemoteServiceError as exc:
                logger.warning(
                    "Release confirmation poll failed",
                    extra_data={"order_id": order_id, "attempt": attempt, "error": exc.message},
                )
            else:
                observed = order.status
                if observed.matches(target.status_id, target.slug):
                    return observed
            if attempt < attempts:
                await self._sleep(self.config.release_poll_delay_ms / 1000)
        return observed
