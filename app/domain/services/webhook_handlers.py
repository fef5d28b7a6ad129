"""
Downstream handling of parsed commerce webhooks.

Only order status notifications have side effects: the active assignment
for the order gets its remote status refreshed, and is invalidated through
the reconciler when the new status is outside the allow-list.
"""
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import WorkflowConfig
from app.core.logging import get_logger
from app.db.models.order_assignment import ACTIVE_ASSIGNMENT_STATUSES, OrderAssignment
from app.domain.services.commerce.gateway import CommerceGateway
from app.domain.services.commerce.status_normalizer import RemoteOrder, normalize_remote_status
from app.domain.services.status_reconciler import StatusReconciler
from app.state_machine.states import RECONCILE_SWEEP_STATUSES

logger = get_logger(__name__)

ORDER_STATUS_EVENTS = frozenset({"order.status.updated"})


class CommerceWebhookHandler:
    def __init__(
        self,
        db: AsyncSession,
        gateway: CommerceGateway,
        config: WorkflowConfig,
        reconciler: Optional[StatusReconciler] = None,
    ):
        self.db = db
        self.config = config
        self.reconciler = reconciler or StatusReconciler(db, gateway, config)

    async def handle(
        self,
        event: Optional[str],
        payload: Any,
        *,
        order: dict[str, Any],
        order_id: Optional[str],
        status: Optional[str],
        duplicate: bool,
    ) -> bool:
        """Returns True when the event changed local state"""
        if event not in ORDER_STATUS_EVENTS:
            logger.debug("Webhook event ignored", extra_data={"event": event})
            return False
        if duplicate or not order_id or not status:
            return False

        result = await self.db.execute(
            select(OrderAssignment).where(
                OrderAssignment.merchant_id == self.config.merchant_id,
                OrderAssignment.order_id == order_id,
                OrderAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
            )
        )
        assignment = result.scalar_one_or_none()
        if assignment is None:
            return False

        remote_status = normalize_remote_status(
            {key: order[key] for key in ("status", "sub_status") if key in order} or status
        )
        if remote_status.is_empty:
            remote_status = normalize_remote_status(status)

        invalidated = False
        if assignment.status in RECONCILE_SWEEP_STATUSES:
            invalidated = await self.reconciler.reconcile_assignment(
                assignment,
                remote_order=RemoteOrder(id=order_id, status=remote_status),
            )
        else:
            effective = remote_status.effective
            assignment.remote_status_id = effective.id
            assignment.remote_status_slug = effective.slug
            assignment.remote_status_name = effective.name
            assignment.last_checked_at = datetime.utcnow()
            await self.db.commit()

        logger.info(
            "Assignment refreshed from webhook",
            extra_data={
                "assignment_id": assignment.id,
                "order_id": order_id,
                "status": status,
                "invalidated": invalidated,
            },
        )
        return True
