"""
Capacity Allocator - claims the next eligible remote order for a worker.

Claim exclusivity is enforced by the partial unique index on
order_assignments (merchant_id, order_id) for active rows, not by an
application lock. A losing insert raises IntegrityError inside a savepoint,
which is treated as "taken by someone else" and the next candidate is tried.
"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import WorkflowConfig
from app.core.exceptions import (
    RemoteServiceError,
    RemoteTimeoutError,
    RemoteTransientError,
)
from app.core.logging import get_logger
from app.db.models.order_assignment import (
    ACTIVE_ASSIGNMENT_STATUSES,
    AssignmentStatus,
    OrderAssignment,
)
from app.db.models.order_worker import OrderWorker
from app.domain.services.commerce.gateway import CommerceGateway
from app.domain.services.commerce.status_normalizer import RemoteOrder, StatusTarget
from app.domain.services.priority_service import PriorityService

logger = get_logger(__name__)


class ClaimOutcome(str, enum.Enum):
    CLAIMED = "claimed"
    NO_ORDERS = "no_orders"
    AT_CAPACITY = "at_capacity"
    REMOTE_UNAVAILABLE = "remote_unavailable"
    WORKER_INACTIVE = "worker_inactive"


@dataclass
class ClaimResult:
    outcome: ClaimOutcome
    message: str
    assignment: Optional[OrderAssignment] = None
    active_count: int = 0
    max_orders: int = 0

    @property
    def claimed(self) -> bool:
        return self.outcome == ClaimOutcome.CLAIMED


class _Attempt(enum.Enum):
    CLAIMED = "claimed"
    CONFLICT = "conflict"
    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"
    OVER_CAPACITY = "over_capacity"


_NO_TIMESTAMP = datetime.max


class CapacityAllocator:
    """
    claim_next_order():
    1. Lock the worker row and check active count < max_concurrent_orders
    2. Collect candidates from the worker's scope (or the new-order filters)
    3. Drop orders that already have an active assignment
    4. Rank: priority list first (in flag order), then oldest first
    5. Insert in a savepoint; optionally move the remote order to in-progress
       before committing, rolling back the savepoint if that fails

    The remote status write in step 5 runs inside the open transaction, so the
    worker row lock from step 1 and the uncommitted assignment row are held
    until it returns. Worst case that is COMMERCE_RETRY_MAX_ATTEMPTS times
    COMMERCE_API_TIMEOUT_SECONDS plus the retry backoff (capped at
    COMMERCE_RETRY_MAX_DELAY_MS per attempt). Other claims by the same worker,
    and claims of the same order, wait on those locks meanwhile.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: CommerceGateway,
        config: WorkflowConfig,
        priority_service: Optional[PriorityService] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.config = config
        self.priority_service = priority_service or PriorityService(db)

    async def count_active(self, worker_id: int) -> int:
        result = await self.db.execute(
            select(func.count(OrderAssignment.id)).where(
                OrderAssignment.worker_id == worker_id,
                OrderAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
            )
        )
        return int(result.scalar_one())

    async def claim_next_order(self, worker: OrderWorker) -> ClaimResult:
        worker_id = worker.id
        # serializes concurrent claims of the same worker on PostgreSQL
        locked = await self.db.execute(
            select(OrderWorker).where(OrderWorker.id == worker_id).with_for_update()
        )
        worker = locked.scalar_one()
        max_orders = worker.max_concurrent_orders

        if not worker.is_active or not worker.auto_assign_enabled:
            await self.db.rollback()
            return ClaimResult(
                outcome=ClaimOutcome.WORKER_INACTIVE,
                message="Your worker profile is inactive or not eligible for auto-assignment",
                max_orders=max_orders,
            )

        active_count = await self.count_active(worker_id)
        if active_count >= max_orders:
            await self.db.rollback()
            logger.info(
                "Claim refused, worker at capacity",
                extra_data={"worker_id": worker_id, "active": active_count, "max": max_orders},
            )
            return self._at_capacity(active_count, max_orders)

        scope = (worker.status_scope,) if worker.status_scope else self.config.new_order_status_filters
        candidates, reachable = await self._collect_candidates(scope)
        if not reachable:
            await self.db.rollback()
            return ClaimResult(
                outcome=ClaimOutcome.REMOTE_UNAVAILABLE,
                message="The commerce platform is unreachable right now, please try again shortly",
                active_count=active_count,
                max_orders=max_orders,
            )

        claimed_ids = await self._load_claimed_order_ids([c.id for c in candidates])
        available = [c for c in candidates if c.id not in claimed_ids]
        priority_ranks = await self.priority_service.get_priority_ranks(self.config.merchant_id)
        ranked = self.rank_candidates(available, priority_ranks)

        logger.info(
            "Claim candidates selected",
            extra_data={
                "worker_id": worker_id,
                "scope": list(scope),
                "fetched": len(candidates),
                "already_claimed": len(claimed_ids),
                "priority": sum(1 for c in ranked if c.id in priority_ranks),
            },
        )

        conflicts = 0
        for candidate in ranked:
            order = await self._fetch_details(candidate)
            attempt, assignment = await self._try_claim(
                worker_id, max_orders, order, is_priority=candidate.id in priority_ranks
            )

            if attempt == _Attempt.CLAIMED:
                return ClaimResult(
                    outcome=ClaimOutcome.CLAIMED,
                    message=f"Order {assignment.order_number or assignment.order_id} assigned to you",
                    assignment=assignment,
                    active_count=active_count + 1,
                    max_orders=max_orders,
                )
            if attempt == _Attempt.OVER_CAPACITY:
                await self.db.rollback()
                return self._at_capacity(max_orders, max_orders)
            if attempt == _Attempt.UNAVAILABLE:
                await self.db.rollback()
                return ClaimResult(
                    outcome=ClaimOutcome.REMOTE_UNAVAILABLE,
                    message="The commerce platform is unreachable right now, please try again shortly",
                    active_count=active_count,
                    max_orders=max_orders,
                )
            if attempt == _Attempt.CONFLICT:
                conflicts += 1
                if conflicts > self.config.claim_conflict_retries:
                    break

        await self.db.rollback()
        return ClaimResult(
            outcome=ClaimOutcome.NO_ORDERS,
            message="No orders are available to claim right now",
            active_count=active_count,
            max_orders=max_orders,
        )

    @staticmethod
    def _at_capacity(active_count: int, max_orders: int) -> ClaimResult:
        return ClaimResult(
            outcome=ClaimOutcome.AT_CAPACITY,
            message=(
                f"You already have {active_count} of {max_orders} active orders, "
                "finish one before claiming another"
            ),
            active_count=active_count,
            max_orders=max_orders,
        )

    @staticmethod
    def rank_candidates(
        orders: list[RemoteOrder],
        priority_ranks: dict[str, int],
    ) -> list[RemoteOrder]:
        """Priority orders first in flag order, then everything oldest first"""
        def key(order: RemoteOrder):
            rank = priority_ranks.get(order.id)
            return (
                0 if rank is not None else 1,
                rank if rank is not None else 0,
                order.created_at or _NO_TIMESTAMP,
                order.id,
            )
        return sorted(orders, key=key)

    async def _collect_candidates(self, scope: tuple[str, ...]) -> tuple[list[RemoteOrder], bool]:
        """Merged, de-duplicated orders from every filter; reachable=False if all fetches failed"""
        seen: dict[str, RemoteOrder] = {}
        reachable = False
        for status_filter in scope:
            try:
                orders = await self.gateway.list_orders(
                    status_filter, limit=self.config.claim_candidate_limit
                )
            except RemoteServiceError as exc:
                logger.warning(
                    "Failed to fetch claim candidates",
                    extra_data={"status_filter": status_filter, "error": exc.message},
                )
                continue
            reachable = True
            for order in orders:
                seen.setdefault(order.id, order)

        ordered = sorted(seen.values(), key=lambda o: (o.created_at or _NO_TIMESTAMP, o.id))
        return ordered, reachable

    async def _load_claimed_order_ids(self, order_ids: list[str]) -> set[str]:
        if not order_ids:
            return set()
        result = await self.db.execute(
            select(OrderAssignment.order_id).where(
                OrderAssignment.merchant_id == self.config.merchant_id,
                OrderAssignment.order_id.in_(order_ids),
                OrderAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
            )
        )
        return set(result.scalars().all())

    async def _fetch_details(self, summary: RemoteOrder) -> RemoteOrder:
        """Order details and items, best effort: the list summary is enough to claim"""
        order = summary
        try:
            order = await self.gateway.get_order(summary.id)
        except RemoteServiceError as exc:
            logger.warning(
                "Failed to fetch order details, claiming with summary data",
                extra_data={"order_id": summary.id, "error": exc.message},
            )
        if order.status.is_empty:
            order.status = summary.status
        if order.created_at is None:
            order.created_at = summary.created_at

        if not order.items:
            try:
                order.items = await self.gateway.get_order_items(summary.id)
            except RemoteServiceError as exc:
                logger.warning(
                    "Failed to fetch order items",
                    extra_data={"order_id": summary.id, "error": exc.message},
                )
                order.items = []
        return order

    async def _try_claim(
        self,
        worker_id: int,
        max_orders: int,
        order: RemoteOrder,
        *,
        is_priority: bool,
    ) -> tuple[_Attempt, Optional[OrderAssignment]]:
        status = order.status.effective
        assignment = OrderAssignment(
            merchant_id=self.config.merchant_id,
            order_id=order.id,
            order_number=order.number,
            worker_id=worker_id,
            status=AssignmentStatus.ASSIGNED,
            remote_status_id=status.id,
            remote_status_slug=status.slug,
            remote_status_name=status.name,
            order_snapshot=order.snapshot(),
            is_high_priority=is_priority,
            assigned_at=datetime.utcnow(),
        )

        savepoint = await self.db.begin_nested()
        try:
            self.db.add(assignment)
            await self.db.flush()
        except IntegrityError:
            await savepoint.rollback()
            logger.info(
                "Claim conflict, order taken concurrently",
                extra_data={"order_id": order.id, "worker_id": worker_id},
            )
            return _Attempt.CONFLICT, None

        if await self.count_active(worker_id) > max_orders:
            await savepoint.rollback()
            return _Attempt.OVER_CAPACITY, None

        target_id = self.config.claim_target_status_id
        if self.config.mark_in_progress_on_claim and target_id:
            try:
                await self.gateway.set_order_status(order.id, StatusTarget(status_id=target_id))
            except (RemoteTransientError, RemoteTimeoutError) as exc:
                await savepoint.rollback()
                logger.warning(
                    "Claim aborted, remote status update unavailable",
                    extra_data={"order_id": order.id, "error": exc.message},
                )
                return _Attempt.UNAVAILABLE, None
            except RemoteServiceError as exc:
                await savepoint.rollback()
                logger.warning(
                    "Claim skipped, remote status update rejected",
                    extra_data={"order_id": order.id, "error": exc.message},
                )
                return _Attempt.REJECTED, None

            assignment.remote_status_id = target_id
            assignment.remote_status_slug = None
            assignment.remote_status_name = None

        await savepoint.commit()
        await self.db.commit()

        logger.info(
            "Order claimed",
            extra_data={
                "assignment_id": assignment.id,
                "order_id": order.id,
                "worker_id": worker_id,
                "high_priority": is_priority,
            },
        )
        return _Attempt.CLAIMED, assignment
