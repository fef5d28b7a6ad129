"""
Worker Service - capacity profiles of order-preparation workers
"""
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AppException, ErrorCode, ValidationException, WorkerNotFoundError
from app.core.logging import get_logger
from app.db.models.order_assignment import ACTIVE_ASSIGNMENT_STATUSES, OrderAssignment
from app.db.models.order_worker import OrderWorker

logger = get_logger(__name__)

UPDATABLE_FIELDS = frozenset({
    "name",
    "is_active",
    "auto_assign_enabled",
    "max_concurrent_orders",
    "status_scope",
})


class WorkerService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, worker_id: int) -> OrderWorker:
        worker = await self.db.get(OrderWorker, worker_id)
        if worker is None:
            raise WorkerNotFoundError(worker_id)
        return worker

    async def get_by_user_id(self, user_id: str) -> Optional[OrderWorker]:
        result = await self.db.execute(
            select(OrderWorker).where(OrderWorker.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def require_by_user_id(self, user_id: str) -> OrderWorker:
        worker = await self.get_by_user_id(user_id)
        if worker is None:
            raise WorkerNotFoundError(user_id)
        return worker

    async def list_workers(self, include_inactive: bool = True) -> list[OrderWorker]:
        query = select(OrderWorker)
        if not include_inactive:
            query = query.where(OrderWorker.is_active.is_(True))
        result = await self.db.execute(query.order_by(OrderWorker.name, OrderWorker.id))
        return list(result.scalars().all())

    async def count_active_by_worker(self) -> dict[int, int]:
        result = await self.db.execute(
            select(OrderAssignment.worker_id, func.count(OrderAssignment.id))
            .where(OrderAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES))
            .group_by(OrderAssignment.worker_id)
        )
        return {worker_id: count for worker_id, count in result.all()}

    @staticmethod
    def _validate_capacity(value: Any) -> None:
        if value is not None and int(value) < 1:
            raise ValidationException(
                "max_concurrent_orders must be at least 1",
                field="max_concurrent_orders",
            )

    async def create(
        self,
        user_id: str,
        name: str,
        *,
        max_concurrent_orders: int = 1,
        auto_assign_enabled: bool = True,
        is_active: bool = True,
        status_scope: Optional[str] = None,
    ) -> OrderWorker:
        self._validate_capacity(max_concurrent_orders)
        worker = OrderWorker(
            user_id=user_id,
            name=name,
            max_concurrent_orders=max_concurrent_orders,
            auto_assign_enabled=auto_assign_enabled,
            is_active=is_active,
            status_scope=status_scope or None,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(worker)
            await self.db.commit()
        except IntegrityError:
            raise AppException(
                message=f"A worker profile already exists for user {user_id}",
                error_code=ErrorCode.ALREADY_EXISTS,
                status_code=409,
                details={"user_id": user_id},
            )

        logger.info(
            "Worker profile created",
            extra_data={"worker_id": worker.id, "user_id": user_id, "max": max_concurrent_orders},
        )
        return worker

    async def update(self, worker_id: int, **changes: Any) -> OrderWorker:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationException(
                f"Unknown worker fields: {', '.join(sorted(unknown))}",
                details={"fields": sorted(unknown)},
            )
        self._validate_capacity(changes.get("max_concurrent_orders"))

        worker = await self.get(worker_id)
        for field_name, value in changes.items():
            if field_name == "status_scope":
                value = value or None
            setattr(worker, field_name, value)
        worker.updated_at = datetime.utcnow()
        await self.db.commit()

        logger.info(
            "Worker profile updated",
            extra_data={"worker_id": worker_id, "fields": sorted(changes)},
        )
        return worker
