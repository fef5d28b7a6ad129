"""
Priority Service - the list of orders claimed before age ordering applies
"""
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AppException, ErrorCode, NotFoundException
from app.core.logging import get_logger
from app.db.models.high_priority_order import HighPriorityOrder

logger = get_logger(__name__)


class PriorityService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_priority_ranks(self, merchant_id: str) -> dict[str, int]:
        """order id -> rank (0 first), in the order the flags were created"""
        result = await self.db.execute(
            select(HighPriorityOrder.order_id)
            .where(HighPriorityOrder.merchant_id == merchant_id)
            .order_by(HighPriorityOrder.created_at, HighPriorityOrder.id)
        )
        return {order_id: rank for rank, order_id in enumerate(result.scalars().all())}

    async def list_priority_orders(self, merchant_id: str) -> list[HighPriorityOrder]:
        result = await self.db.execute(
            select(HighPriorityOrder)
            .where(HighPriorityOrder.merchant_id == merchant_id)
            .order_by(HighPriorityOrder.created_at, HighPriorityOrder.id)
        )
        return list(result.scalars().all())

    async def add(
        self,
        merchant_id: str,
        order_id: str,
        *,
        order_number: Optional[str] = None,
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> HighPriorityOrder:
        entry = HighPriorityOrder(
            merchant_id=merchant_id,
            order_id=order_id,
            order_number=order_number,
            reason=reason,
            created_by=created_by,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(entry)
            await self.db.commit()
        except IntegrityError:
            raise AppException(
                message=f"Order {order_id} is already high priority",
                error_code=ErrorCode.ALREADY_EXISTS,
                status_code=409,
                details={"order_id": order_id},
            )

        logger.info(
            "Order flagged high priority",
            extra_data={"order_id": order_id, "created_by": created_by},
        )
        return entry

    async def remove(self, merchant_id: str, order_id: str) -> None:
        result = await self.db.execute(
            delete(HighPriorityOrder).where(
                HighPriorityOrder.merchant_id == merchant_id,
                HighPriorityOrder.order_id == order_id,
            )
        )
        if not result.rowcount:
            raise NotFoundException("High priority order", order_id)
        await self.db.commit()
        logger.info("Order unflagged high priority", extra_data={"order_id": order_id})
