"""
Admin API Routes - workers, priority list, assignment overrides, history and performance
"""
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import require_capability
from app.api.dependencies.services import get_commerce_gateway, get_workflow_config
from app.api.routes.assignments import AssignmentResponse
from app.core.auth import Principal
from app.core.capabilities import Capability
from app.core.config import WorkflowConfig
from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.assignment_service import AssignmentService
from app.domain.services.commerce.gateway import CommerceGateway
from app.domain.services.history_service import HistoryService
from app.domain.services.priority_service import PriorityService
from app.domain.services.worker_service import WorkerService

logger = get_logger(__name__)

router = APIRouter()


# ============================================================================
# Workers
# ============================================================================

class WorkerCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=200)
    max_concurrent_orders: int = Field(default=1, ge=1)
    auto_assign_enabled: bool = True
    is_active: bool = True
    status_scope: Optional[str] = Field(default=None, max_length=100)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class WorkerUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    max_concurrent_orders: Optional[int] = Field(default=None, ge=1)
    auto_assign_enabled: Optional[bool] = None
    is_active: Optional[bool] = None
    status_scope: Optional[str] = Field(default=None, max_length=100)


class WorkerResponse(BaseModel):
    id: int
    user_id: str
    name: str
    is_active: bool
    auto_assign_enabled: bool
    max_concurrent_orders: int
    status_scope: Optional[str] = None
    active_count: int = 0

    model_config = {"from_attributes": True}


@router.get(
    "/workers",
    response_model=List[WorkerResponse],
    summary="List worker profiles",
    tags=["Admin"],
)
async def list_workers(
    include_inactive: bool = True,
    _: Principal = Depends(require_capability(Capability.MANAGE_WORKERS)),
    db: AsyncSession = Depends(get_db),
) -> List[WorkerResponse]:
    service = WorkerService(db)
    workers = await service.list_workers(include_inactive=include_inactive)
    counts = await service.count_active_by_worker()
    return [
        WorkerResponse.model_validate(worker).model_copy(
            update={"active_count": counts.get(worker.id, 0)}
        )
        for worker in workers
    ]


@router.post(
    "/workers",
    response_model=WorkerResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a worker profile",
    responses={409: {"description": "Profile already exists for this user"}},
    tags=["Admin"],
)
async def create_worker(
    body: WorkerCreate,
    _: Principal = Depends(require_capability(Capability.MANAGE_WORKERS)),
    db: AsyncSession = Depends(get_db),
) -> WorkerResponse:
    worker = await WorkerService(db).create(
        body.user_id,
        body.name,
        max_concurrent_orders=body.max_concurrent_orders,
        auto_assign_enabled=body.auto_assign_enabled,
        is_active=body.is_active,
        status_scope=body.status_scope,
    )
    return worker


@router.patch(
    "/workers/{worker_id}",
    response_model=WorkerResponse,
    summary="Update a worker profile",
    tags=["Admin"],
)
async def update_worker(
    worker_id: int,
    body: WorkerUpdate,
    _: Principal = Depends(require_capability(Capability.MANAGE_WORKERS)),
    db: AsyncSession = Depends(get_db),
) -> WorkerResponse:
    worker = await WorkerService(db).update(worker_id, **body.model_dump(exclude_unset=True))
    return worker


# ============================================================================
# Priority list
# ============================================================================

class PriorityOrderCreate(BaseModel):
    order_id: str = Field(min_length=1, max_length=64)
    order_number: Optional[str] = Field(default=None, max_length=64)
    reason: Optional[str] = Field(default=None, max_length=500)


class PriorityOrderResponse(BaseModel):
    id: int
    order_id: str
    order_number: Optional[str] = None
    reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


@router.get(
    "/priority-orders",
    response_model=List[PriorityOrderResponse],
    summary="List high priority orders",
    tags=["Admin"],
)
async def list_priority_orders(
    _: Principal = Depends(require_capability(Capability.MANAGE_ASSIGNMENTS)),
    db: AsyncSession = Depends(get_db),
    config: WorkflowConfig = Depends(get_workflow_config),
) -> List[PriorityOrderResponse]:
    return await PriorityService(db).list_priority_orders(config.merchant_id)


@router.post(
    "/priority-orders",
    response_model=PriorityOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Flag an order as high priority",
    responses={409: {"description": "Already flagged"}},
    tags=["Admin"],
)
async def add_priority_order(
    body: PriorityOrderCreate,
    principal: Principal = Depends(require_capability(Capability.MANAGE_ASSIGNMENTS)),
    db: AsyncSession = Depends(get_db),
    config: WorkflowConfig = Depends(get_workflow_config),
) -> PriorityOrderResponse:
    return await PriorityService(db).add(
        config.merchant_id,
        body.order_id,
        order_number=body.order_number,
        reason=body.reason,
        created_by=principal.user_id,
    )


@router.delete(
    "/priority-orders/{order_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove the high priority flag",
    tags=["Admin"],
)
async def remove_priority_order(
    order_id: str,
    _: Principal = Depends(require_capability(Capability.MANAGE_ASSIGNMENTS)),
    db: AsyncSession = Depends(get_db),
    config: WorkflowConfig = Depends(get_workflow_config),
) -> None:
    await PriorityService(db).remove(config.merchant_id, order_id)


# ============================================================================
# Assignment overrides
# ============================================================================

class ReassignRequest(BaseModel):
    worker_id: int


class RemoveRequest(BaseModel):
    note: Optional[str] = Field(default=None, max_length=500)


@router.post(
    "/assignments/{assignment_id}/reassign",
    response_model=AssignmentResponse,
    summary="Move an active assignment to another worker",
    responses={409: {"description": "Target worker at capacity or assignment not active"}},
    tags=["Admin"],
)
async def reassign_assignment(
    assignment_id: str,
    body: ReassignRequest,
    principal: Principal = Depends(require_capability(Capability.MANAGE_ASSIGNMENTS)),
    db: AsyncSession = Depends(get_db),
    gateway: CommerceGateway = Depends(get_commerce_gateway),
    config: WorkflowConfig = Depends(get_workflow_config),
) -> AssignmentResponse:
    service = AssignmentService(db, gateway, config)
    return await service.reassign(assignment_id, body.worker_id, principal)


@router.post(
    "/assignments/{assignment_id}/remove",
    response_model=AssignmentResponse,
    summary="Remove an assignment and archive it",
    tags=["Admin"],
)
async def remove_assignment(
    assignment_id: str,
    body: Optional[RemoveRequest] = None,
    principal: Principal = Depends(require_capability(Capability.MANAGE_ASSIGNMENTS)),
    db: AsyncSession = Depends(get_db),
    gateway: CommerceGateway = Depends(get_commerce_gateway),
    config: WorkflowConfig = Depends(get_workflow_config),
) -> AssignmentResponse:
    service = AssignmentService(db, gateway, config)
    note = body.note if body else None
    return await service.remove(assignment_id, principal, note=note)


# ============================================================================
# History
# ============================================================================

class HistoryResponse(BaseModel):
    id: int
    assignment_id: Optional[str] = None
    worker_id: Optional[int] = None
    worker_name: Optional[str] = None
    order_id: str
    order_number: Optional[str] = None
    status: str
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    final_remote_status: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


@router.get(
    "/history",
    response_model=List[HistoryResponse],
    summary="Archived assignments",
    tags=["Admin"],
)
async def list_history(
    worker_id: Optional[int] = None,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _: Principal = Depends(require_capability(Capability.VIEW_HISTORY)),
    db: AsyncSession = Depends(get_db),
) -> List[HistoryResponse]:
    return await HistoryService(db).list_history(
        worker_id=worker_id, status=status_filter, limit=limit, offset=offset
    )


# ============================================================================
# Performance
# ============================================================================

def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC"""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class PerformanceStatsResponse(BaseModel):
    assigned: int
    completed: int
    active: int
    completion_rate: int
    avg_duration_seconds: Optional[int] = None


class WorkerPerformanceResponse(PerformanceStatsResponse):
    worker_id: int
    worker_name: Optional[str] = None


class PerformanceResponse(BaseModel):
    since: datetime
    until: datetime
    workers: List[WorkerPerformanceResponse]
    totals: PerformanceStatsResponse


@router.get(
    "/performance",
    response_model=PerformanceResponse,
    summary="Per-worker throughput",
    description=(
        "Assigned, completed and still-active counts, completion rate and average "
        "preparation time for orders claimed in the window (default: last 7 days)."
    ),
    responses={400: {"description": "since is after until"}},
    tags=["Admin"],
)
async def worker_performance(
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    _: Principal = Depends(require_capability(Capability.VIEW_HISTORY)),
    db: AsyncSession = Depends(get_db),
) -> PerformanceResponse:
    until = _naive_utc(until) or datetime.utcnow()
    since = _naive_utc(since) or until - timedelta(days=7)
    if since > until:
        raise ValidationException("since must not be after until", field="since")

    report = await HistoryService(db).performance(since, until)
    return PerformanceResponse(
        since=report.since,
        until=report.until,
        workers=[
            WorkerPerformanceResponse(
                worker_id=row.worker_id, worker_name=row.worker_name, **row.stats.to_dict()
            )
            for row in report.workers
        ],
        totals=PerformanceStatsResponse(**report.totals.to_dict()),
    )
