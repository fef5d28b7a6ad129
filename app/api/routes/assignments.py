"""
Assignment API Routes - the worker's side of the workflow
"""
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, field_serializer
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import require_capability
from app.api.dependencies.services import get_commerce_gateway, get_workflow_config
from app.core.auth import Principal
from app.core.capabilities import Capability
from app.core.config import WorkflowConfig
from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.assignment_service import AssignmentService, ensure_can_act_on
from app.domain.services.capacity_allocator import CapacityAllocator, ClaimOutcome
from app.domain.services.commerce.gateway import CommerceGateway
from app.domain.services.commerce.status_normalizer import StatusTarget
from app.domain.services.release_coordinator import ReleaseCoordinator
from app.domain.services.status_reconciler import StatusReconciler
from app.domain.services.worker_service import WorkerService

logger = get_logger(__name__)

router = APIRouter()

require_preparer = require_capability(Capability.PREPARE_ORDERS)


class AssignmentResponse(BaseModel):
    """Response schema for an order assignment"""
    id: str
    merchant_id: str
    order_id: str
    order_number: Optional[str] = None
    worker_id: int
    status: str
    remote_status_id: Optional[str] = None
    remote_status_slug: Optional[str] = None
    remote_status_name: Optional[str] = None
    order_snapshot: Optional[dict[str, Any]] = None
    is_high_priority: bool = False
    notes: Optional[str] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    removed_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_serializer("status")
    def serialize_status(self, v: Any) -> str:
        return str(getattr(v, "value", v))


class ClaimResponse(BaseModel):
    claimed: bool
    outcome: str
    message: str
    active_count: int
    max_orders: int
    assignment: Optional[AssignmentResponse] = None


class TransitionRequest(BaseModel):
    """Optional remote status (id or slug) to write before the local change"""
    sync_remote: Optional[str] = None
    notes: Optional[str] = None


class ReleaseRequest(BaseModel):
    target: Optional[str] = None


class ReleaseResponse(BaseModel):
    confirmed: bool
    message: str
    remote_status: Optional[str] = None
    assignment_id: Optional[str] = None


class ReconcileResponse(BaseModel):
    checked: int
    invalidated: int
    invalidated_order_numbers: List[str]
    skipped: int


def _parse_target(value: Optional[str], field: str) -> Optional[StatusTarget]:
    if value is None or not value.strip():
        return None
    try:
        return StatusTarget.parse(value)
    except ValueError as exc:
        raise ValidationException(str(exc), field=field)


def _assignment_service(
    db: AsyncSession = Depends(get_db),
    gateway: CommerceGateway = Depends(get_commerce_gateway),
    config: WorkflowConfig = Depends(get_workflow_config),
) -> AssignmentService:
    return AssignmentService(db, gateway, config)


@router.post(
    "/claim",
    response_model=ClaimResponse,
    summary="Claim the next order",
    description="Assigns the next eligible order to the caller's worker profile.",
    responses={
        200: {"description": "Order claimed, or nothing to claim (claimed=false)"},
        503: {"description": "Commerce platform unreachable"},
    },
    tags=["Assignments"],
)
async def claim_next_order(
    response: Response,
    principal: Principal = Depends(require_preparer),
    db: AsyncSession = Depends(get_db),
    gateway: CommerceGateway = Depends(get_commerce_gateway),
    config: WorkflowConfig = Depends(get_workflow_config),
) -> ClaimResponse:
    worker = await WorkerService(db).require_by_user_id(principal.user_id)
    result = await CapacityAllocator(db, gateway, config).claim_next_order(worker)

    if result.outcome == ClaimOutcome.REMOTE_UNAVAILABLE:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ClaimResponse(
        claimed=result.claimed,
        outcome=result.outcome.value,
        message=result.message,
        active_count=result.active_count,
        max_orders=result.max_orders,
        assignment=(
            AssignmentResponse.model_validate(result.assignment) if result.assignment else None
        ),
    )


@router.get(
    "/mine",
    response_model=List[AssignmentResponse],
    summary="My active assignments",
    tags=["Assignments"],
)
async def list_my_assignments(
    principal: Principal = Depends(require_preparer),
    db: AsyncSession = Depends(get_db),
    service: AssignmentService = Depends(_assignment_service),
) -> List[AssignmentResponse]:
    worker = await WorkerService(db).get_by_user_id(principal.user_id)
    if worker is None:
        return []
    return await service.list_active_for_worker(worker.id)


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    summary="Reconcile assignments against the commerce platform",
    description=(
        "Re-checks the caller's active assignments; callers allowed to run "
        "reconciliation sweep every worker."
    ),
    tags=["Assignments"],
)
async def reconcile_assignments(
    principal: Principal = Depends(require_preparer),
    db: AsyncSession = Depends(get_db),
    gateway: CommerceGateway = Depends(get_commerce_gateway),
    config: WorkflowConfig = Depends(get_workflow_config),
) -> ReconcileResponse:
    worker_id = None
    if not principal.can(Capability.RUN_RECONCILIATION):
        worker = await WorkerService(db).require_by_user_id(principal.user_id)
        worker_id = worker.id

    summary = await StatusReconciler(db, gateway, config).reconcile(worker_id=worker_id)
    return ReconcileResponse(**summary.to_dict())


@router.get(
    "/{assignment_id}",
    response_model=AssignmentResponse,
    summary="Get assignment by ID",
    responses={403: {"description": "Not the assigned worker"}, 404: {"description": "Not found"}},
    tags=["Assignments"],
)
async def get_assignment(
    assignment_id: str,
    principal: Principal = Depends(require_preparer),
    db: AsyncSession = Depends(get_db),
    service: AssignmentService = Depends(_assignment_service),
) -> AssignmentResponse:
    assignment = await service.get(assignment_id)
    await ensure_can_act_on(db, assignment, principal)
    return assignment


@router.post(
    "/{assignment_id}/start",
    response_model=AssignmentResponse,
    summary="Start preparing",
    tags=["Assignments"],
)
async def start_assignment(
    assignment_id: str,
    body: Optional[TransitionRequest] = None,
    principal: Principal = Depends(require_preparer),
    service: AssignmentService = Depends(_assignment_service),
) -> AssignmentResponse:
    body = body or TransitionRequest()
    return await service.start(
        assignment_id, principal, sync_remote=_parse_target(body.sync_remote, "sync_remote")
    )


@router.post(
    "/{assignment_id}/prepared",
    response_model=AssignmentResponse,
    summary="Mark prepared",
    description="Requires the order to be in progress on the commerce platform.",
    responses={400: {"description": "Remote status precondition not met"}},
    tags=["Assignments"],
)
async def mark_prepared(
    assignment_id: str,
    body: Optional[TransitionRequest] = None,
    principal: Principal = Depends(require_preparer),
    service: AssignmentService = Depends(_assignment_service),
) -> AssignmentResponse:
    body = body or TransitionRequest()
    return await service.mark_prepared(
        assignment_id, principal, sync_remote=_parse_target(body.sync_remote, "sync_remote")
    )


@router.post(
    "/{assignment_id}/shipped",
    response_model=AssignmentResponse,
    summary="Mark shipped",
    tags=["Assignments"],
)
async def mark_shipped(
    assignment_id: str,
    body: Optional[TransitionRequest] = None,
    principal: Principal = Depends(require_preparer),
    service: AssignmentService = Depends(_assignment_service),
) -> AssignmentResponse:
    body = body or TransitionRequest()
    return await service.mark_shipped(
        assignment_id, principal, sync_remote=_parse_target(body.sync_remote, "sync_remote")
    )


@router.post(
    "/{assignment_id}/complete",
    response_model=AssignmentResponse,
    summary="Complete the order",
    responses={400: {"description": "Remote status precondition not met"}},
    tags=["Assignments"],
)
async def complete_assignment(
    assignment_id: str,
    body: Optional[TransitionRequest] = None,
    principal: Principal = Depends(require_preparer),
    service: AssignmentService = Depends(_assignment_service),
) -> AssignmentResponse:
    body = body or TransitionRequest()
    return await service.complete(
        assignment_id,
        principal,
        sync_remote=_parse_target(body.sync_remote, "sync_remote"),
        notes=body.notes,
    )


@router.post(
    "/{assignment_id}/refresh-items",
    response_model=AssignmentResponse,
    summary="Refresh the order snapshot",
    description="Re-fetches order details and line items from the commerce platform.",
    responses={
        409: {"description": "Assignment is no longer active"},
        503: {"description": "Commerce platform unreachable"},
    },
    tags=["Assignments"],
)
async def refresh_assignment_items(
    assignment_id: str,
    principal: Principal = Depends(require_preparer),
    service: AssignmentService = Depends(_assignment_service),
) -> AssignmentResponse:
    return await service.refresh_snapshot(assignment_id, principal)


@router.post(
    "/{assignment_id}/release",
    response_model=ReleaseResponse,
    summary="Release the order back to the pool",
    description=(
        "Moves the remote order to the release status, waits for the platform to "
        "confirm it, then releases the assignment."
    ),
    responses={502: {"description": "The platform rejected the status change"}},
    tags=["Assignments"],
)
async def release_assignment(
    assignment_id: str,
    body: Optional[ReleaseRequest] = None,
    principal: Principal = Depends(require_preparer),
    db: AsyncSession = Depends(get_db),
    gateway: CommerceGateway = Depends(get_commerce_gateway),
    config: WorkflowConfig = Depends(get_workflow_config),
) -> ReleaseResponse:
    body = body or ReleaseRequest()
    result = await ReleaseCoordinator(db, gateway, config).release(
        assignment_id, principal, target=_parse_target(body.target, "target")
    )
    return ReleaseResponse(
        confirmed=result.confirmed,
        message=result.message,
        remote_status=result.remote_status,
        assignment_id=result.assignment_id,
    )
