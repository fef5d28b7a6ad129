"""
Commerce Platform Webhook - order events from the store.

Always answers 200 with {accepted, parsed, verified, ...} so the platform
does not suspend delivery over payloads this service cannot understand.
The only exception is signature enforcement: an unverified call is logged
first and then refused with 401.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.services import get_commerce_gateway, get_workflow_config
from app.core.config import WorkflowConfig
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.commerce.gateway import CommerceGateway
from app.domain.services.webhook_handlers import CommerceWebhookHandler
from app.domain.services.webhook_ingestion_service import WebhookIngestionService

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/commerce",
    summary="Commerce platform webhook",
    description="Logs every call, deduplicates order status events and applies them.",
    responses={
        200: {"description": "Received (parsed or not)"},
        401: {"description": "Signature enforcement is on and the signature did not verify"},
    },
    tags=["Webhooks"],
)
async def commerce_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: CommerceGateway = Depends(get_commerce_gateway),
    config: WorkflowConfig = Depends(get_workflow_config),
):
    raw_body = await request.body()
    handler = CommerceWebhookHandler(db, gateway, config)
    service = WebhookIngestionService(db, config, handler=handler)

    result = await service.ingest(
        raw_body,
        request.headers,
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None,
    )

    if not result.accepted:
        return JSONResponse(status_code=401, content=result.to_dict())
    return result.to_dict()
