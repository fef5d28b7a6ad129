"""
Order Ops - FastAPI application

Workers claim orders from the commerce platform, prepare them and hand them
off; webhooks and the periodic reconciliation keep local assignments in line
with the platform's order statuses.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import router as api_router
from app.core.config import WorkflowConfig, parse_csv, settings
from app.core.logging import get_logger, setup_logging
from app.core.middleware import CORRELATION_HEADER, setup_exception_handlers, setup_middleware
from app.core.redis_client import close_redis
from app.db.database import engine, init_models
from app.domain.services import health_service

setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME,
)

logger = get_logger(__name__)

_DEV_ORIGINS = ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]

app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Order preparation back office: capacity-limited claiming of commerce "
        "orders, a guarded preparation workflow and reconciliation against the "
        "platform's order statuses."
    ),
    openapi_tags=[
        {"name": "Assignments", "description": "Claim, prepare, ship, complete and release orders."},
        {"name": "Admin", "description": "Workers, the priority list, overrides and history."},
        {"name": "Webhooks", "description": "Order events pushed by the commerce platform."},
        {"name": "Health", "description": "Liveness and readiness probes."},
    ],
)

setup_middleware(app)
setup_exception_handlers(app)

cors_origins = list(parse_csv(settings.ALLOWED_ORIGINS)) or (_DEV_ORIGINS if settings.DEBUG else [])
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", CORRELATION_HEADER],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    workflow = WorkflowConfig.from_settings(settings)
    logger.info(
        "Starting application",
        extra_data={
            "app_name": settings.APP_NAME,
            "merchant_id": workflow.merchant_id,
            "allowed_status_ids": sorted(workflow.allowed_status_ids),
            "allowed_status_slugs": sorted(workflow.allowed_status_slugs),
            "webhook_signature_enforced": workflow.webhook_enforce_signature,
        },
    )
    await init_models()


@app.on_event("shutdown")
async def shutdown() -> None:
    await close_redis()
    await engine.dispose()
    logger.info("Application stopped")


@app.get("/health", summary="Liveness probe", tags=["Health"])
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description="DB, Redis and the Celery broker; 503 with status=degraded when any is down.",
    responses={
        503: {
            "description": "At least one dependency is unavailable",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "redis": "error: redis_unavailable",
                        "celery": "ok",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    result = await health_service.check_readiness()
    return JSONResponse(content=result, status_code=200 if result["status"] == "healthy" else 503)
