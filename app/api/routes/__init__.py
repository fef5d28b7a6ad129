"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.routes.assignments import router as assignments_router
from app.api.webhooks.commerce import router as commerce_webhook_router

router = APIRouter()

router.include_router(assignments_router, prefix="/assignments", tags=["assignments"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])
router.include_router(commerce_webhook_router, prefix="/webhooks", tags=["webhooks"])
