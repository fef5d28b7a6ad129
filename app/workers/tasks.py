"""
Celery Tasks - periodic reconciliation and log retention.

Tasks are sync entry points that run their async body to completion in a
fresh event loop (run_async) with a task-local engine (get_task_session).
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Optional

from redis.exceptions import RedisError
from sqlalchemy import delete

from app.workers.celery_app import CLEANUP_WEBHOOK_LOGS_TASK, RECONCILE_TASK, celery_app
from app.core.config import WorkflowConfig, settings
from app.core.logging import correlation_scope, get_logger
from app.core.redis_client import close_redis
from app.db.database import get_task_session
from app.db.models.webhook_log import WebhookLog
from app.domain.services.commerce.gateway import build_commerce_gateway
from app.domain.services.status_reconciler import StatusReconciler

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """Fresh event loop for one task run, torn down with everything bound to it"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # the Redis singleton was connected on this loop
            loop.run_until_complete(close_redis())
        except (RedisError, OSError, RuntimeError) as e:
            logger.warning("Failed to close Redis at task end", extra_data={"error": str(e)})
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
        asyncio.set_event_loop(None)


def run_async(coro):
    """Run a task body to completion under its own correlation id"""
    with correlation_scope(), get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _reconcile_active_assignments(worker_id: Optional[int] = None) -> dict:
    config = WorkflowConfig.from_settings(settings)
    gateway = build_commerce_gateway(config)
    async with get_task_session() as db:
        summary = await StatusReconciler(db, gateway, config).reconcile(worker_id=worker_id)
        return summary.to_dict()


@celery_app.task(name=RECONCILE_TASK)
def reconcile_active_assignments(worker_id: Optional[int] = None) -> dict:
    """Sweep active assignments against the commerce platform"""
    return run_async(_reconcile_active_assignments(worker_id))


async def _cleanup_old_webhook_logs(retention_days: int) -> dict:
    if retention_days <= 0:
        logger.info("Webhook log retention disabled, nothing deleted")
        return {"deleted": 0}
    async with get_task_session() as db:
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        result = await db.execute(
            delete(WebhookLog).where(WebhookLog.received_at < cutoff)
        )
        deleted = result.rowcount
        await db.commit()
        logger.info(
            "Cleaned up old webhook logs",
            extra_data={"deleted": deleted, "cutoff_days": retention_days},
        )
        return {"deleted": deleted}


@celery_app.task(name=CLEANUP_WEBHOOK_LOGS_TASK)
def cleanup_old_webhook_logs(days: Optional[int] = None) -> dict:
    """
    Delete webhook_logs rows older than the retention window.

    Opt-in: with WEBHOOK_LOG_RETENTION_DAYS at 0 the log is kept forever.

    webhook_events is not touched: its rows are the dedup keys.
    """
    retention_days = days if days is not None else settings.WEBHOOK_LOG_RETENTION_DAYS
    return run_async(_cleanup_old_webhook_logs(retention_days))
