"""
Tests for Celery tasks - reconciliation sweep and webhook log retention
"""
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from app.core.config import Settings, settings
from app.db.models.order_assignment import AssignmentStatus
from app.db.models.webhook_log import WebhookLog
from app.workers import tasks
from app.workers.celery_app import CLEANUP_WEBHOOK_LOGS_TASK, RECONCILE_TASK, celery_app


@pytest.fixture
def task_session(db_session):
    """get_task_session yielding the test session"""
    with patch("app.workers.tasks.get_task_session") as mock_session:
        mock_session.return_value.__aenter__ = AsyncMock(return_value=db_session)
        mock_session.return_value.__aexit__ = AsyncMock(return_value=False)
        yield mock_session


class TestReconcileTask:

    @pytest.mark.integration
    async def test_sweeps_with_settings_config(
        self, db_session, task_session, fake_gateway, workflow_config, worker_factory, assignment_factory
    ):
        worker = await worker_factory(max_concurrent_orders=2)
        fake_gateway.add_order("1001", status="canceled")
        fake_gateway.add_order("1002", status="in_progress")
        drifted = await assignment_factory(worker.id, "1001")
        await assignment_factory(worker.id, "1002")

        with patch("app.workers.tasks.build_commerce_gateway", return_value=fake_gateway), \
                patch("app.workers.tasks.WorkflowConfig.from_settings", return_value=workflow_config):
            summary = await tasks._reconcile_active_assignments()

        assert summary["checked"] == 2
        assert summary["invalidated"] == 1
        assert summary["invalidated_order_numbers"] == ["N-1001"]
        await db_session.refresh(drifted)
        assert drifted.status == AssignmentStatus.REMOVED

    @pytest.mark.integration
    async def test_worker_filter_is_passed_through(
        self, task_session, fake_gateway, workflow_config, worker_factory, assignment_factory
    ):
        worker = await worker_factory()
        other = await worker_factory(user_id="user-2", name="Other")
        fake_gateway.add_order("1001")
        fake_gateway.add_order("1002")
        await assignment_factory(worker.id, "1001")
        await assignment_factory(other.id, "1002")

        with patch("app.workers.tasks.build_commerce_gateway", return_value=fake_gateway), \
                patch("app.workers.tasks.WorkflowConfig.from_settings", return_value=workflow_config):
            summary = await tasks._reconcile_active_assignments(worker_id=other.id)

        assert summary["checked"] == 1

    @pytest.mark.unit
    def test_sync_entry_point_uses_run_async(self):
        with patch("app.workers.tasks.run_async", return_value={"checked": 0}) as run_async, \
                patch("app.workers.tasks._reconcile_active_assignments", new=lambda worker_id=None: worker_id):
            result = tasks.reconcile_active_assignments(7)

        assert result == {"checked": 0}
        run_async.assert_called_once_with(7)


class TestCleanupTask:

    @pytest.mark.integration
    async def test_deletes_only_old_logs(self, db_session, task_session):
        now = datetime.utcnow()
        db_session.add_all([
            WebhookLog(method="POST", raw_body="{}", received_at=now - timedelta(days=40)),
            WebhookLog(method="POST", raw_body="{}", received_at=now - timedelta(days=1)),
        ])
        await db_session.commit()

        result = await tasks._cleanup_old_webhook_logs(30)

        assert result == {"deleted": 1}
        remaining = (await db_session.execute(select(WebhookLog))).scalars().all()
        assert len(remaining) == 1

    @pytest.mark.unit
    def test_explicit_retention(self):
        with patch("app.workers.tasks.run_async", side_effect=lambda value: value), \
                patch("app.workers.tasks._cleanup_old_webhook_logs", new=lambda days: {"days": days}):
            assert tasks.cleanup_old_webhook_logs(3) == {"days": 3}
            assert tasks.cleanup_old_webhook_logs() == {"days": settings.WEBHOOK_LOG_RETENTION_DAYS}

    @pytest.mark.integration
    async def test_zero_retention_keeps_every_log(self, db_session, task_session):
        db_session.add(WebhookLog(method="POST", raw_body="{}", received_at=datetime.utcnow() - timedelta(days=400)))
        await db_session.commit()

        result = await tasks._cleanup_old_webhook_logs(0)

        assert result == {"deleted": 0}
        assert len((await db_session.execute(select(WebhookLog))).scalars().all()) == 1
        task_session.assert_not_called()

    @pytest.mark.unit
    def test_retention_is_off_by_default(self):
        assert Settings.model_fields["WEBHOOK_LOG_RETENTION_DAYS"].default == 0


class TestRunAsync:

    @pytest.mark.unit
    def test_runs_coroutine_in_fresh_loop(self):
        async def body():
            return "done"

        with patch("app.workers.tasks.close_redis", new=AsyncMock()) as close:
            assert tasks.run_async(body()) == "done"

        close.assert_awaited_once()


class TestBeatSchedule:

    @pytest.mark.unit
    def test_periodic_tasks_registered(self):
        schedule = celery_app.conf.beat_schedule

        reconcile = schedule["reconcile-active-assignments"]
        assert reconcile["task"] == RECONCILE_TASK
        assert reconcile["schedule"] == float(settings.RECONCILE_INTERVAL_SECONDS)
        # webhook_logs are kept unless a retention window is configured
        assert ("cleanup-old-webhook-logs" in schedule) == (settings.WEBHOOK_LOG_RETENTION_DAYS > 0)

    @pytest.mark.unit
    def test_task_names_match_registry(self):
        assert tasks.reconcile_active_assignments.name == RECONCILE_TASK
        assert tasks.cleanup_old_webhook_logs.name == CLEANUP_WEBHOOK_LOGS_TASK
