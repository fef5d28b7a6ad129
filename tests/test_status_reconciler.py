"""
Tests for StatusReconciler - drift detection against remote order statuses
"""
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.core.exceptions import RemoteTransientError
from app.db.models.order_assignment import AssignmentStatus, OrderAssignment
from app.db.models.order_history import OrderHistory
from app.domain.services.commerce.status_normalizer import RemoteOrder, RemoteStatus
from app.domain.services.status_reconciler import ReconcileSummary, StatusReconciler


@pytest.fixture
def reconciler(db_session, fake_gateway, workflow_config) -> StatusReconciler:
    return StatusReconciler(db_session, fake_gateway, workflow_config)


async def _history(db) -> list[OrderHistory]:
    result = await db.execute(select(OrderHistory).order_by(OrderHistory.id))
    return list(result.scalars().all())


class TestReconcile:

    @pytest.mark.integration
    async def test_allowed_status_keeps_assignment_and_refreshes_snapshot(
        self, db_session, fake_gateway, reconciler, worker_factory, assignment_factory
    ):
        worker = await worker_factory()
        fake_gateway.add_order("1001", status=1939592358)
        assignment = await assignment_factory(worker.id, "1001", remote_status_slug=None)

        summary = await reconciler.reconcile()

        assert summary.to_dict() == {
            "checked": 1,
            "invalidated": 0,
            "invalidated_order_numbers": [],
            "skipped": 0,
        }
        await db_session.refresh(assignment)
        assert assignment.status == AssignmentStatus.ASSIGNED
        assert assignment.remote_status_id == "1939592358"
        assert assignment.remote_status_name == "Preparing"
        assert assignment.last_checked_at is not None

    @pytest.mark.integration
    async def test_drifted_status_removes_and_archives(
        self, db_session, fake_gateway, reconciler, worker_factory, assignment_factory
    ):
        worker = await worker_factory(name="Noa")
        fake_gateway.add_order("1001")
        started = datetime.utcnow() - timedelta(minutes=5)
        assignment = await assignment_factory(
            worker.id, "1001", status=AssignmentStatus.PREPARING, started_at=started
        )
        fake_gateway.set_remote_status("1001", "canceled")

        summary = await reconciler.reconcile()

        assert summary.invalidated == 1
        assert summary.invalidated_order_numbers == ["N-1001"]

        await db_session.refresh(assignment)
        assert assignment.status == AssignmentStatus.REMOVED
        assert assignment.removed_at is not None
        assert assignment.remote_status_slug == "canceled"

        [entry] = await _history(db_session)
        assert entry.assignment_id == assignment.id
        assert entry.status == "removed"
        assert entry.worker_name == "Noa"
        assert entry.notes == "Status changed remotely to: Canceled"
        assert entry.final_remote_status == "Canceled"
        assert entry.duration_seconds >= 300

    @pytest.mark.integration
    async def test_drift_before_start_archives_without_duration(
        self, db_session, fake_gateway, reconciler, worker_factory, assignment_factory
    ):
        worker = await worker_factory()
        fake_gateway.add_order("1001", status="canceled")
        assignment = await assignment_factory(
            worker.id, "1001", assigned_at=datetime.utcnow() - timedelta(hours=1)
        )

        summary = await reconciler.reconcile()

        assert summary.invalidated == 1
        await db_session.refresh(assignment)
        assert assignment.status == AssignmentStatus.REMOVED
        assert assignment.started_at is None
        [entry] = await _history(db_session)
        assert entry.status == "removed"
        assert entry.duration_seconds is None

    @pytest.mark.integration
    async def test_sub_status_in_allow_list_is_kept(
        self, db_session, fake_gateway, reconciler, worker_factory, assignment_factory
    ):
        worker = await worker_factory()
        fake_gateway.add_order("1001", status={
            "id": 999, "slug": "custom_parent", "sub_status": {"id": 1956875584},
        })
        await assignment_factory(worker.id, "1001")

        summary = await reconciler.reconcile()

        assert summary.invalidated == 0

    @pytest.mark.integration
    async def test_catalog_extends_allow_list(
        self, db_session, fake_gateway, reconciler, worker_factory, assignment_factory
    ):
        worker = await worker_factory()
        fake_gateway.statuses.append(RemoteStatus(id="31337", slug="delivering", name="Delivering"))
        fake_gateway.add_order("1001")
        # reported by id only, the slug comes from the catalog
        fake_gateway.orders["1001"].status = RemoteStatus(id="31337")
        await assignment_factory(worker.id, "1001")

        summary = await reconciler.reconcile()

        assert summary.invalidated == 0

    @pytest.mark.integration
    async def test_remote_error_skips_row(
        self, db_session, fake_gateway, reconciler, worker_factory, assignment_factory
    ):
        worker = await worker_factory(max_concurrent_orders=2)
        fake_gateway.add_order("1001")
        fake_gateway.add_order("1002")
        fake_gateway.set_remote_status("1002", "canceled")
        first = await assignment_factory(worker.id, "1001")
        await assignment_factory(worker.id, "1002")
        fake_gateway.fail("get_order", RemoteTransientError("down"), key="1001")

        summary = await reconciler.reconcile()

        assert summary.checked == 2
        assert summary.skipped == 1
        assert summary.invalidated == 1
        await db_session.refresh(first)
        assert first.status == AssignmentStatus.ASSIGNED
        assert first.last_checked_at is None

    @pytest.mark.integration
    async def test_missing_remote_order_is_skipped_not_removed(
        self, db_session, reconciler, worker_factory, assignment_factory
    ):
        worker = await worker_factory()
        assignment = await assignment_factory(worker.id, "404")

        summary = await reconciler.reconcile()

        assert summary.skipped == 1
        await db_session.refresh(assignment)
        assert assignment.status == AssignmentStatus.ASSIGNED

    @pytest.mark.integration
    async def test_prepared_and_terminal_rows_are_not_swept(
        self, db_session, fake_gateway, reconciler, worker_factory, assignment_factory
    ):
        worker = await worker_factory(max_concurrent_orders=3)
        fake_gateway.add_order("1001", status="canceled")
        fake_gateway.add_order("1002", status="canceled")
        await assignment_factory(worker.id, "1001", status=AssignmentStatus.PREPARED)
        await assignment_factory(worker.id, "1002", status=AssignmentStatus.COMPLETED)

        summary = await reconciler.reconcile()

        assert summary.checked == 0
        assert fake_gateway.calls_to("get_order") == []
        assert fake_gateway.calls_to("list_statuses") == []

    @pytest.mark.integration
    async def test_worker_filter(
        self, db_session, fake_gateway, reconciler, worker_factory, assignment_factory
    ):
        worker = await worker_factory()
        other = await worker_factory(user_id="user-2", name="Other")
        fake_gateway.add_order("1001", status="canceled")
        fake_gateway.add_order("1002", status="canceled")
        await assignment_factory(worker.id, "1001")
        await assignment_factory(other.id, "1002")

        summary = await reconciler.reconcile(worker_id=other.id)

        assert summary.checked == 1
        assert summary.invalidated_order_numbers == ["N-1002"]

    @pytest.mark.integration
    async def test_persist_failure_is_skipped(
        self, db_session, fake_gateway, reconciler, worker_factory, assignment_factory
    ):
        worker = await worker_factory()
        fake_gateway.add_order("1001", status="canceled")
        await assignment_factory(worker.id, "1001")

        with patch.object(
            db_session, "commit", side_effect=OperationalError("COMMIT", {}, Exception("disk full"))
        ):
            summary = await reconciler.reconcile()

        assert summary.skipped == 1
        assert summary.invalidated == 0
        result = await db_session.execute(select(OrderAssignment.status))
        assert result.scalar_one() == AssignmentStatus.ASSIGNED

    @pytest.mark.integration
    async def test_sweep_is_idempotent(
        self, db_session, fake_gateway, reconciler, worker_factory, assignment_factory
    ):
        worker = await worker_factory()
        fake_gateway.add_order("1001", status="canceled")
        await assignment_factory(worker.id, "1001")

        first = await reconciler.reconcile()
        second = await reconciler.reconcile()

        assert first.invalidated == 1
        assert second == ReconcileSummary()
        assert len(await _history(db_session)) == 1


class TestReconcileAssignment:

    @pytest.mark.integration
    async def test_uses_supplied_remote_order(
        self, db_session, fake_gateway, reconciler, worker_factory, assignment_factory
    ):
        worker = await worker_factory()
        assignment = await assignment_factory(worker.id, "1001")

        invalidated = await reconciler.reconcile_assignment(
            assignment, remote_order=RemoteOrder(id="1001", status=RemoteStatus(slug="refunded"))
        )

        assert invalidated is True
        assert fake_gateway.calls_to("get_order") == []
        assert assignment.status == AssignmentStatus.REMOVED

    @pytest.mark.integration
    async def test_terminal_assignment_is_left_alone(
        self, db_session, reconciler, worker_factory, assignment_factory
    ):
        worker = await worker_factory()
        assignment = await assignment_factory(worker.id, "1001", status=AssignmentStatus.RELEASED)

        assert await reconciler.reconcile_assignment(assignment) is False
