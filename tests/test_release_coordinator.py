"""
Tests for ReleaseCoordinator - confirmation-based release of assignments
"""
import pytest
from sqlalchemy import select

from app.core.exceptions import (
    ForbiddenError,
    InvalidStateTransitionError,
    RemoteRejectedError,
    RemoteTimeoutError,
    RemoteTransientError,
)
from app.db.models.order_assignment import AssignmentStatus
from app.db.models.order_history import OrderHistory
from app.domain.services.commerce.status_normalizer import StatusTarget
from app.domain.services.release_coordinator import ReleaseCoordinator


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleeps() -> _Sleeps:
    return _Sleeps()


@pytest.fixture
def coordinator(db_session, fake_gateway, workflow_config, sleeps) -> ReleaseCoordinator:
    return ReleaseCoordinator(db_session, fake_gateway, workflow_config, sleep=sleeps)


@pytest.fixture
async def claimed(fake_gateway, worker_factory, assignment_factory):
    """A worker holding order 1001, which is in progress remotely"""
    worker = await worker_factory(user_id="user-1", name="Noa")
    fake_gateway.add_order("1001", status=1956875584)
    assignment = await assignment_factory(worker.id, "1001")
    return worker, assignment


class TestRelease:

    @pytest.mark.integration
    async def test_confirmed_release(self, db_session, fake_gateway, coordinator, claimed, make_principal, sleeps):
        _, assignment = claimed

        result = await coordinator.release(assignment.id, make_principal("user-1", name="Noa"))

        assert result.confirmed is True
        assert result.message == "Order N-1001 released and confirmed as 'Under Review'"
        assert result.remote_status == "Under Review"
        assert result.assignment_id == assignment.id
        assert fake_gateway.status_writes[0][1] == StatusTarget(status_id="449146439")
        # confirmed on the first poll, no waiting
        assert sleeps.delays == []

        assert assignment.status == AssignmentStatus.RELEASED
        assert assignment.removed_at is not None
        assert assignment.remote_status_slug == "under_review"

        entry = (await db_session.execute(select(OrderHistory))).scalar_one()
        assert entry.status == "released"
        assert entry.notes == "Released by Noa"
        assert entry.final_remote_status == "Under Review"

    @pytest.mark.integration
    async def test_unconfirmed_release_still_releases(
        self, db_session, fake_gateway, coordinator, claimed, make_principal, sleeps, workflow_config
    ):
        _, assignment = claimed
        fake_gateway.apply_status_writes = False

        result = await coordinator.release(assignment.id, make_principal("user-1"))

        assert result.confirmed is False
        assert result.message == (
            "Order N-1001 released; the platform has not confirmed '449146439' yet"
        )
        assert len(fake_gateway.calls_to("get_order")) == workflow_config.release_poll_attempts
        assert len(sleeps.delays) == workflow_config.release_poll_attempts - 1
        assert assignment.status == AssignmentStatus.RELEASED
        assert assignment.remote_status_id == "449146439"

    @pytest.mark.integration
    async def test_poll_errors_do_not_block_release(
        self, db_session, fake_gateway, coordinator, claimed, make_principal
    ):
        _, assignment = claimed
        fake_gateway.fail("get_order", RemoteTransientError("down"))

        result = await coordinator.release(assignment.id, make_principal("user-1"))

        assert result.confirmed is False
        assert assignment.status == AssignmentStatus.RELEASED

    @pytest.mark.integration
    async def test_explicit_slug_target(self, fake_gateway, coordinator, claimed, make_principal):
        _, assignment = claimed

        result = await coordinator.release(
            assignment.id, make_principal("user-1"), target=StatusTarget(slug="under_review")
        )

        assert result.confirmed is True
        assert fake_gateway.status_writes[0][1].slug == "under_review"

    @pytest.mark.integration
    async def test_rejected_write_leaves_assignment(
        self, db_session, fake_gateway, coordinator, claimed, make_principal
    ):
        _, assignment = claimed
        fake_gateway.fail("set_order_status", RemoteRejectedError("status locked"))

        with pytest.raises(RemoteRejectedError):
            await coordinator.release(assignment.id, make_principal("user-1"))

        await db_session.refresh(assignment)
        assert assignment.status == AssignmentStatus.ASSIGNED
        assert (await db_session.execute(select(OrderHistory))).first() is None

    @pytest.mark.integration
    @pytest.mark.parametrize("error", [RemoteTransientError("down"), RemoteTimeoutError("slow")])
    async def test_unavailable_write_is_reported_as_rejected(
        self, db_session, fake_gateway, coordinator, claimed, make_principal, error
    ):
        _, assignment = claimed
        fake_gateway.fail("set_order_status", error)

        with pytest.raises(RemoteRejectedError) as exc_info:
            await coordinator.release(assignment.id, make_principal("user-1"))

        assert exc_info.value.details["assignment_id"] == assignment.id
        await db_session.refresh(assignment)
        assert assignment.status == AssignmentStatus.ASSIGNED

    @pytest.mark.integration
    async def test_other_worker_is_forbidden(self, coordinator, claimed, make_principal, fake_gateway):
        _, assignment = claimed

        with pytest.raises(ForbiddenError):
            await coordinator.release(assignment.id, make_principal("user-2"))
        assert fake_gateway.status_writes == []

    @pytest.mark.integration
    async def test_supervisor_can_release(self, coordinator, claimed, make_principal):
        _, assignment = claimed

        result = await coordinator.release(
            assignment.id, make_principal("boss", roles=("supervisor",), name="Boss")
        )

        assert result.confirmed is True

    @pytest.mark.integration
    @pytest.mark.parametrize("status", [
        AssignmentStatus.PREPARED,
        AssignmentStatus.SHIPPED,
        AssignmentStatus.COMPLETED,
    ])
    async def test_only_assigned_or_preparing_can_be_released(
        self, fake_gateway, coordinator, worker_factory, assignment_factory, make_principal, status
    ):
        worker = await worker_factory()
        fake_gateway.add_order("1001")
        assignment = await assignment_factory(worker.id, "1001", status=status)

        with pytest.raises(InvalidStateTransitionError):
            await coordinator.release(assignment.id, make_principal("user-1"))
        assert fake_gateway.status_writes == []
