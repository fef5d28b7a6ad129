"""
Assignment State Machine - validates lifecycle transitions
"""
from typing import Iterable

from app.core.exceptions import InvalidStateTransitionError, RemoteStatusPreconditionError
from app.core.logging import get_logger
from app.db.models.order_assignment import AssignmentStatus, OrderAssignment
from app.state_machine.states import (
    ASSIGNMENT_TRANSITIONS,
    REMOTE_GATE_EXEMPT_SOURCES,
    REMOTE_GATED_TARGETS,
)

logger = get_logger(__name__)


class AssignmentStateMachine:
    """
    Guards every local status change of an OrderAssignment.

    The remote gate only applies to targets in REMOTE_GATED_TARGETS: the
    assignment's last-known remote status id or slug must be one of the
    configured in-progress values.
    """

    def __init__(
        self,
        in_progress_status_ids: Iterable[str] = (),
        in_progress_status_slugs: Iterable[str] = (),
    ):
        self.in_progress_status_ids = frozenset(str(s) for s in in_progress_status_ids)
        self.in_progress_status_slugs = frozenset(s.lower() for s in in_progress_status_slugs)

    @staticmethod
    def is_valid_transition(current: AssignmentStatus, target: AssignmentStatus) -> bool:
        return target in ASSIGNMENT_TRANSITIONS.get(current, frozenset())

    def is_remote_in_progress(self, assignment: OrderAssignment) -> bool:
        if assignment.remote_status_id and str(assignment.remote_status_id) in self.in_progress_status_ids:
            return True
        slug = (assignment.remote_status_slug or "").lower()
        return bool(slug) and slug in self.in_progress_status_slugs

    def ensure_transition(self, assignment: OrderAssignment, target: AssignmentStatus) -> None:
        """Raise unless `assignment` may move to `target`; never mutates"""
        current = AssignmentStatus(assignment.status)
        if not self.is_valid_transition(current, target):
            logger.warning(
                "Invalid assignment transition attempted",
                extra_data={
                    "assignment_id": assignment.id,
                    "current_state": current.value,
                    "target_state": target.value,
                },
            )
            raise InvalidStateTransitionError(current.value, target.value, assignment.id)

        gated = target in REMOTE_GATED_TARGETS and current not in REMOTE_GATE_EXEMPT_SOURCES
        if gated and not self.is_remote_in_progress(assignment):
            logger.warning(
                "Remote status precondition not met",
                extra_data={
                    "assignment_id": assignment.id,
                    "target_state": target.value,
                    "remote_status_id": assignment.remote_status_id,
                    "remote_status_slug": assignment.remote_status_slug,
                },
            )
            raise RemoteStatusPreconditionError(
                assignment_id=assignment.id,
                target_state=target.value,
                remote_status=assignment.remote_status_slug or assignment.remote_status_id,
                allowed=sorted(self.in_progress_status_slugs | self.in_progress_status_ids),
            )
