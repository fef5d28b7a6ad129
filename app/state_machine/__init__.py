"""
State Machine Module for the assignment lifecycle
"""
from app.state_machine.states import ASSIGNMENT_TRANSITIONS, RECONCILE_SWEEP_STATUSES
from app.state_machine.manager import AssignmentStateMachine

__all__ = ["ASSIGNMENT_TRANSITIONS", "RECONCILE_SWEEP_STATUSES", "AssignmentStateMachine"]
