"""
Assignment lifecycle transitions.

Forward path:  assigned -> preparing -> prepared -> shipped -> completed
               (preparing and prepared may also complete directly)
Drift:         assigned | preparing | shipped -> removed   (reconciler, admin)
Release:       assigned | preparing -> released            (release coordinator)

There is no assigned -> completed shortcut.
"""
from app.db.models.order_assignment import AssignmentStatus

ASSIGNMENT_TRANSITIONS: dict[AssignmentStatus, frozenset[AssignmentStatus]] = {
    AssignmentStatus.ASSIGNED: frozenset({
        AssignmentStatus.PREPARING,
        AssignmentStatus.REMOVED,
        AssignmentStatus.RELEASED,
    }),
    AssignmentStatus.PREPARING: frozenset({
        AssignmentStatus.PREPARED,
        AssignmentStatus.COMPLETED,
        AssignmentStatus.REMOVED,
        AssignmentStatus.RELEASED,
    }),
    AssignmentStatus.PREPARED: frozenset({
        AssignmentStatus.SHIPPED,
        AssignmentStatus.COMPLETED,
    }),
    AssignmentStatus.SHIPPED: frozenset({
        AssignmentStatus.COMPLETED,
        AssignmentStatus.REMOVED,
    }),
    AssignmentStatus.COMPLETED: frozenset(),
    AssignmentStatus.REMOVED: frozenset(),
    AssignmentStatus.RELEASED: frozenset(),
}

# transitions that require the last-known remote status to be "in progress"
REMOTE_GATED_TARGETS = frozenset({
    AssignmentStatus.PREPARED,
    AssignmentStatus.COMPLETED,
})

# statuses walked by the reconciliation sweep
RECONCILE_SWEEP_STATUSES = (
    AssignmentStatus.ASSIGNED,
    AssignmentStatus.PREPARING,
    AssignmentStatus.SHIPPED,
)

RELEASABLE_STATUSES = frozenset({
    AssignmentStatus.ASSIGNED,
    AssignmentStatus.PREPARING,
})

# a shipped order has already left in-progress on the remote side
REMOTE_GATE_EXEMPT_SOURCES = frozenset({
    AssignmentStatus.SHIPPED,
})
