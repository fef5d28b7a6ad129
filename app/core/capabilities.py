"""
Capability model.

Roles come from the identity provider. They are resolved into a capability
set once per request, and each operation checks the single capability it
needs instead of re-deriving role rules inline.
"""
import enum
from typing import Iterable


class Capability(str, enum.Enum):
    PREPARE_ORDERS = "prepare_orders"
    MANAGE_ASSIGNMENTS = "manage_assignments"
    MANAGE_WORKERS = "manage_workers"
    RUN_RECONCILIATION = "run_reconciliation"
    VIEW_HISTORY = "view_history"


ADMIN_ROLE = "admin"

ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    ADMIN_ROLE: frozenset(Capability),
    "supervisor": frozenset({
        Capability.PREPARE_ORDERS,
        Capability.MANAGE_ASSIGNMENTS,
        Capability.RUN_RECONCILIATION,
        Capability.VIEW_HISTORY,
    }),
    "order_prep": frozenset({Capability.PREPARE_ORDERS}),
}


def resolve_capabilities(roles: Iterable[str]) -> frozenset[Capability]:
    """Union of capabilities for the given roles; unknown roles grant nothing"""
    granted: set[Capability] = set()
    for role in roles:
        granted |= ROLE_CAPABILITIES.get((role or "").strip().lower(), frozenset())
    return frozenset(granted)
