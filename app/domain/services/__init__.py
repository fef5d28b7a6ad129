"""
Domain Services
"""
from app.domain.services.assignment_service import AssignmentService
from app.domain.services.capacity_allocator import CapacityAllocator, ClaimOutcome, ClaimResult
from app.domain.services.history_service import HistoryService
from app.domain.services.priority_service import PriorityService
from app.domain.services.release_coordinator import ReleaseCoordinator, ReleaseResult
from app.domain.services.status_reconciler import ReconcileSummary, StatusReconciler
from app.domain.services.webhook_handlers import CommerceWebhookHandler
from app.domain.services.webhook_ingestion_service import IngestResult, WebhookIngestionService
from app.domain.services.worker_service import WorkerService

__all__ = [
    "AssignmentService",
    "CapacityAllocator",
    "ClaimOutcome",
    "ClaimResult",
    "CommerceWebhookHandler",
    "HistoryService",
    "IngestResult",
    "PriorityService",
    "ReconcileSummary",
    "ReleaseCoordinator",
    "ReleaseResult",
    "StatusReconciler",
    "WebhookIngestionService",
    "WorkerService",
]
