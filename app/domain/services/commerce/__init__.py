"""
Remote commerce platform integration
"""
from app.domain.services.commerce.gateway import (
    CommerceGateway,
    StaticTokenProvider,
    build_commerce_gateway,
)
from app.domain.services.commerce.status_catalog import AllowList, StatusCatalog
from app.domain.services.commerce.status_normalizer import (
    RemoteOrder,
    RemoteStatus,
    StatusTarget,
    normalize_remote_order,
    normalize_remote_status,
)

__all__ = [
    "AllowList",
    "CommerceGateway",
    "RemoteOrder",
    "RemoteStatus",
    "StaticTokenProvider",
    "StatusCatalog",
    "StatusTarget",
    "build_commerce_gateway",
    "normalize_remote_order",
    "normalize_remote_status",
]
