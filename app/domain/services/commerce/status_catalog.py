"""
Allow-list of remote statuses under which an assignment stays active.

The configured ids and slugs are always part of the list. On top of that,
the store's status catalog is read from the remote platform and every
catalog status whose slug is allowed contributes its id, so stores that
report statuses by id only are still recognized. The catalog is cached in
Redis for status_catalog_cache_ttl_seconds; a TTL of 0 re-fetches it on
every resolution.
"""
from dataclasses import dataclass

from app.core import redis_client
from app.core.config import WorkflowConfig
from app.core.exceptions import RemoteServiceError
from app.core.logging import get_logger
from app.domain.services.commerce.gateway import CommerceGateway
from app.domain.services.commerce.status_normalizer import RemoteStatus

logger = get_logger(__name__)

CATALOG_CACHE_KEY = "commerce:status_catalog"


@dataclass(frozen=True)
class AllowList:
    status_ids: frozenset[str]
    status_slugs: frozenset[str]

    def permits(self, status: RemoteStatus) -> bool:
        """True if any id or slug of the status (or its sub-status) is allowed"""
        for value in status.identifiers():
            if value in self.status_ids or value in self.status_slugs:
                return True
        return False


class StatusCatalog:
    def __init__(self, gateway: CommerceGateway, config: WorkflowConfig):
        self.gateway = gateway
        self.config = config

    def configured_allow_list(self) -> AllowList:
        return AllowList(
            status_ids=self.config.allowed_status_ids,
            status_slugs=self.config.allowed_status_slugs,
        )

    async def resolve_allow_list(self) -> AllowList:
        base = self.configured_allow_list()
        catalog = await self._load_catalog()
        if not catalog:
            return base

        extra_ids = {
            status.id
            for status in catalog
            if status.id and status.slug and status.slug.lower() in base.status_slugs
        }
        return AllowList(
            status_ids=base.status_ids | frozenset(extra_ids),
            status_slugs=base.status_slugs,
        )

    async def _load_catalog(self) -> list[RemoteStatus]:
        ttl = self.config.status_catalog_cache_ttl_seconds
        if ttl > 0:
            cached = await self._read_cache()
            if cached is not None:
                return cached

        try:
            catalog = await self.gateway.list_statuses()
        except RemoteServiceError as exc:
            logger.warning(
                "Status catalog unavailable, using configured allow-list",
                extra_data={"error": exc.message, "error_code": exc.error_code.value},
            )
            return []

        if ttl > 0 and catalog:
            await self._write_cache(catalog, ttl)
        return catalog

    async def _read_cache(self) -> list[RemoteStatus] | None:
        entries = await redis_client.cache_get_json(CATALOG_CACHE_KEY)
        if not isinstance(entries, list):
            return None
        return [
            RemoteStatus(id=e.get("id"), slug=e.get("slug"), name=e.get("name"))
            for e in entries
            if isinstance(e, dict)
        ]

    async def _write_cache(self, catalog: list[RemoteStatus], ttl: int) -> None:
        await redis_client.cache_set_json(
            CATALOG_CACHE_KEY,
            [{"id": s.id, "slug": s.slug, "name": s.name} for s in catalog],
            ttl,
        )
