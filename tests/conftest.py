"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- An in-memory commerce platform (FakeCommerceGateway) and Redis (FakeRedis)
- Workflow configuration without delays
- Test data factories and bearer tokens
"""
# secrets must be in the environment before app.core.config builds Settings
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")

import copy
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Optional
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.dependencies.services import get_commerce_gateway, get_workflow_config
from app.core.auth import Principal, create_access_token
from app.core.capabilities import resolve_capabilities
from app.core.config import WorkflowConfig
from app.core.exceptions import RemoteNotFoundError
from app.core.retry import RetryPolicy
from app.db.database import Base, get_db
from app.db.models.order_assignment import AssignmentStatus, OrderAssignment
from app.db.models.order_worker import OrderWorker
from app.domain.services.commerce.status_normalizer import (
    RemoteOrder,
    RemoteStatus,
    StatusTarget,
    normalize_remote_status,
)
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_MERCHANT_ID = "test-merchant"
TEST_WEBHOOK_SECRET = "test-webhook-secret"

UNDER_REVIEW_ID = "449146439"
IN_PROGRESS_ID = "1956875584"
COMPLETED_ID = "566146469"
CANCELED_ID = "525144736"

DEFAULT_STATUS_CATALOG = [
    RemoteStatus(id=UNDER_REVIEW_ID, slug="under_review", name="Under Review"),
    RemoteStatus(id=IN_PROGRESS_ID, slug="in_progress", name="In Progress"),
    RemoteStatus(id="1939592358", slug="in_progress", name="Preparing"),
    RemoteStatus(id=COMPLETED_ID, slug="completed", name="Completed"),
    RemoteStatus(id=CANCELED_ID, slug="canceled", name="Canceled"),
    RemoteStatus(id="989286562", slug="restored", name="Restored"),
]


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Workflow configuration
# ============================================================================

@pytest.fixture
def workflow_config() -> WorkflowConfig:
    """Production-shaped config without waits or cache"""
    return WorkflowConfig(
        merchant_id=TEST_MERCHANT_ID,
        retry=RetryPolicy(max_attempts=3, base_delay_ms=0, max_delay_ms=0),
        request_timeout_seconds=5.0,
        allowed_status_ids=frozenset({UNDER_REVIEW_ID, IN_PROGRESS_ID, "1939592358", COMPLETED_ID}),
        allowed_status_slugs=frozenset({
            "under_review", "in_progress", "completed", "shipped",
            "delivering", "delivered", "ready_for_pickup",
        }),
        in_progress_status_ids=frozenset({IN_PROGRESS_ID, "1939592358"}),
        in_progress_status_slugs=frozenset({"in_progress"}),
        new_order_status_filters=("under_review", UNDER_REVIEW_ID),
        claim_target_status_id=IN_PROGRESS_ID,
        release_target_status_id=UNDER_REVIEW_ID,
        release_poll_attempts=3,
        release_poll_delay_ms=0,
        status_catalog_cache_ttl_seconds=0,
        webhook_secret=TEST_WEBHOOK_SECRET,
    )


# ============================================================================
# Fake commerce platform
# ============================================================================

class FakeCommerceGateway:
    """
    In-memory stand-in for CommerceGateway.

    Orders are stored as RemoteOrder and handed out as copies. Status writes
    are recorded and, unless apply_status_writes is off, applied using the
    status catalog to fill in slug and name. fail() injects an exception for
    one operation, optionally only for one order id or status filter.
    """

    def __init__(self) -> None:
        self.orders: dict[str, RemoteOrder] = {}
        self.items: dict[str, list[dict[str, Any]]] = {}
        self.statuses: list[RemoteStatus] = list(DEFAULT_STATUS_CATALOG)
        self.status_writes: list[tuple[str, StatusTarget]] = []
        self.calls: list[tuple[str, Optional[str]]] = []
        self.apply_status_writes = True
        self._failures: dict[tuple[str, Optional[str]], Exception] = {}
        self._clock = datetime(2024, 1, 1, 8, 0, 0)

    # -- test setup -------------------------------------------------------

    def add_order(
        self,
        order_id: str,
        *,
        status: Any = "under_review",
        number: Optional[str] = None,
        created_at: Optional[datetime] = None,
        items: Optional[list[dict[str, Any]]] = None,
    ) -> RemoteOrder:
        if created_at is None:
            self._clock += timedelta(minutes=1)
            created_at = self._clock
        order = RemoteOrder(
            id=order_id,
            number=number or f"N-{order_id}",
            status=self._resolve(normalize_remote_status(status)),
            created_at=created_at,
            customer={"first_name": "Dana"},
            totals={"total": {"amount": 120, "currency": "SAR"}},
        )
        self.orders[order_id] = order
        self.items[order_id] = items if items is not None else [{"name": "Mug", "quantity": 2}]
        return order

    def set_remote_status(self, order_id: str, status: Any) -> None:
        """Simulate a status change made directly on the platform"""
        self.orders[order_id].status = self._resolve(normalize_remote_status(status))

    def fail(self, operation: str, error: Exception, key: Optional[str] = None) -> None:
        self._failures[(operation, key)] = error

    def clear_failures(self) -> None:
        self._failures.clear()

    def calls_to(self, operation: str) -> list[Optional[str]]:
        return [key for op, key in self.calls if op == operation]

    # -- internals --------------------------------------------------------

    def _resolve(self, status: RemoteStatus) -> RemoteStatus:
        if status.sub_status is not None or (status.id and status.slug):
            return status
        for known in self.statuses:
            if known.matches(status.id, None) or (not status.id and known.matches(None, status.slug)):
                return known
        return status

    def _check(self, operation: str, key: Optional[str]) -> None:
        self.calls.append((operation, key))
        error = self._failures.get((operation, key)) or self._failures.get((operation, None))
        if error is not None:
            raise error

    # -- gateway interface -----------------------------------------------

    async def get_order(self, order_id: str) -> RemoteOrder:
        self._check("get_order", order_id)
        if order_id not in self.orders:
            raise RemoteNotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
        order = copy.deepcopy(self.orders[order_id])
        order.items = []
        return order

    async def get_order_items(self, order_id: str) -> list[dict[str, Any]]:
        self._check("get_order_items", order_id)
        return copy.deepcopy(self.items.get(order_id, []))

    async def list_orders(self, status_filter: str, *, limit: int = 50) -> list[RemoteOrder]:
        self._check("list_orders", status_filter)
        target = StatusTarget.parse(status_filter)
        matching = [
            order for order in self.orders.values()
            if order.status.matches(target.status_id, target.slug)
        ]
        matching.sort(key=lambda o: (o.created_at, o.id))
        return [copy.deepcopy(o) for o in matching[:limit]]

    async def set_order_status(self, order_id: str, target: StatusTarget) -> None:
        self._check("set_order_status", order_id)
        if order_id not in self.orders:
            raise RemoteNotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
        self.status_writes.append((order_id, target))
        if self.apply_status_writes:
            self.orders[order_id].status = self._resolve(
                RemoteStatus(id=target.status_id, slug=target.slug)
            )

    async def list_statuses(self) -> list[RemoteStatus]:
        self._check("list_statuses", None)
        return list(self.statuses)


@pytest.fixture
def fake_gateway() -> FakeCommerceGateway:
    return FakeCommerceGateway()


# ============================================================================
# HTTP client
# ============================================================================

@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, fake_gateway, workflow_config):
    """Create test client with database, gateway and config overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_commerce_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_workflow_config] = lambda: workflow_config

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Identities
# ============================================================================

@pytest.fixture
def make_principal():
    """Principal with capabilities resolved from roles"""
    def _make(user_id: str = "user-1", roles: tuple[str, ...] = ("order_prep",), name: str | None = None) -> Principal:
        return Principal(
            user_id=user_id,
            name=name,
            roles=tuple(roles),
            capabilities=resolve_capabilities(roles),
        )
    return _make


@pytest.fixture
def auth_headers():
    """Authorization header carrying a freshly issued token"""
    def _headers(user_id: str = "user-1", roles: tuple[str, ...] = ("order_prep",), name: str | None = None) -> dict:
        token = create_access_token(user_id, list(roles), name=name)
        return {"Authorization": f"Bearer {token}"}
    return _headers


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def worker_factory(db_session: AsyncSession):
    """Factory for creating worker profiles"""
    async def _create_worker(
        user_id: str = "user-1",
        name: str = "Test Worker",
        *,
        max_concurrent_orders: int = 1,
        is_active: bool = True,
        auto_assign_enabled: bool = True,
        status_scope: str | None = None,
    ) -> OrderWorker:
        worker = OrderWorker(
            user_id=user_id,
            name=name,
            max_concurrent_orders=max_concurrent_orders,
            is_active=is_active,
            auto_assign_enabled=auto_assign_enabled,
            status_scope=status_scope,
        )
        db_session.add(worker)
        await db_session.commit()
        await db_session.refresh(worker)
        return worker

    return _create_worker


@pytest.fixture
def assignment_factory(db_session: AsyncSession):
    """Factory for creating assignments directly, bypassing the allocator"""
    async def _create_assignment(
        worker_id: int,
        order_id: str = "1001",
        *,
        status: AssignmentStatus = AssignmentStatus.ASSIGNED,
        order_number: str | None = None,
        remote_status_id: str | None = IN_PROGRESS_ID,
        remote_status_slug: str | None = "in_progress",
        remote_status_name: str | None = None,
        assigned_at: datetime | None = None,
        started_at: datetime | None = None,
        merchant_id: str = TEST_MERCHANT_ID,
    ) -> OrderAssignment:
        assignment = OrderAssignment(
            merchant_id=merchant_id,
            order_id=order_id,
            order_number=order_number or f"N-{order_id}",
            worker_id=worker_id,
            status=status,
            remote_status_id=remote_status_id,
            remote_status_slug=remote_status_slug,
            remote_status_name=remote_status_name,
            order_snapshot={"items": [{"name": "Mug", "quantity": 2}]},
            assigned_at=assigned_at or datetime.utcnow(),
            started_at=started_at,
        )
        db_session.add(assignment)
        await db_session.commit()
        await db_session.refresh(assignment)
        return assignment

    return _create_assignment


# ============================================================================
# Redis
# ============================================================================

class FakeRedis:
    """In-memory Redis replacement with TTL tracking"""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self._store[key] = value
        self._ttls[key] = ttl

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test"""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis):
        yield _fake
