"""
Fixtures for end-to-end scenarios.

Scenarios drive the public API only: actors with role-scoped tokens call
/api endpoints, the commerce platform is the in-memory fake from the root
conftest, and webhooks arrive signed like the platform signs them.
"""
import json
from typing import Any, Optional

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import create_access_token
from app.db.models.order_assignment import OrderAssignment
from app.db.models.order_history import OrderHistory
from app.domain.services.webhook_ingestion_service import compute_signature


class Actor:
    """An API caller holding a bearer token"""

    def __init__(self, client: httpx.AsyncClient, user_id: str, roles: tuple[str, ...], name: Optional[str]):
        self.client = client
        self.user_id = user_id
        self.headers = {"Authorization": f"Bearer {create_access_token(user_id, list(roles), name=name)}"}

    async def post(self, path: str, json_body: Optional[dict] = None) -> httpx.Response:
        return await self.client.post(f"/api{path}", json=json_body, headers=self.headers)

    async def get(self, path: str, **params: Any) -> httpx.Response:
        return await self.client.get(f"/api{path}", params=params or None, headers=self.headers)

    async def claim(self) -> dict:
        response = await self.post("/assignments/claim")
        assert response.status_code in (200, 503), response.text
        return response.json()


@pytest.fixture
def actor(test_client):
    def _actor(user_id: str, roles: tuple[str, ...] = ("order_prep",), name: Optional[str] = None) -> Actor:
        return Actor(test_client, user_id, roles, name)
    return _actor


@pytest.fixture
def admin(actor) -> Actor:
    return actor("admin-1", roles=("admin",), name="Admin")


@pytest.fixture
def enroll(admin):
    """Create a worker profile through the admin API"""
    async def _enroll(user_id: str, name: str, max_concurrent_orders: int = 1, **fields: Any) -> dict:
        response = await admin.post("/admin/workers", {
            "user_id": user_id,
            "name": name,
            "max_concurrent_orders": max_concurrent_orders,
            **fields,
        })
        assert response.status_code == 201, response.text
        return response.json()
    return _enroll


@pytest.fixture
def platform_webhook(test_client, workflow_config):
    """Deliver an order status event the way the platform does"""
    async def _send(order_id: str, status: dict, event: str = "order.status.updated") -> dict:
        body = json.dumps({
            "event": event,
            "merchant": 1234,
            "data": {"id": int(order_id), "status": status},
        }).encode()
        response = await test_client.post(
            "/api/webhooks/commerce",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Salla-Signature": compute_signature(workflow_config.webhook_secret, body),
            },
        )
        assert response.status_code == 200, response.text
        return response.json()
    return _send


@pytest.fixture
def load_assignment(db_session: AsyncSession):
    async def _load(assignment_id: str) -> OrderAssignment:
        db_session.expire_all()
        assignment = await db_session.get(OrderAssignment, assignment_id)
        assert assignment is not None
        return assignment
    return _load


@pytest.fixture
def history_of(db_session: AsyncSession):
    async def _history(order_id: str) -> list[OrderHistory]:
        result = await db_session.execute(
            select(OrderHistory).where(OrderHistory.order_id == order_id).order_by(OrderHistory.id)
        )
        return list(result.scalars().all())
    return _history
