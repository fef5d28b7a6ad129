"""
Remote Status Gateway - the only code that talks to the commerce platform API.

Every call goes through with_retry() with the configured policy and a hard
per-attempt timeout. Results of with_retry are translated here into the
RemoteServiceError hierarchy; no local state is kept.
"""
import asyncio
from typing import Any, Awaitable, Callable, Optional

import httpx

from app.core.config import WorkflowConfig, settings
from app.core.exceptions import (
    RemoteNotFoundError,
    RemoteRejectedError,
    RemoteServiceError,
    RemoteTimeoutError,
    RemoteTransientError,
)
from app.core.logging import get_logger
from app.core.retry import RetryOutcome, with_retry
from app.domain.services.commerce.status_normalizer import (
    RemoteOrder,
    RemoteStatus,
    StatusTarget,
    normalize_remote_order,
    normalize_remote_status,
)

logger = get_logger(__name__)


class StaticTokenProvider:
    """Bearer token from settings; refresh is handled by an outside collaborator"""

    def __init__(self, token: str):
        self._token = token

    async def get_token(self) -> str:
        return self._token


class CommerceGateway:
    """Async client for orders and order statuses of one merchant"""

    def __init__(
        self,
        config: WorkflowConfig,
        *,
        base_url: str,
        token_provider: StaticTokenProvider,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.config = config
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self._transport = transport
        self._sleep = sleep or asyncio.sleep

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send one request under the retry policy, raising on transient failure or timeout"""
        token = await self.token_provider.get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            transport=self._transport,
            timeout=self.config.request_timeout_seconds,
        ) as client:
            async def _call() -> httpx.Response:
                return await client.request(method, path, params=params, json=json)

            result = await with_retry(
                _call,
                self.config.retry,
                timeout_seconds=self.config.request_timeout_seconds,
                operation_name=f"commerce.{operation}",
                sleep=self._sleep,
            )

        details = {"operation": operation, "path": path, "attempts": result.attempts}
        if result.outcome == RetryOutcome.TIMEOUT:
            raise RemoteTimeoutError(f"{operation} timed out", details={**details, "error": result.error})
        if result.outcome == RetryOutcome.TRANSIENT_FAILURE:
            if result.value is not None:
                details["remote_status_code"] = result.value.status_code
            raise RemoteTransientError(
                f"{operation} failed after {result.attempts} attempts",
                details={**details, "error": result.error},
            )
        return result.value

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteTransientError(
                f"{operation} returned invalid JSON",
                details={"operation": operation, "error": str(exc)},
            ) from exc
        return body if isinstance(body, dict) else {"data": body}

    async def get_order(self, order_id: str) -> RemoteOrder:
        """Fetch one order with its current status"""
        response = await self._request("GET", f"/orders/{order_id}", "get_order")
        if response.status_code == 404:
            raise RemoteNotFoundError(
                f"Order {order_id} not found",
                details={"order_id": order_id},
            )
        if response.is_error:
            raise RemoteServiceError.from_response("get_order", response)

        body = self._json(response, "get_order")
        order = normalize_remote_order(body.get("data", body))
        if order is None:
            raise RemoteServiceError.from_response(
                "get_order", response, message=f"Order {order_id} payload has no id"
            )
        return order

    async def get_order_items(self, order_id: str) -> list[dict[str, Any]]:
        response = await self._request(
            "GET", "/orders/items", "get_order_items", params={"order_id": order_id}
        )
        if response.is_error:
            raise RemoteServiceError.from_response("get_order_items", response)
        data = self._json(response, "get_order_items").get("data")
        return data if isinstance(data, list) else []

    async def list_orders(self, status_filter: str, *, limit: int = 50) -> list[RemoteOrder]:
        """Orders currently in `status_filter` (id or slug), oldest first"""
        response = await self._request(
            "GET",
            "/orders",
            "list_orders",
            params={
                "status": status_filter,
                "per_page": limit,
                "sort_by": "created_at-asc",
            },
        )
        if response.is_error:
            raise RemoteServiceError.from_response("list_orders", response)

        data = self._json(response, "list_orders").get("data")
        if not isinstance(data, list):
            if data is not None:
                logger.warning(
                    "Unexpected order list payload",
                    extra_data={"status_filter": status_filter, "type": type(data).__name__},
                )
            return []
        return [o for o in (normalize_remote_order(item) for item in data) if o]

    async def set_order_status(self, order_id: str, target: StatusTarget) -> None:
        """Write the order's status; client errors are rejections and are not retried"""
        payload = target.to_payload()
        response = await self._request(
            "POST", f"/orders/{order_id}/status", "set_order_status", json=payload
        )
        if response.is_error:
            logger.warning(
                "Remote status update rejected",
                extra_data={
                    "order_id": order_id,
                    "target": target.label,
                    "remote_status_code": response.status_code,
                },
            )
            raise RemoteRejectedError(
                f"Status update to '{target.label}' was rejected ({response.status_code})",
                details={
                    "order_id": order_id,
                    "target": payload,
                    "remote_status_code": response.status_code,
                    "response_text": response.text[:500],
                },
            )
        logger.info(
            "Remote status updated",
            extra_data={"order_id": order_id, "target": target.label},
        )

    async def list_statuses(self) -> list[RemoteStatus]:
        """The store's status catalog"""
        response = await self._request("GET", "/orders/statuses", "list_statuses")
        if response.is_error:
            raise RemoteServiceError.from_response("list_statuses", response)
        data = self._json(response, "list_statuses").get("data") or []
        statuses = []
        for item in data:
            status = normalize_remote_status(item)
            if not status.is_empty:
                statuses.append(status)
        return statuses


def build_commerce_gateway(config: WorkflowConfig) -> CommerceGateway:
    return CommerceGateway(
        config,
        base_url=settings.COMMERCE_API_BASE_URL,
        token_provider=StaticTokenProvider(settings.COMMERCE_API_TOKEN),
    )
