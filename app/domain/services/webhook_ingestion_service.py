"""
Webhook Ingestion Service - durable log first, understanding second.

Every inbound call is written to webhook_logs before any parsing decision,
whatever its signature or body. Parsed order status notifications are then
projected into webhook_events, deduplicated on (order id, status), and
handed to the downstream handler with the duplicate flag.
"""
import hashlib
import hmac
import json
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import WorkflowConfig
from app.core.exceptions import AppException
from app.core.logging import get_logger
from app.db.models.webhook_event import WebhookEvent, build_unique_key
from app.db.models.webhook_log import WebhookLog
from app.domain.services.commerce.status_normalizer import extract_order_id

logger = get_logger(__name__)

_EVENT_KEYS = ("event", "topic", "type")
_STATUS_KEYS = ("status", "order_status", "state")
_MAX_SIGNATURE_CHARS = 256


def _fit(value: Optional[str], column: str) -> Optional[str]:
    """Clip to the webhook_logs column width"""
    if value is None:
        return None
    return value[:WebhookLog.__table__.c[column].type.length]


@dataclass
class IngestResult:
    accepted: bool = True
    parsed: bool = False
    verified: bool = False
    duplicate: bool = False
    processed: bool = False
    event: Optional[str] = None
    order_id: Optional[str] = None
    status: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA256 hex digest of the raw body, constant-time compared"""
    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[7:]
    return hmac.compare_digest(provided.lower(), compute_signature(secret, body))


def extract_event(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in _EVENT_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_order(payload: Any) -> dict[str, Any]:
    """The order object across the payload shapes seen so far"""
    if not isinstance(payload, dict):
        return {}
    data = payload.get("data")
    if isinstance(data, dict):
        if isinstance(data.get("order"), dict):
            return data["order"]
        return data
    if isinstance(payload.get("order"), dict):
        return payload["order"]
    return payload


def _status_text(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        for key in ("slug", "name", "id"):
            text = _status_text(value.get(key))
            if text:
                return text
        return None
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip().lower()
    return text or None


def extract_status(order: Mapping[str, Any], payload: Any = None) -> Optional[str]:
    for source in (order, payload if isinstance(payload, dict) else {}):
        for key in _STATUS_KEYS:
            text = _status_text(source.get(key))
            if text:
                return text
    return None


class WebhookIngestionService:
    def __init__(
        self,
        db: AsyncSession,
        config: WorkflowConfig,
        handler: Optional[Any] = None,
    ):
        self.db = db
        self.config = config
        self.handler = handler

    def _find_signature(self, headers: Mapping[str, str]) -> tuple[Optional[str], Optional[str]]:
        lowered = {k.lower(): v for k, v in headers.items()}
        for name in self.config.webhook_signature_headers:
            if lowered.get(name):
                return name, lowered[name]
        return None, None

    async def ingest(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        *,
        method: str = "POST",
        url: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> IngestResult:
        result = IngestResult()

        signature_header, signature = self._find_signature(headers)
        result.verified = verify_signature(self.config.webhook_secret, raw_body, signature)

        payload: Any = None
        parse_error: Optional[str] = None
        try:
            payload = json.loads(raw_body.decode("utf-8"))
            result.parsed = True
        except (UnicodeDecodeError, ValueError) as exc:
            parse_error = str(exc)

        order: dict[str, Any] = {}
        if result.parsed:
            order = extract_order(payload)
            result.event = _fit(extract_event(payload), "event")
            result.order_id = _fit(extract_order_id(order) if order else None, "order_id")
            result.status = _fit(extract_status(order, payload), "status")

        await self._write_log(
            method=method,
            url=url,
            client_ip=client_ip,
            headers=dict(headers),
            signature=signature,
            signature_header=_fit(signature_header, "signature_header"),
            raw_body=raw_body,
            payload=payload if isinstance(payload, (dict, list)) else None,
            parse_error=parse_error,
            result=result,
        )

        if not result.verified and self.config.webhook_enforce_signature:
            logger.warning(
                "Webhook rejected, signature not verified",
                extra_data={"client_ip": client_ip, "signature_header": signature_header},
            )
            result.accepted = False
            return result

        if not result.parsed:
            logger.warning(
                "Webhook body is not JSON, accepted without processing",
                extra_data={"client_ip": client_ip, "error": parse_error},
            )
            return result

        if result.order_id and result.status:
            result.duplicate = await self._record_event(result, payload)

        if self.handler is not None:
            try:
                result.processed = await self.handler.handle(
                    result.event,
                    payload,
                    order=order,
                    order_id=result.order_id,
                    status=result.status,
                    duplicate=result.duplicate,
                )
            except AppException as exc:
                logger.warning(
                    "Webhook handler failed, event kept in log",
                    extra_data={
                        "event": result.event,
                        "order_id": result.order_id,
                        "error": exc.message,
                    },
                )

        logger.info(
            "Webhook ingested",
            extra_data={k: v for k, v in result.to_dict().items() if k != "accepted"},
        )
        return result

    async def _write_log(
        self,
        *,
        raw_body: bytes,
        result: IngestResult,
        signature: Optional[str],
        **fields: Any,
    ) -> None:
        """Append to webhook_logs; a failure here is logged and never aborts the request"""
        entry = WebhookLog(
            signature=signature[:_MAX_SIGNATURE_CHARS] if signature else None,
            verified=result.verified,
            event=result.event,
            order_id=result.order_id,
            status=result.status,
            raw_body=raw_body.decode("utf-8", errors="replace"),
            **fields,
        )
        try:
            self.db.add(entry)
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "Failed to write webhook log",
                extra_data={"order_id": result.order_id, "error": str(exc)},
                exc_info=True,
            )

    async def _record_event(self, result: IngestResult, payload: Any) -> bool:
        """Insert the deduplicated event; True when the (order, status) pair was already seen"""
        event = WebhookEvent(
            unique_key=build_unique_key(result.order_id, result.status),
            event=result.event,
            order_id=result.order_id,
            status=result.status,
            payload=payload,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(event)
            await self.db.commit()
        except IntegrityError:
            logger.info(
                "Duplicate webhook status ignored",
                extra_data={"order_id": result.order_id, "status": result.status},
            )
            return True
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "Failed to record webhook event, processing without dedup",
                extra_data={"order_id": result.order_id, "status": result.status, "error": str(exc)},
                exc_info=True,
            )
        return False
