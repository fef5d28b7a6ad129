"""
Normalization of remote order and status payloads.

The commerce platform has exposed statuses under several shapes over time
(plain slug strings, numeric ids, objects keyed by id/status_id/statusId,
nested sub_status records, "original" parent statuses). Everything that
reads a remote payload goes through the functions here; business code only
sees RemoteStatus and RemoteOrder.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

_ID_KEYS = ("id", "status_id", "statusId", "code")
_NAME_KEYS = ("name", "name_en", "nameEn", "label", "status_name", "statusName")
_SUB_STATUS_KEYS = ("sub_status", "subStatus")


@dataclass(frozen=True)
class RemoteStatus:
    """Normalized remote status; every field may be missing"""
    id: Optional[str] = None
    slug: Optional[str] = None
    name: Optional[str] = None
    sub_status: Optional["RemoteStatus"] = None

    @property
    def is_empty(self) -> bool:
        return not (self.id or self.slug or self.name) and self.sub_status is None

    @property
    def effective(self) -> "RemoteStatus":
        """The most specific status: the sub-status when one is present"""
        if self.sub_status is not None and not self.sub_status.is_empty:
            return self.sub_status
        return self

    @property
    def label(self) -> Optional[str]:
        eff = self.effective
        return eff.name or eff.slug or eff.id or self.name or self.slug or self.id

    def identifiers(self) -> frozenset[str]:
        """All ids and lower-cased slugs at both levels"""
        values: set[str] = set()
        for status in (self, self.sub_status):
            if status is None:
                continue
            if status.id:
                values.add(status.id)
            if status.slug:
                values.add(status.slug.lower())
        return frozenset(values)

    def matches(self, status_id: Optional[str] = None, slug: Optional[str] = None) -> bool:
        identifiers = self.identifiers()
        if status_id and str(status_id) in identifiers:
            return True
        return bool(slug) and slug.lower() in identifiers


@dataclass(frozen=True)
class StatusTarget:
    """A requested remote status, by id or slug"""
    status_id: Optional[str] = None
    slug: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.status_id and not self.slug:
            raise ValueError("StatusTarget requires status_id or slug")

    @classmethod
    def parse(cls, value: Any) -> "StatusTarget":
        """Numeric values are ids, anything else is a slug"""
        text = _clean(value)
        if not text:
            raise ValueError("empty status target")
        if text.isdigit():
            return cls(status_id=text)
        return cls(slug=text.lower())

    def to_payload(self) -> dict[str, Any]:
        if self.status_id:
            return {"status_id": int(self.status_id) if self.status_id.isdigit() else self.status_id}
        return {"slug": self.slug}

    @property
    def label(self) -> str:
        return self.slug or self.status_id or ""


@dataclass
class RemoteOrder:
    id: str
    number: Optional[str] = None
    status: RemoteStatus = field(default_factory=RemoteStatus)
    created_at: Optional[datetime] = None
    items: list[dict[str, Any]] = field(default_factory=list)
    totals: dict[str, Any] = field(default_factory=dict)
    customer: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    def snapshot(self) -> dict[str, Any]:
        """Denormalized contents stored on the assignment at claim time"""
        return {
            "order_number": self.number,
            "items": self.items,
            "totals": self.totals,
            "customer": self.customer,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def _clean(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, (int, float, str)):
        text = str(value).strip()
        return text or None
    return None


def _first(record: dict[str, Any], keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = _clean(record.get(key))
        if value:
            return value
    return None


def normalize_remote_status(raw: Any) -> RemoteStatus:
    """
    Turn any historical status shape into a RemoteStatus. Never raises.

    - "in_progress"            -> slug
    - 1939592358 / "1939592358" -> id
    - {"id", "slug", "name", "sub_status": {...}} and key variants
    - {"status": {...}}        -> unwrapped
    """
    if raw is None:
        return RemoteStatus()

    if isinstance(raw, (int, float, str)) and not isinstance(raw, bool):
        text = _clean(raw)
        if not text:
            return RemoteStatus()
        if text.isdigit():
            return RemoteStatus(id=text)
        return RemoteStatus(slug=text.lower())

    if not isinstance(raw, dict):
        return RemoteStatus()

    # an order-like wrapper carrying the status under "status"
    if "status" in raw and isinstance(raw["status"], dict) and not any(k in raw for k in ("slug", "name")):
        inner = normalize_remote_status(raw["status"])
        if inner.sub_status is None:
            for key in _SUB_STATUS_KEYS:
                if isinstance(raw.get(key), dict):
                    sub = normalize_remote_status(raw[key])
                    if not sub.is_empty:
                        return RemoteStatus(inner.id, inner.slug, inner.name, sub)
        return inner

    status_id = _first(raw, _ID_KEYS)
    if not status_id:
        for key in ("original", "parent"):
            parent = raw.get(key)
            if isinstance(parent, dict):
                status_id = _first(parent, ("id",))
                if status_id:
                    break
        if not status_id:
            status_id = _first(raw, ("original_id", "originalId"))

    slug = _clean(raw.get("slug"))
    if not slug and isinstance(raw.get("status"), str):
        slug = _clean(raw["status"])
    name = _first(raw, _NAME_KEYS)

    sub_status = None
    for key in _SUB_STATUS_KEYS:
        if isinstance(raw.get(key), dict):
            candidate = normalize_remote_status(raw[key])
            if not candidate.is_empty:
                sub_status = candidate
                break

    return RemoteStatus(
        id=status_id,
        slug=slug.lower() if slug else None,
        name=name,
        sub_status=sub_status,
    )


def extract_order_id(raw: dict[str, Any]) -> Optional[str]:
    return _first(raw, ("id", "order_id", "orderId"))


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, dict):
        value = value.get("date")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text[:19], "%Y-%m-%d %H:%M:%S")
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        try:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        except OverflowError:
            return None
    return parsed


def normalize_remote_order(raw: Any) -> Optional[RemoteOrder]:
    """RemoteOrder from an order payload, or None when no order id is present"""
    if not isinstance(raw, dict):
        return None
    if isinstance(raw.get("data"), dict) and not extract_order_id(raw):
        raw = raw["data"]
    order_id = extract_order_id(raw)
    if not order_id:
        return None

    created_at = None
    for key in ("date", "created_at", "createdAt"):
        created_at = _parse_timestamp(raw.get(key))
        if created_at:
            break

    amounts = raw.get("amounts") if isinstance(raw.get("amounts"), dict) else {}
    total = raw.get("total") if isinstance(raw.get("total"), dict) else amounts.get("total")
    totals = {"total": total} if total else {}
    if isinstance(amounts.get("sub_total"), dict):
        totals["sub_total"] = amounts["sub_total"]

    customer = raw.get("customer") if isinstance(raw.get("customer"), dict) else {}
    items = raw.get("items") if isinstance(raw.get("items"), list) else []

    return RemoteOrder(
        id=order_id,
        number=_first(raw, ("reference_id", "referenceId", "order_number", "number")) or order_id,
        status=normalize_remote_status(
            {"status": raw["status"], **({"sub_status": raw["sub_status"]} if "sub_status" in raw else {})}
            if isinstance(raw.get("status"), dict)
            else raw.get("status")
        ),
        created_at=created_at,
        items=items,
        totals=totals,
        customer={
            k: customer.get(k)
            for k in ("id", "first_name", "last_name", "mobile", "city")
            if customer.get(k) is not None
        },
        raw=raw,
    )
