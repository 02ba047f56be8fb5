"""Turn raw kind 38383 events into canonical Order records."""
import math
import re
from datetime import datetime, timezone
from typing import Optional, Union

from src.models import ORDER_EVENT_KIND, Order, Platform, Rejection

# Ordered: first fragment found in the source URL wins.
PLATFORM_FRAGMENTS: tuple[tuple[str, Platform], ...] = (
    ("mostro", Platform.MOSTRO),
    ("robosats", Platform.ROBOSATS),
    ("peach", Platform.PEACH),
    ("lnp2pbot", Platform.LNP2PBOT),
)

ORDER_KINDS = {"buy", "sell"}

# Plain ASCII numerals only
INT_PATTERN = re.compile(r"-?[0-9]+")
DECIMAL_PATTERN = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")

ORDER_STATUSES = {"pending", "active", "canceled", "completed", "expired"}
STATUS_ALIASES = {
    "in-progress": "active",
    "success": "completed",
    "cancelled": "canceled",
}


def _tag_values(tags) -> dict[str, list[str]]:
    """Map tag name to its values, keeping only the first occurrence."""
    values: dict[str, list[str]] = {}
    if not isinstance(tags, list):
        return values
    for tag in tags:
        if not isinstance(tag, (list, tuple)) or len(tag) < 2:
            continue
        name = tag[0]
        if not isinstance(name, str) or name in values:
            continue
        values[name] = [str(v) for v in tag[1:] if v is not None]
    return values


def _first(values: dict[str, list[str]], name: str) -> Optional[str]:
    items = values.get(name)
    if not items:
        return None
    value = items[0].strip()
    return value or None


def parse_int(raw: Optional[str]) -> int:
    """Parse a non-negative integer, 0 when absent or unparseable."""
    if raw is None or not INT_PATTERN.fullmatch(raw):
        return 0
    value = int(raw)
    return value if value >= 0 else 0


def parse_decimal(raw: Optional[str], signed: bool = False) -> float:
    """Parse a finite decimal, 0 when absent or unparseable."""
    if raw is None or not DECIMAL_PATTERN.fullmatch(raw):
        return 0.0
    value = float(raw)
    if not math.isfinite(value):
        return 0.0
    if not signed and value < 0:
        return 0.0
    return value


def parse_kind(raw: Optional[str]) -> str:
    value = (raw or "").lower()
    return value if value in ORDER_KINDS else "unknown"


def parse_status(raw: Optional[str]) -> str:
    value = (raw or "").lower()
    value = STATUS_ALIASES.get(value, value)
    return value if value in ORDER_STATUSES else "unknown"


def detect_platform(source_url: Optional[str]) -> Platform:
    """Infer the trading platform from the order's source link."""
    if not source_url:
        return Platform.UNKNOWN
    url = source_url.lower()
    for fragment, platform in PLATFORM_FRAGMENTS:
        if fragment in url:
            return platform
    return Platform.UNKNOWN


def normalize_event(event, now: Optional[datetime] = None) -> Union[Order, Rejection]:
    """Map a raw Nostr event to an Order, or explain why it was rejected.

    Only a payload that is not an object, or whose kind is not the order
    event kind, is rejected. Every other field falls back to its default.
    """
    if not isinstance(event, dict):
        return Rejection(event_id="", reason="payload is not an object")

    event_id = str(event.get("id") or "")
    if event.get("kind") != ORDER_EVENT_KIND:
        return Rejection(event_id=event_id, reason=f"unexpected event kind {event.get('kind')!r}")

    tags = _tag_values(event.get("tags"))

    order_id = _first(tags, "d") or event_id
    if not order_id:
        return Rejection(event_id=event_id, reason="event has neither d tag nor id")

    fiat_code = _first(tags, "f")
    source_url = _first(tags, "source")
    payment_methods = [pm.strip() for pm in tags.get("pm", []) if pm.strip()]

    return Order(
        order_id=order_id,
        kind=parse_kind(_first(tags, "k")),
        fiat_code=fiat_code.upper() if fiat_code else "unknown",
        status=parse_status(_first(tags, "s")),
        amount_sats=parse_int(_first(tags, "amt")),
        fiat_amount=parse_decimal(_first(tags, "fa")),
        payment_method=",".join(payment_methods),
        premium=parse_decimal(_first(tags, "premium"), signed=True),
        source_url=source_url,
        platform=detect_platform(source_url),
        last_seen_at=now or datetime.now(timezone.utc),
    )
