"""Accessors for Stripe payload fields that tolerate missing or malformed values."""

from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_epoch(value: Any) -> Optional[datetime]:
    """
    Convert Stripe epoch seconds to an aware UTC datetime.

    Null, non-numeric and non-positive values become None.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def ref_id(value: Any) -> Optional[str]:
    """ID of a Stripe reference, whether expanded into an object or not."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return value.get("id")
    return getattr(value, "id", None)


def first_item(subscription: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    items = subscription.get("items")
    if not items:
        return None
    data = items.get("data") if isinstance(items, Mapping) else None
    if not data:
        return None
    return data[0]


def line_price_id(subscription: Mapping[str, Any]) -> Optional[str]:
    """Price ID of the subscription's first line item."""
    item = first_item(subscription)
    if not item:
        return None
    return ref_id(item.get("price"))


def period_bounds(subscription: Mapping[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """
    Current period start and end of a subscription.

    Newer API versions only report the period on line items, so the first
    item is used when the top-level fields are absent. A start that falls
    after the end is dropped.
    """
    start = from_epoch(subscription.get("current_period_start"))
    end = from_epoch(subscription.get("current_period_end"))
    item = first_item(subscription)
    if item:
        start = start or from_epoch(item.get("current_period_start"))
        end = end or from_epoch(item.get("current_period_end"))
    if start and end and start > end:
        start = None
    return start, end


def metadata_of(obj: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    if not obj:
        return {}
    return obj.get("metadata") or {}


def to_epoch(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp()) if value else None
