from __future__ import annotations

from typing import Any, Callable

from erp_bridge.contexts.erp.domain.contracts import (
    EVENT_STOCK_REPLENISHMENT_REQUESTED,
    EVENT_WORK_ORDER_APPROVAL_LINK_CREATED,
    EVENT_WORK_ORDER_LINE_ITEMS_CHANGED,
    EVENT_WORK_ORDER_STATUS_CHANGED,
)


Coercer = Callable[[Any], Any]


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    raw = str(value).strip()
    return raw or None


def _as_number(value: Any) -> float | int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return int(number) if number.is_integer() else number


def _as_positive_number(value: Any) -> float | int | None:
    number = _as_number(value)
    if number is None or number <= 0:
        return None
    return number


def _as_item_kind(value: Any) -> str | None:
    raw = _as_text(value)
    if raw is None:
        return None
    return "PART" if raw.upper() == "PART" else "LABOR"


# Each field: (output name, accepted payload keys, coercer, default).
LINE_ITEM_SCHEMA: tuple[tuple[str, tuple[str, ...], Coercer, Any], ...] = (
    ("kind", ("type", "kind"), _as_item_kind, "LABOR"),
    ("name", ("item", "name"), _as_text, ""),
    ("qty", ("qty", "quantity"), _as_positive_number, 1),
    ("code", ("recommendedPartRef", "code"), _as_text, None),
    ("cost", ("signalCost", "signal_cost", "cost"), _as_number, 0),
)


def _as_line_items(value: Any) -> list[dict[str, Any]] | None:
    if not isinstance(value, list):
        return None
    return [_coerce_fields(LINE_ITEM_SCHEMA, item) for item in value if isinstance(item, dict)]


PAYLOAD_SCHEMAS: dict[str, tuple[tuple[str, tuple[str, ...], Coercer, Any], ...]] = {
    EVENT_WORK_ORDER_STATUS_CHANGED: (
        ("to_status", ("toStatus", "to_status", "status"), _as_text, None),
        ("from_status", ("fromStatus", "from_status"), _as_text, None),
    ),
    EVENT_WORK_ORDER_LINE_ITEMS_CHANGED: (
        ("items", ("diagnosisItems", "items", "line_items", "lineItems"), _as_line_items, None),
    ),
    EVENT_WORK_ORDER_APPROVAL_LINK_CREATED: (
        ("link", ("link", "url"), _as_text, None),
    ),
    EVENT_STOCK_REPLENISHMENT_REQUESTED: (
        ("part_code", ("partCode", "part_code", "sku"), _as_text, None),
        ("qty", ("qty", "quantity"), _as_positive_number, None),
    ),
}


def _coerce_fields(schema, raw: Any) -> dict[str, Any]:
    source = raw if isinstance(raw, dict) else {}
    result: dict[str, Any] = {}
    for name, aliases, coerce, default in schema:
        value = None
        for alias in aliases:
            if alias not in source:
                continue
            value = coerce(source.get(alias))
            if value is not None:
                break
        result[name] = default if value is None else value
    return result


def coerce_payload(event_type: str | None, payload: Any) -> dict[str, Any]:
    """Project a raw payload onto the schema for its event type.

    Unknown keys are dropped and malformed values fall back to the field
    default, so the result is always safe to map.
    """
    schema = PAYLOAD_SCHEMAS.get(str(event_type or "").strip().upper())
    if schema is None:
        return {}
    return _coerce_fields(schema, payload)
