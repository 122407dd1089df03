from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

from erp_bridge.contexts.erp.domain.contracts import (
    EVENT_WORK_ORDER_APPROVAL_LINK_CREATED,
    EVENT_WORK_ORDER_LINE_ITEMS_CHANGED,
    EVENT_WORK_ORDER_STATUS_CHANGED,
    OP_APPEND_LINE_ITEMS,
    OP_CREATE_OR_UPDATE_WORKORDER,
    OP_REGISTER_APPROVAL,
    OP_SET_STATUS,
    LineItem,
    OutboundDocument,
    OutboxEvent,
    _iso_utc,
    _safe_str,
    _utcnow,
)
from erp_bridge.contexts.erp.domain.schemas import coerce_payload
from erp_bridge.contexts.erp.infrastructure.mappers.pii_scrub import safe_reference_code


APPROVAL_TOKEN_PLACEHOLDER = "TOKEN_PENDING"

_OPERATION_BY_EVENT_TYPE = {
    EVENT_WORK_ORDER_STATUS_CHANGED: OP_SET_STATUS,
    EVENT_WORK_ORDER_LINE_ITEMS_CHANGED: OP_APPEND_LINE_ITEMS,
    EVENT_WORK_ORDER_APPROVAL_LINK_CREATED: OP_REGISTER_APPROVAL,
}

_logger = logging.getLogger("erp_bridge")


def operation_for(event_type: str | None) -> str:
    return _OPERATION_BY_EVENT_TYPE.get(str(event_type or "").strip().upper(), OP_CREATE_OR_UPDATE_WORKORDER)


def _approval_link_id(link: str | None) -> str:
    raw = str(link or "").strip()
    if not raw:
        return APPROVAL_TOKEN_PLACEHOLDER
    token = raw.split("?", 1)[0].split("#", 1)[0].rstrip("/").rsplit("/", 1)[-1].strip()
    return token or APPROVAL_TOKEN_PLACEHOLDER


def _line_items_data(items: list[dict[str, Any]]) -> dict[str, Any]:
    line_items = [
        LineItem(
            kind=item["kind"],
            name=item["name"],
            qty=item["qty"],
            code=safe_reference_code(item["code"]),
        ).to_dict()
        for item in items
    ]
    estimate_index = sum(item["cost"] for item in items)
    return {"lineItems": line_items, "totals": {"estimateIndex": estimate_index}}


def _document_data(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    if event_type == EVENT_WORK_ORDER_STATUS_CHANGED:
        status = payload.get("to_status")
        return {"status": status} if status is not None else {}
    if event_type == EVENT_WORK_ORDER_LINE_ITEMS_CHANGED:
        items = payload.get("items")
        return _line_items_data(items) if items is not None else {}
    if event_type == EVENT_WORK_ORDER_APPROVAL_LINK_CREATED:
        return {"hasApproval": False, "approvalLinkId": _approval_link_id(payload.get("link"))}
    return {}


def _correlation_hash(snapshot: Mapping[str, Any] | None) -> str | None:
    if not isinstance(snapshot, Mapping):
        return None
    return _safe_str(snapshot.get("operational_hash")) or _safe_str(snapshot.get("hash"))


def map_event_to_document(
    event: OutboxEvent,
    entity_snapshot: Mapping[str, Any] | None = None,
    *,
    now: datetime | None = None,
) -> OutboundDocument:
    """Build the sanitized ERP document for an outbox event.

    Malformed payload fields are dropped rather than raised, so every event
    maps to at least a minimal document.
    """
    event_type = str(event.type or "").strip().upper()
    operation = operation_for(event_type)
    try:
        data = _document_data(event_type, coerce_payload(event_type, event.payload))
    except Exception:  # noqa: BLE001
        _logger.warning(
            "erp_document_mapping_degraded",
            exc_info=True,
            extra={"event_id": event.id, "event_type": event_type},
        )
        data = {}

    return OutboundDocument(
        operation=operation,
        tenant_id=event.tenant_id,
        external_ref=event.entity_id,
        timestamp=_iso_utc(now or _utcnow()),
        data=data,
        correlation_hash=_correlation_hash(entity_snapshot),
    )
