from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


STATUS_PENDING = "PENDING"
STATUS_SENT = "SENT"
STATUS_FAILED = "FAILED"
OUTBOX_STATUSES = (STATUS_PENDING, STATUS_SENT, STATUS_FAILED)

EVENT_WORK_ORDER_STATUS_CHANGED = "WORK_ORDER_STATUS_CHANGED"
EVENT_WORK_ORDER_LINE_ITEMS_CHANGED = "WORK_ORDER_LINE_ITEMS_CHANGED"
EVENT_WORK_ORDER_APPROVAL_LINK_CREATED = "WORK_ORDER_APPROVAL_LINK_CREATED"
EVENT_STOCK_REPLENISHMENT_REQUESTED = "STOCK_REPLENISHMENT_REQUESTED"
OUTBOX_EVENT_TYPES = (
    EVENT_WORK_ORDER_STATUS_CHANGED,
    EVENT_WORK_ORDER_LINE_ITEMS_CHANGED,
    EVENT_WORK_ORDER_APPROVAL_LINK_CREATED,
    EVENT_STOCK_REPLENISHMENT_REQUESTED,
)

OP_CREATE_OR_UPDATE_WORKORDER = "CREATE_OR_UPDATE_WORKORDER"
OP_APPEND_LINE_ITEMS = "APPEND_LINE_ITEMS"
OP_SET_STATUS = "SET_STATUS"
OP_REGISTER_APPROVAL = "REGISTER_APPROVAL"
DOCUMENT_OPERATIONS = (
    OP_CREATE_OR_UPDATE_WORKORDER,
    OP_APPEND_LINE_ITEMS,
    OP_SET_STATUS,
    OP_REGISTER_APPROVAL,
)

SYNC_IDLE = "IDLE"
SYNC_PENDING = "PENDING"
SYNC_SENT = "SENT"
SYNC_FAILED = "FAILED"
SYNC_OFFLINE = "OFFLINE"
SYNC_STATES = (SYNC_IDLE, SYNC_PENDING, SYNC_SENT, SYNC_FAILED, SYNC_OFFLINE)

DOCUMENT_SOURCE = "ERP_BRIDGE"
SCHEMA_VERSION = "1.0"
COMPLIANCE_TAG = "NO_PII"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(value: datetime) -> str:
    # Fixed width so stored timestamps compare correctly as strings.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_iso_utc(value: object | None) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    raw = str(value or "").strip()
    if not raw:
        return None
    normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _safe_str(value: object | None) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    return raw or None


def _safe_float(value: object | None, default: float = 0.0) -> float:
    if value is None or isinstance(value, bool):
        return float(default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _load_payload(raw: object | None) -> dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    if not raw:
        return {}
    try:
        decoded = json.loads(str(raw))
    except (TypeError, ValueError):
        return {}
    return decoded if isinstance(decoded, dict) else {}


@dataclass
class OutboxEvent:
    id: str
    tenant_id: str
    entity_id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: str = STATUS_PENDING
    attempts: int = 0
    next_retry_at: datetime = field(default_factory=_utcnow)
    created_at: datetime = field(default_factory=_utcnow)
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    dead_letter: bool = False
    seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_id": self.entity_id,
            "type": self.type,
            "payload": dict(self.payload or {}),
            "status": self.status,
            "attempts": int(self.attempts),
            "next_retry_at": _iso_utc(self.next_retry_at),
            "created_at": _iso_utc(self.created_at),
            "last_error": self.last_error,
            "last_attempt_at": _iso_utc(self.last_attempt_at) if self.last_attempt_at else None,
            "dead_letter": bool(self.dead_letter),
        }

    @staticmethod
    def from_row(row: dict[str, Any]) -> "OutboxEvent":
        data = dict(row or {})
        return OutboxEvent(
            id=str(data.get("id") or ""),
            tenant_id=str(data.get("tenant_id") or ""),
            entity_id=str(data.get("entity_id") or ""),
            type=str(data.get("event_type") or data.get("type") or ""),
            payload=_load_payload(data.get("payload_json", data.get("payload"))),
            status=str(data.get("status") or STATUS_PENDING),
            attempts=int(data.get("attempts") or 0),
            next_retry_at=_parse_iso_utc(data.get("next_retry_at")) or _utcnow(),
            created_at=_parse_iso_utc(data.get("created_at")) or _utcnow(),
            last_error=_safe_str(data.get("last_error")),
            last_attempt_at=_parse_iso_utc(data.get("last_attempt_at")),
            dead_letter=bool(int(data.get("dead_letter") or 0)),
            seq=int(data.get("seq") or 0),
        )


@dataclass
class LineItem:
    kind: str
    name: str
    qty: float = 1
    code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        item: dict[str, Any] = {"kind": self.kind, "name": self.name, "qty": self.qty}
        if self.code is not None:
            item["code"] = self.code
        return item


@dataclass
class OutboundDocument:
    operation: str
    tenant_id: str
    external_ref: str
    timestamp: str
    data: dict[str, Any] = field(default_factory=dict)
    correlation_hash: str | None = None
    source: str = DOCUMENT_SOURCE
    schema_version: str = SCHEMA_VERSION
    compliance: str = COMPLIANCE_TAG

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "tenantId": self.tenant_id,
            "externalRef": self.external_ref,
            "timestamp": self.timestamp,
            "data": json.loads(json.dumps(self.data or {}, default=str)),
            "meta": {
                "source": self.source,
                "schemaVersion": self.schema_version,
                "compliance": self.compliance,
                "correlation": {"hash": self.correlation_hash},
            },
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "OutboundDocument":
        data = dict(payload or {})
        meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
        correlation = meta.get("correlation") if isinstance(meta.get("correlation"), dict) else {}
        return OutboundDocument(
            operation=str(data.get("operation") or OP_CREATE_OR_UPDATE_WORKORDER),
            tenant_id=str(data.get("tenantId") or ""),
            external_ref=str(data.get("externalRef") or ""),
            timestamp=str(data.get("timestamp") or _iso_utc(_utcnow())),
            data=dict(data.get("data") or {}) if isinstance(data.get("data"), dict) else {},
            correlation_hash=_safe_str(correlation.get("hash")),
            source=str(meta.get("source") or DOCUMENT_SOURCE),
            schema_version=str(meta.get("schemaVersion") or SCHEMA_VERSION),
            compliance=str(meta.get("compliance") or COMPLIANCE_TAG),
        )


@dataclass
class SyncState:
    state: str = SYNC_IDLE
    attempts: int = 0
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    dead_letter: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "attempts": int(self.attempts),
            "last_error": self.last_error,
            "last_attempt_at": _iso_utc(self.last_attempt_at) if self.last_attempt_at else None,
            "dead_letter": bool(self.dead_letter),
        }
