from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from erp_bridge.contexts.erp.application.bridge import ErpBridge
from erp_bridge.errors import ValidationError, classify_erp_failure
from erp_bridge.tenant import scoped_tenant_id
from erp_bridge.ui_strings import SYNC_STATE_ITEMS, error_message, success_message, sync_state_label


erp_bp = Blueprint("erp", __name__)


def _bridge() -> ErpBridge:
    return current_app.extensions["erp_bridge"]


def _tenant_id() -> str:
    return scoped_tenant_id()


def _parse_int(value: str | None, default: int, min_value: int, max_value: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return max(min_value, min(parsed, max_value))


def _sync_state_payload(entity_id: str) -> dict:
    state = _bridge().sync_state(_tenant_id(), entity_id)
    payload = {"entity_id": entity_id} | state.to_dict()
    payload["label"] = sync_state_label(state.state)
    if state.last_error and state.state in {"FAILED", "OFFLINE"}:
        error_code, message_key, _status = classify_erp_failure(state.last_error)
        payload["error_code"] = error_code
        payload["error_message"] = error_message(message_key)
    return payload


@erp_bp.route("/api/erp/outbox/events", methods=["POST"])
def enqueue_outbox_event():
    payload = request.get_json(silent=True) or {}
    entity_id = str(payload.get("entity_id") or payload.get("entityId") or "").strip()
    if not entity_id:
        raise ValidationError(code="entity_id_required", message_key="entity_id_required")
    event_payload = payload.get("payload")
    if event_payload is not None and not isinstance(event_payload, dict):
        raise ValidationError(details="payload must be an object")

    event = _bridge().enqueue(_tenant_id(), entity_id, str(payload.get("type") or ""), event_payload)
    return jsonify({"event": event.to_dict(), "message": success_message("event_enqueued")}), 201


@erp_bp.route("/api/erp/outbox/due", methods=["GET"])
def list_due_outbox_events():
    events = _bridge().list_due(tenant_id=_tenant_id())
    return jsonify({"items": [event.to_dict() for event in events], "count": len(events)}), 200


@erp_bp.route("/api/erp/outbox/entities/<entity_id>/sync-state", methods=["GET"])
def entity_sync_state(entity_id: str):
    return jsonify(_sync_state_payload(entity_id)), 200


@erp_bp.route("/api/erp/outbox/entities/<entity_id>/events", methods=["GET"])
def entity_outbox_events(entity_id: str):
    events = _bridge().store.events_for_entity(_tenant_id(), entity_id)
    return jsonify({"entity_id": entity_id, "items": [event.to_dict() for event in events]}), 200


@erp_bp.route("/api/erp/outbox/entities/<entity_id>/retry", methods=["POST"])
def retry_entity_now(entity_id: str):
    changed = _bridge().retry_now(_tenant_id(), entity_id)
    message_key = "retry_scheduled" if changed else "retry_not_needed"
    payload = _sync_state_payload(entity_id)
    payload["retried"] = changed
    payload["message"] = success_message(message_key)
    return jsonify(payload), 200


@erp_bp.route("/api/erp/outbox/summary", methods=["GET"])
def outbox_summary():
    bridge = _bridge()
    tenant_id = _tenant_id()
    return (
        jsonify(
            {
                "tenant_id": tenant_id,
                "counts": bridge.store.summary(tenant_id),
                "attention": bridge.store.entities_needing_attention(tenant_id),
                "states": SYNC_STATE_ITEMS,
            }
        ),
        200,
    )


@erp_bp.route("/api/erp/audit-log", methods=["GET"])
def delivery_audit_log():
    bridge = _bridge()
    limit = _parse_int(request.args.get("limit"), bridge.audit_log.limit, 1, bridge.audit_log.limit)
    entries = bridge.get_audit_log(_tenant_id(), limit)
    return jsonify({"items": entries, "count": len(entries)}), 200
