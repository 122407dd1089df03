from __future__ import annotations

from typing import Dict, List


MESSAGES: Dict[str, Dict[str, str]] = {
    "error": {
        "unexpected_error": "The operation could not be completed.",
        "action_invalid": "This action is not valid for the current state.",
        "validation_error": "The request payload is invalid.",
        "event_type_invalid": "Unsupported outbox event type.",
        "entity_id_required": "An entity id is required.",
        "outbox_unavailable": "The ERP outbox is temporarily unavailable.",
        "erp_temporarily_unavailable": "The ERP is temporarily unavailable. Delivery will be retried.",
        "erp_document_rejected": "The ERP rejected the document. Review the data and retry.",
        "erp_mode_invalid": "Unsupported ERP connector mode.",
    },
    "success": {
        "event_enqueued": "Event queued for ERP delivery.",
        "retry_scheduled": "Retry scheduled for immediate delivery.",
        "retry_not_needed": "Nothing to retry for this entity.",
        "erp_accepted": "Document delivered to the ERP.",
    },
}


SYNC_STATE_ITEMS: List[Dict[str, str]] = [
    {"key": "IDLE", "label": "Idle", "description": "No ERP events recorded for this entity."},
    {"key": "PENDING", "label": "Pending", "description": "Waiting for the next delivery attempt."},
    {"key": "SENT", "label": "Synced", "description": "Latest change delivered to the ERP."},
    {"key": "FAILED", "label": "Failed", "description": "Last delivery failed, retry scheduled."},
    {"key": "OFFLINE", "label": "Offline", "description": "ERP unreachable after repeated attempts."},
]


def get_message(category: str, key: str, default: str | None = None) -> str:
    bucket = MESSAGES.get(category) or {}
    value = bucket.get(key)
    if value:
        return value
    return default if default is not None else key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def sync_state_label(state: str | None) -> str:
    normalized = str(state or "").strip().upper()
    for item in SYNC_STATE_ITEMS:
        if item["key"] == normalized:
            return item["label"]
    return normalized or "Idle"
