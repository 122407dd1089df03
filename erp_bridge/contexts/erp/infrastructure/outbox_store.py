from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta
from threading import RLock
from typing import Any, Callable, Dict, List

from erp_bridge.contexts.erp.application.sync_state import (
    DEFAULT_OFFLINE_ATTEMPTS,
    newest_first,
    project_sync_state,
)
from erp_bridge.contexts.erp.domain.contracts import (
    OUTBOX_EVENT_TYPES,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    SYNC_FAILED,
    SYNC_OFFLINE,
    SYNC_PENDING,
    OutboxEvent,
    SyncState,
    _iso_utc,
    _utcnow,
)
from erp_bridge.core import EventBus, OutboxChanged
from erp_bridge.db import DATABASE_ERRORS, Database, connect_database, init_db, row_to_dict
from erp_bridge.errors import OutboxStoreError, ValidationError
from erp_bridge.observability import observe_erp_outbox_enqueued


CHANGE_ENQUEUED = "enqueued"
CHANGE_SENT = "sent"
CHANGE_FAILED = "failed"
CHANGE_RETRY = "retry"

ATTENTION_STATES = (SYNC_PENDING, SYNC_FAILED, SYNC_OFFLINE)


def _json_dumps(value: Dict[str, object]) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=True, default=str)


def _new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class OutboxStore:
    """Durable outbox of ERP delivery events.

    All access goes through one connection guarded by ``self.lock``; the
    delivery audit log shares both so a tick and a request never interleave
    statements on the same handle.
    """

    def __init__(
        self,
        db: Database,
        *,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
        offline_attempts: int = DEFAULT_OFFLINE_ATTEMPTS,
    ) -> None:
        self.db = db
        self.lock = RLock()
        self.event_bus = event_bus or EventBus()
        self.clock = clock or _utcnow
        self.offline_attempts = max(1, int(offline_attempts))
        self._logger = logging.getLogger("erp_bridge")
        self._closed = False

    @classmethod
    def open(cls, db_path: str, *, auto_init: bool = True, **kwargs) -> "OutboxStore":
        db = connect_database(db_path)
        if auto_init:
            init_db(db)
        return cls(db, **kwargs)

    def close(self) -> None:
        with self.lock:
            if self._closed:
                return
            self._closed = True
            self.db.close()

    def _publish(self, tenant_id: str, entity_id: str, event_id: str | None, change: str) -> None:
        self.event_bus.publish(
            OutboxChanged(tenant_id=tenant_id, entity_id=entity_id, outbox_event_id=event_id, change=change)
        )

    def _rollback_quietly(self) -> None:
        try:
            self.db.rollback()
        except DATABASE_ERRORS:
            self._logger.warning("erp_outbox_rollback_failed")

    def enqueue(self, tenant_id: str, entity_id: str, event_type: str, payload: Dict[str, Any] | None = None) -> OutboxEvent:
        normalized_type = str(event_type or "").strip().upper()
        if normalized_type not in OUTBOX_EVENT_TYPES:
            raise ValidationError(
                code="event_type_invalid",
                message_key="event_type_invalid",
                details=f"unsupported event type: {event_type}",
            )
        tenant = str(tenant_id or "").strip()
        entity = str(entity_id or "").strip()
        if not tenant or not entity:
            raise ValidationError(code="entity_id_required", message_key="entity_id_required")

        now = self.clock()
        event = OutboxEvent(
            id=_new_event_id(),
            tenant_id=tenant,
            entity_id=entity,
            type=normalized_type,
            payload=dict(payload or {}) if isinstance(payload, dict) else {},
            status=STATUS_PENDING,
            attempts=0,
            next_retry_at=now,
            created_at=now,
        )
        with self.lock:
            try:
                self.db.execute(
                    """
                    INSERT INTO erp_outbox_events (
                        id, tenant_id, entity_id, event_type, payload_json,
                        status, attempts, next_retry_at, created_at, dead_letter
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, 0)
                    """,
                    (
                        event.id,
                        event.tenant_id,
                        event.entity_id,
                        event.type,
                        _json_dumps(event.payload),
                        event.status,
                        _iso_utc(event.next_retry_at),
                        _iso_utc(event.created_at),
                    ),
                )
                self.db.commit()
            except DATABASE_ERRORS as exc:
                self._rollback_quietly()
                self._logger.exception(
                    "erp_outbox_enqueue_failed",
                    extra={"tenant_id": tenant, "entity_id": entity, "event_type": normalized_type},
                )
                raise OutboxStoreError(details=str(exc)) from exc

        observe_erp_outbox_enqueued(normalized_type)
        self._logger.info(
            "erp_outbox_enqueued",
            extra={"tenant_id": tenant, "entity_id": entity, "event_type": normalized_type, "event_id": event.id},
        )
        self._publish(tenant, entity, event.id, CHANGE_ENQUEUED)
        return event

    def _select(self, sql: str, params: tuple = (), *, log_event: str = "erp_outbox_read_failed") -> List[OutboxEvent]:
        with self.lock:
            try:
                rows = self.db.execute(sql, params).fetchall()
            except DATABASE_ERRORS:
                self._logger.exception(log_event)
                return []
        return [OutboxEvent.from_row(row_to_dict(row)) for row in rows]

    def list_due(self, now: datetime | None = None, tenant_id: str | None = None) -> List[OutboxEvent]:
        cutoff = _iso_utc(now or self.clock())
        if tenant_id:
            return self._select(
                """
                SELECT * FROM erp_outbox_events
                WHERE status <> 'SENT' AND dead_letter = 0 AND next_retry_at <= ? AND tenant_id = ?
                ORDER BY seq ASC
                """,
                (cutoff, str(tenant_id).strip()),
            )
        return self._select(
            """
            SELECT * FROM erp_outbox_events
            WHERE status <> 'SENT' AND dead_letter = 0 AND next_retry_at <= ?
            ORDER BY seq ASC
            """,
            (cutoff,),
        )

    def get(self, event_id: str) -> OutboxEvent | None:
        rows = self._select("SELECT * FROM erp_outbox_events WHERE id = ?", (str(event_id or ""),))
        return rows[0] if rows else None

    def events_for_entity(self, tenant_id: str, entity_id: str) -> List[OutboxEvent]:
        return self._select(
            """
            SELECT * FROM erp_outbox_events
            WHERE tenant_id = ? AND entity_id = ?
            ORDER BY created_at DESC, seq DESC
            """,
            (str(tenant_id or "").strip(), str(entity_id or "").strip()),
        )

    def mark_sent(self, event_id: str) -> bool:
        with self.lock:
            event = self.get(event_id)
            if event is None or event.status == STATUS_SENT:
                return False
            now = self.clock()
            try:
                cursor = self.db.execute(
                    """
                    UPDATE erp_outbox_events
                    SET status = 'SENT', last_attempt_at = ?, last_error = NULL
                    WHERE id = ? AND status <> 'SENT'
                    """,
                    (_iso_utc(now), event.id),
                )
                self.db.commit()
            except DATABASE_ERRORS:
                self._rollback_quietly()
                self._logger.exception("erp_outbox_mark_sent_failed", extra={"event_id": event.id})
                return False
            if not cursor.rowcount:
                return False

        self._publish(event.tenant_id, event.entity_id, event.id, CHANGE_SENT)
        return True

    def mark_failed(self, event_id: str, error: str, delay_seconds: float, *, permanent: bool = False) -> bool:
        with self.lock:
            event = self.get(event_id)
            if event is None or event.status == STATUS_SENT:
                return False
            now = self.clock()
            next_retry_at = max(event.next_retry_at, now + timedelta(seconds=max(0.0, float(delay_seconds))))
            try:
                cursor = self.db.execute(
                    """
                    UPDATE erp_outbox_events
                    SET status = ?,
                        attempts = attempts + 1,
                        last_error = ?,
                        last_attempt_at = ?,
                        next_retry_at = ?,
                        dead_letter = ?
                    WHERE id = ? AND status <> 'SENT'
                    """,
                    (
                        STATUS_FAILED,
                        str(error or "Unknown ERP error")[:1000],
                        _iso_utc(now),
                        _iso_utc(next_retry_at),
                        1 if (permanent or event.dead_letter) else 0,
                        event.id,
                    ),
                )
                self.db.commit()
            except DATABASE_ERRORS:
                self._rollback_quietly()
                self._logger.exception("erp_outbox_mark_failed_failed", extra={"event_id": event.id})
                return False
            if not cursor.rowcount:
                return False

        self._publish(event.tenant_id, event.entity_id, event.id, CHANGE_FAILED)
        return True

    def retry_now(self, tenant_id: str, entity_id: str) -> int:
        tenant = str(tenant_id or "").strip()
        entity = str(entity_id or "").strip()
        with self.lock:
            try:
                cursor = self.db.execute(
                    """
                    UPDATE erp_outbox_events
                    SET status = 'PENDING', next_retry_at = ?, dead_letter = 0
                    WHERE tenant_id = ? AND entity_id = ? AND status <> 'SENT'
                    """,
                    (_iso_utc(self.clock()), tenant, entity),
                )
                self.db.commit()
            except DATABASE_ERRORS:
                self._rollback_quietly()
                self._logger.exception("erp_outbox_retry_failed", extra={"tenant_id": tenant, "entity_id": entity})
                return 0
            changed = max(0, int(cursor.rowcount or 0))

        if changed:
            self._logger.info(
                "erp_outbox_manual_retry",
                extra={"tenant_id": tenant, "entity_id": entity, "events": changed},
            )
            self._publish(tenant, entity, None, CHANGE_RETRY)
        return changed

    def sync_state(self, tenant_id: str, entity_id: str) -> SyncState:
        return project_sync_state(self.events_for_entity(tenant_id, entity_id), self.offline_attempts)

    def summary(self, tenant_id: str | None = None) -> Dict[str, Any]:
        where = "WHERE tenant_id = ?" if tenant_id else ""
        params: tuple = (str(tenant_id).strip(),) if tenant_id else ()
        with self.lock:
            try:
                row = self.db.execute(
                    f"""
                    SELECT
                        COUNT(*) AS total,
                        SUM(CASE WHEN status = 'PENDING' THEN 1 ELSE 0 END) AS pending,
                        SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) AS failed,
                        SUM(CASE WHEN status = 'SENT' THEN 1 ELSE 0 END) AS sent,
                        SUM(CASE WHEN dead_letter = 1 THEN 1 ELSE 0 END) AS dead_letter,
                        MIN(CASE WHEN status <> 'SENT' AND dead_letter = 0 THEN next_retry_at END) AS oldest_due_at,
                        MAX(last_attempt_at) AS last_attempt_at
                    FROM erp_outbox_events
                    {where}
                    """,
                    params,
                ).fetchone()
            except DATABASE_ERRORS:
                self._logger.exception("erp_outbox_summary_failed", extra={"tenant_id": tenant_id})
                row = None
        data = row_to_dict(row)
        return {
            "total": int(data.get("total") or 0),
            "pending": int(data.get("pending") or 0),
            "failed": int(data.get("failed") or 0),
            "sent": int(data.get("sent") or 0),
            "dead_letter": int(data.get("dead_letter") or 0),
            "oldest_due_at": data.get("oldest_due_at"),
            "last_attempt_at": data.get("last_attempt_at"),
        }

    def entities_needing_attention(self, tenant_id: str) -> List[Dict[str, Any]]:
        events = self._select(
            """
            SELECT * FROM erp_outbox_events
            WHERE tenant_id = ? AND entity_id IN (
                SELECT DISTINCT entity_id FROM erp_outbox_events
                WHERE tenant_id = ? AND status <> 'SENT'
            )
            """,
            (str(tenant_id or "").strip(), str(tenant_id or "").strip()),
        )
        by_entity: Dict[str, List[OutboxEvent]] = {}
        for event in events:
            by_entity.setdefault(event.entity_id, []).append(event)

        entries: List[tuple[datetime, Dict[str, Any]]] = []
        for entity_id, entity_events in by_entity.items():
            state = project_sync_state(entity_events, self.offline_attempts)
            if state.state not in ATTENTION_STATES:
                continue
            latest = newest_first(entity_events)[0]
            entries.append((latest.created_at, {"entity_id": entity_id} | state.to_dict()))
        entries.sort(key=lambda item: item[0], reverse=True)
        return [entry for _, entry in entries]
