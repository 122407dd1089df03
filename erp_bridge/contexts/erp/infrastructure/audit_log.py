from __future__ import annotations

import json
import logging
from datetime import datetime
from threading import RLock
from typing import Any, Callable, Dict, List

from erp_bridge.contexts.erp.domain.contracts import OutboundDocument, _iso_utc, _utcnow
from erp_bridge.core import AuditLogAppended, EventBus
from erp_bridge.db import DATABASE_ERRORS, Database, row_to_dict


DEFAULT_AUDIT_LOG_LIMIT = 50


class DeliveryAuditLog:
    """Append-only record of documents the ERP accepted, newest first.

    Only the most recent ``limit`` entries are kept per tenant.
    """

    def __init__(
        self,
        db: Database,
        *,
        lock: RLock | None = None,
        event_bus: EventBus | None = None,
        limit: int = DEFAULT_AUDIT_LOG_LIMIT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db
        self.lock = lock or RLock()
        self.event_bus = event_bus or EventBus()
        self.limit = max(1, int(limit))
        self.clock = clock or _utcnow
        self._logger = logging.getLogger("erp_bridge")

    def append(self, document: OutboundDocument) -> None:
        payload = document.to_dict()
        tenant_id = document.tenant_id
        with self.lock:
            try:
                self.db.execute(
                    """
                    INSERT INTO erp_delivery_audit_log (
                        tenant_id, operation, external_ref, document_json, delivered_at
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        tenant_id,
                        document.operation,
                        document.external_ref,
                        json.dumps(payload, separators=(",", ":"), ensure_ascii=True),
                        _iso_utc(self.clock()),
                    ),
                )
                self.db.execute(
                    """
                    DELETE FROM erp_delivery_audit_log
                    WHERE tenant_id = ? AND seq NOT IN (
                        SELECT seq FROM (
                            SELECT seq FROM erp_delivery_audit_log
                            WHERE tenant_id = ?
                            ORDER BY seq DESC
                            LIMIT ?
                        ) AS recent
                    )
                    """,
                    (tenant_id, tenant_id, self.limit),
                )
                self.db.commit()
            except DATABASE_ERRORS:
                try:
                    self.db.rollback()
                except DATABASE_ERRORS:
                    self._logger.warning("erp_audit_log_rollback_failed")
                self._logger.exception(
                    "erp_audit_log_append_failed",
                    extra={"tenant_id": tenant_id, "external_ref": document.external_ref},
                )
                return

        self.event_bus.publish(
            AuditLogAppended(tenant_id=tenant_id, external_ref=document.external_ref, operation=document.operation)
        )

    def entries(self, tenant_id: str, limit: int | None = None) -> List[Dict[str, Any]]:
        size = self.limit if limit is None else max(1, min(int(limit), self.limit))
        with self.lock:
            try:
                rows = self.db.execute(
                    """
                    SELECT document_json, delivered_at
                    FROM erp_delivery_audit_log
                    WHERE tenant_id = ?
                    ORDER BY seq DESC
                    LIMIT ?
                    """,
                    (str(tenant_id or "").strip(), size),
                ).fetchall()
            except DATABASE_ERRORS:
                self._logger.exception("erp_audit_log_read_failed", extra={"tenant_id": tenant_id})
                return []

        entries: List[Dict[str, Any]] = []
        for row in rows:
            data = row_to_dict(row)
            try:
                document = json.loads(str(data.get("document_json") or "{}"))
            except ValueError:
                document = {}
            entries.append({"document": document, "delivered_at": data.get("delivered_at")})
        return entries
