from __future__ import annotations

from datetime import datetime, timedelta, timezone

from erp_bridge.contexts.erp.domain.connector import ErpConnector, PermanentDeliveryError, TransientDeliveryError
from erp_bridge.contexts.erp.infrastructure.audit_log import DeliveryAuditLog
from erp_bridge.contexts.erp.infrastructure.outbox_store import OutboxStore


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingConnector(ErpConnector):
    """Connector double: succeeds, or raises the configured failure."""

    def __init__(self, audit_log=None, *, fail_with: Exception | None = None) -> None:
        super().__init__(audit_log)
        self.fail_with = fail_with
        self.sent = []

    def _send(self, document) -> None:
        self.sent.append(document)
        if self.fail_with is not None:
            raise self.fail_with


def always_transient() -> TransientDeliveryError:
    return TransientDeliveryError("ERP_TEMP_ERROR: endpoint busy", code="erp_temporarily_unavailable")


def always_permanent() -> PermanentDeliveryError:
    return PermanentDeliveryError("ERP HTTP 422: invalid document", code="erp_document_rejected")


def open_store_with_audit(db_path: str, clock: FakeClock, *, audit_limit: int = 50) -> tuple[OutboxStore, DeliveryAuditLog]:
    store = OutboxStore.open(db_path, clock=clock)
    audit_log = DeliveryAuditLog(
        store.db,
        lock=store.lock,
        event_bus=store.event_bus,
        limit=audit_limit,
        clock=clock,
    )
    return store, audit_log
