from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Type

from erp_bridge.contexts.erp.application.sync_state import DEFAULT_OFFLINE_ATTEMPTS
from erp_bridge.contexts.erp.application.sync_worker import ErpSyncWorker, SnapshotFn, parse_backoff_schedule
from erp_bridge.contexts.erp.domain.connector import ErpConnector
from erp_bridge.contexts.erp.domain.contracts import OutboxEvent, SyncState
from erp_bridge.contexts.erp.infrastructure.audit_log import DEFAULT_AUDIT_LOG_LIMIT, DeliveryAuditLog
from erp_bridge.contexts.erp.infrastructure.outbox_store import OutboxStore
from erp_bridge.contexts.erp.interfaces.workers.runtime import build_connector
from erp_bridge.core import DomainEvent, EventBus


class ErpBridge:
    """Wires the outbox, audit log, connector and worker around one database handle."""

    def __init__(
        self,
        store: OutboxStore,
        audit_log: DeliveryAuditLog,
        connector: ErpConnector,
        worker: ErpSyncWorker,
    ) -> None:
        self.store = store
        self.audit_log = audit_log
        self.connector = connector
        self.worker = worker

    @property
    def event_bus(self) -> EventBus:
        return self.store.event_bus

    @classmethod
    def open(
        cls,
        config: Mapping[str, Any],
        *,
        snapshot_fn: SnapshotFn | None = None,
        connector: ErpConnector | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> "ErpBridge":
        store = OutboxStore.open(
            str(config.get("DB_PATH")),
            auto_init=bool(config.get("DB_AUTO_INIT", True)),
            clock=clock,
            offline_attempts=int(config.get("ERP_SYNC_OFFLINE_ATTEMPTS") or DEFAULT_OFFLINE_ATTEMPTS),
        )
        audit_log = DeliveryAuditLog(
            store.db,
            lock=store.lock,
            event_bus=store.event_bus,
            limit=int(config.get("ERP_AUDIT_LOG_LIMIT") or DEFAULT_AUDIT_LOG_LIMIT),
            clock=store.clock,
        )
        try:
            if connector is None:
                connector = build_connector(config, audit_log)
            elif connector.audit_log is None:
                connector.audit_log = audit_log
        except Exception:
            store.close()
            raise
        worker = ErpSyncWorker(
            store,
            connector,
            snapshot_fn=snapshot_fn,
            backoff_schedule=parse_backoff_schedule(config.get("ERP_OUTBOX_BACKOFF_SCHEDULE_SECONDS")),
            clock=store.clock,
        )
        return cls(store, audit_log, connector, worker)

    def close(self) -> None:
        self.store.close()

    def enqueue(self, tenant_id: str, entity_id: str, event_type: str, payload: Dict[str, Any] | None = None) -> OutboxEvent:
        return self.store.enqueue(tenant_id, entity_id, event_type, payload)

    def list_due(self, now: datetime | None = None, tenant_id: str | None = None) -> List[OutboxEvent]:
        return self.store.list_due(now, tenant_id=tenant_id)

    def sync_state(self, tenant_id: str, entity_id: str) -> SyncState:
        return self.store.sync_state(tenant_id, entity_id)

    def retry_now(self, tenant_id: str, entity_id: str) -> int:
        return self.store.retry_now(tenant_id, entity_id)

    def get_audit_log(self, tenant_id: str, limit: int | None = None) -> List[Dict[str, Any]]:
        return self.audit_log.entries(tenant_id, limit)

    def subscribe(self, event_type: Type[DomainEvent], handler: Callable[[DomainEvent], None]) -> Callable[[], None]:
        return self.event_bus.subscribe(event_type, handler)

    def run_tick(self, *, tenant_id: str | None = None) -> Dict[str, Any]:
        return self.worker.run_tick(tenant_id=tenant_id)
