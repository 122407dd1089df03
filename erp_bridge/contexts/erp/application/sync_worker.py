from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping, Sequence

from erp_bridge.contexts.erp.domain.connector import ErpConnector, PermanentDeliveryError
from erp_bridge.contexts.erp.domain.contracts import OutboxEvent, _utcnow
from erp_bridge.contexts.erp.infrastructure.mappers import map_event_to_document
from erp_bridge.contexts.erp.infrastructure.outbox_store import OutboxStore
from erp_bridge.observability import (
    bind_request_id,
    observe_erp_outbox_dead_letter,
    observe_erp_outbox_delivered,
    observe_erp_outbox_processing,
    observe_erp_outbox_retry,
    observe_erp_outbox_retry_backoff,
    observe_erp_sync_tick,
)


DEFAULT_BACKOFF_SCHEDULE: tuple[int, ...] = (10, 30, 60, 120)

SnapshotFn = Callable[[str, str], Mapping[str, Any] | None]


def parse_backoff_schedule(raw: str | Iterable[object] | None) -> tuple[int, ...]:
    if raw is None:
        return DEFAULT_BACKOFF_SCHEDULE
    parts = str(raw).split(",") if isinstance(raw, str) else list(raw)
    schedule: list[int] = []
    for part in parts:
        try:
            value = int(str(part).strip())
        except ValueError:
            continue
        if value > 0:
            schedule.append(value)
    return tuple(schedule) or DEFAULT_BACKOFF_SCHEDULE


def compute_backoff_seconds(attempt: int, schedule: Sequence[int] = DEFAULT_BACKOFF_SCHEDULE) -> int:
    """Delay before the next try, given the 1-based number of the failed attempt.

    The last entry of the schedule is the cap.
    """
    steps = tuple(schedule) or DEFAULT_BACKOFF_SCHEDULE
    index = min(max(1, int(attempt)), len(steps)) - 1
    return int(steps[index])


def _empty_summary() -> Dict[str, Any]:
    return {"processed": 0, "succeeded": 0, "failed": 0, "dead_lettered": 0, "skipped": 0, "unconfirmed": 0, "busy": False}


def _failure_message(exc: BaseException) -> str:
    return str(exc).strip() or type(exc).__name__


class ErpSyncWorker:
    def __init__(
        self,
        store: OutboxStore,
        connector: ErpConnector,
        *,
        snapshot_fn: SnapshotFn | None = None,
        backoff_schedule: Sequence[int] = DEFAULT_BACKOFF_SCHEDULE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.connector = connector
        self.snapshot_fn = snapshot_fn
        self.backoff_schedule = tuple(backoff_schedule) or DEFAULT_BACKOFF_SCHEDULE
        self.clock = clock or store.clock or _utcnow
        self._tick_lock = threading.Lock()
        self._logger = logging.getLogger("erp_bridge")

    @property
    def running(self) -> bool:
        return self._tick_lock.locked()

    def run_tick(self, *, tenant_id: str | None = None) -> Dict[str, Any]:
        if not self._tick_lock.acquire(blocking=False):
            observe_erp_sync_tick("skipped")
            summary = _empty_summary()
            summary["busy"] = True
            return summary
        try:
            with bind_request_id(f"erp-sync-{uuid.uuid4().hex[:12]}"):
                summary = self._drain(tenant_id)
        finally:
            self._tick_lock.release()
        observe_erp_sync_tick("completed" if summary["processed"] else "idle")
        return summary

    def _drain(self, tenant_id: str | None) -> Dict[str, Any]:
        summary = _empty_summary()
        due = self.store.list_due(self.clock(), tenant_id=tenant_id)
        if not due:
            return summary

        due.sort(key=lambda event: (event.created_at, event.seq))
        attempted: set[tuple[str, str]] = set()
        for event in due:
            entity_key = (event.tenant_id, event.entity_id)
            if entity_key in attempted:
                summary["skipped"] += 1
                continue
            attempted.add(entity_key)
            self._attempt(event, summary)

        self._logger.info("erp_sync_tick_completed", extra={"summary": dict(summary)})
        return summary

    def _snapshot(self, event: OutboxEvent) -> Mapping[str, Any] | None:
        if self.snapshot_fn is None:
            return None
        try:
            return self.snapshot_fn(event.tenant_id, event.entity_id)
        except Exception:  # noqa: BLE001
            self._logger.warning(
                "erp_snapshot_lookup_failed",
                exc_info=True,
                extra={"tenant_id": event.tenant_id, "entity_id": event.entity_id},
            )
            return None

    def _attempt(self, event: OutboxEvent, summary: Dict[str, Any]) -> None:
        started = time.perf_counter()
        summary["processed"] += 1
        try:
            document = map_event_to_document(event, self._snapshot(event), now=self.clock())
            self.connector.deliver(document)
        except Exception as exc:  # noqa: BLE001
            self._record_failure(event, exc, summary)
        else:
            if not self.store.mark_sent(event.id):
                # Delivered but not recorded as SENT; the event stays due and is redelivered.
                summary["unconfirmed"] += 1
                self._logger.warning(
                    "erp_outbox_mark_sent_not_recorded",
                    extra={"tenant_id": event.tenant_id, "entity_id": event.entity_id, "event_id": event.id},
                )
                return
            summary["succeeded"] += 1
            observe_erp_outbox_delivered(1)
            self._logger.info(
                "erp_outbox_delivered",
                extra={
                    "tenant_id": event.tenant_id,
                    "entity_id": event.entity_id,
                    "event_id": event.id,
                    "operation": document.operation,
                },
            )
        finally:
            observe_erp_outbox_processing((time.perf_counter() - started) * 1000.0)

    def _record_failure(self, event: OutboxEvent, exc: Exception, summary: Dict[str, Any]) -> None:
        attempt = event.attempts + 1
        backoff = compute_backoff_seconds(attempt, self.backoff_schedule)
        permanent = isinstance(exc, PermanentDeliveryError)
        self.store.mark_failed(event.id, _failure_message(exc), backoff, permanent=permanent)
        summary["failed"] += 1
        log_extra = {
            "tenant_id": event.tenant_id,
            "entity_id": event.entity_id,
            "event_id": event.id,
            "attempt": attempt,
            "error_code": getattr(exc, "code", None),
        }
        if permanent:
            summary["dead_lettered"] += 1
            observe_erp_outbox_dead_letter(1)
            self._logger.error("erp_outbox_dead_letter", extra=log_extra)
            return
        observe_erp_outbox_retry(1)
        observe_erp_outbox_retry_backoff(backoff)
        self._logger.warning("erp_outbox_retry_scheduled", extra=log_extra | {"next_backoff_seconds": backoff})
