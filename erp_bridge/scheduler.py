from __future__ import annotations

import logging
import os
import threading

from flask import Flask

from erp_bridge.contexts.erp.application.sync_worker import ErpSyncWorker


class ErpSyncScheduler:
    """Runs worker ticks on a background thread: once at start, then every interval."""

    def __init__(self, worker: ErpSyncWorker, *, interval_seconds: float = 10, tenant_id: str | None = None) -> None:
        self.worker = worker
        self.interval_seconds = max(0.01, float(interval_seconds))
        self.tenant_id = tenant_id
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._logger = logging.getLogger("erp_bridge")

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="erp-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if timeout is not None and self._thread is not None:
            self._thread.join(timeout)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval_seconds)

    def run_once(self) -> dict | None:
        try:
            return self.worker.run_tick(tenant_id=self.tenant_id)
        except Exception:  # noqa: BLE001
            self._logger.exception("erp_sync_tick_failed")
            return None


def start_erp_sync_scheduler(app: Flask) -> ErpSyncScheduler | None:
    if not _should_start_scheduler(app):
        return None
    bridge = app.extensions["erp_bridge"]
    scheduler = ErpSyncScheduler(
        bridge.worker,
        interval_seconds=_int_config(app, "SYNC_SCHEDULER_INTERVAL_SECONDS", 10, 1, 3600),
    )
    scheduler.start()
    app.extensions["erp_sync_scheduler"] = scheduler
    app.logger.info("erp_sync_scheduler_started", extra={"interval_seconds": scheduler.interval_seconds})
    return scheduler


def _should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("SYNC_SCHEDULER_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))
