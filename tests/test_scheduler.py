import threading
import unittest

from erp_bridge import create_app
from erp_bridge.config import Config
from erp_bridge.scheduler import ErpSyncScheduler, _should_start_scheduler
from tests.helpers.temp_db import TempDbSandbox


class _CountingWorker:
    def __init__(self, *, fail_first: bool = False) -> None:
        self.calls = 0
        self.fail_first = fail_first
        self.ticked = threading.Event()

    def run_tick(self, *, tenant_id=None):
        self.calls += 1
        if self.fail_first and self.calls == 1:
            raise RuntimeError("tick exploded")
        if self.calls >= 2:
            self.ticked.set()
        return {"processed": 0}


class ErpSyncSchedulerTest(unittest.TestCase):
    def test_runs_immediately_then_on_interval_until_stopped(self) -> None:
        worker = _CountingWorker()
        scheduler = ErpSyncScheduler(worker, interval_seconds=0.01)

        scheduler.start()
        try:
            self.assertTrue(worker.ticked.wait(5))
            self.assertTrue(scheduler.running)
        finally:
            scheduler.stop(timeout=5)
        self.assertFalse(scheduler.running)
        calls_after_stop = worker.calls
        self.assertGreaterEqual(calls_after_stop, 2)

    def test_tick_errors_are_logged_and_loop_survives(self) -> None:
        worker = _CountingWorker(fail_first=True)
        scheduler = ErpSyncScheduler(worker, interval_seconds=0.01)

        with self.assertLogs("erp_bridge", level="ERROR") as logs:
            scheduler.start()
            try:
                self.assertTrue(worker.ticked.wait(5))
            finally:
                scheduler.stop(timeout=5)

        self.assertTrue(any("erp_sync_tick_failed" in line for line in logs.output))

    def test_run_once_returns_none_on_failure(self) -> None:
        scheduler = ErpSyncScheduler(_CountingWorker(fail_first=True))
        with self.assertLogs("erp_bridge", level="ERROR"):
            self.assertIsNone(scheduler.run_once())
        self.assertEqual(scheduler.run_once(), {"processed": 0})


class SchedulerStartupTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="scheduler_startup")

    def tearDown(self) -> None:
        self._temp_db.cleanup()

    def test_scheduler_not_started_in_tests_or_when_disabled(self) -> None:
        cfg = self._temp_db.make_config(Config, TESTING=True, SYNC_SCHEDULER_ENABLED=True)
        app = create_app(cfg)
        try:
            self.assertFalse(_should_start_scheduler(app))
            self.assertNotIn("erp_sync_scheduler", app.extensions)
        finally:
            app.extensions["erp_bridge"].close()

    def test_scheduler_started_when_enabled(self) -> None:
        cfg = self._temp_db.make_config(
            Config,
            TESTING=False,
            DB_AUTO_INIT=True,
            SYNC_SCHEDULER_ENABLED=True,
            SYNC_SCHEDULER_INTERVAL_SECONDS=3600,
            ERP_MOCK_FAILURE_RATE=0.0,
        )
        app = create_app(cfg)
        scheduler = app.extensions["erp_sync_scheduler"]
        try:
            self.assertTrue(scheduler.running)
            self.assertEqual(scheduler.interval_seconds, 3600)
        finally:
            scheduler.stop(timeout=5)
            app.extensions["erp_bridge"].close()


if __name__ == "__main__":
    unittest.main()
