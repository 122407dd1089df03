import os
import threading
import unittest
from unittest.mock import patch

from erp_bridge.config import Config
from erp_bridge.contexts.erp.domain.contracts import STATUS_SENT
from erp_bridge.contexts.erp.infrastructure.outbox_store import OutboxStore
from erp_bridge.workers.erp_outbox_worker import main
from tests.helpers.temp_db import TempDbSandbox


class ErpOutboxWorkerCliTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="worker_cli")
        # Scheduler enabled on purpose: the CLI must not start one of its own.
        self.worker_config = self._temp_db.make_config(
            Config,
            TESTING=False,
            DB_AUTO_INIT=True,
            SYNC_SCHEDULER_ENABLED=True,
            ERP_MODE="mock",
            ERP_MOCK_FAILURE_RATE=0.0,
        )
        self.store = OutboxStore.open(self._temp_db.db_path)

    def tearDown(self) -> None:
        self.store.close()
        self._temp_db.cleanup()

    def _run(self, argv):
        with patch.dict(os.environ, {"FLASK_ENV": "development"}), patch(
            "erp_bridge.workers.erp_outbox_worker.Config", self.worker_config
        ):
            return main(argv)

    def test_once_delivers_without_starting_scheduler_thread(self) -> None:
        event = self.store.enqueue("tenant-a", "wo-1", "WORK_ORDER_STATUS_CHANGED", {"toStatus": "DONE"})

        exit_code = self._run(["--once"])

        self.assertEqual(exit_code, 0)
        thread_names = [thread.name for thread in threading.enumerate()]
        self.assertNotIn("erp-sync-scheduler", thread_names)
        self.assertEqual(self.store.get(event.id).status, STATUS_SENT)

    def test_once_only_delivers_selected_tenant(self) -> None:
        own = self.store.enqueue("tenant-a", "wo-1", "WORK_ORDER_STATUS_CHANGED", {"toStatus": "DONE"})
        other = self.store.enqueue("tenant-b", "wo-2", "WORK_ORDER_STATUS_CHANGED", {"toStatus": "DONE"})

        self.assertEqual(self._run(["--once", "--tenant-id", "tenant-a"]), 0)

        self.assertEqual(self.store.get(own.id).status, STATUS_SENT)
        self.assertEqual(self.store.get(other.id).status, "PENDING")


if __name__ == "__main__":
    unittest.main()
