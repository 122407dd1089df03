import os
import shutil
import sqlite3
import tempfile
import unittest
import uuid

from erp_bridge import create_app
from erp_bridge.config import Config
from erp_bridge.db_migrations import to_sqlalchemy_url


def _table_exists(db_path: str, table_name: str) -> bool:
    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name = ?",
            (table_name,),
        ).fetchone()
        return row is not None
    finally:
        conn.close()


class DbMigrationsTest(unittest.TestCase):
    def setUp(self) -> None:
        base_tmp = tempfile.gettempdir()
        self._tmpdir_path = os.path.join(base_tmp, f"erp_migrations_test_{uuid.uuid4().hex}")
        os.makedirs(self._tmpdir_path, exist_ok=True)
        self.db_path = os.path.join(self._tmpdir_path, "erp_bridge_test.db")
        self._prev_env = os.environ.get("FLASK_ENV")
        os.environ["FLASK_ENV"] = "development"
        self._apps = []

    def tearDown(self) -> None:
        for app in self._apps:
            app.extensions["erp_bridge"].close()
        if self._prev_env is None:
            os.environ.pop("FLASK_ENV", None)
        else:
            os.environ["FLASK_ENV"] = self._prev_env
        shutil.rmtree(self._tmpdir_path, ignore_errors=True)

    def _build_app(self, *, testing: bool, db_auto_init: bool):
        db_path = self.db_path

        class TempConfig(Config):
            DATABASE_DIR = self._tmpdir_path
            DB_PATH = db_path
            TESTING = testing
            DB_AUTO_INIT = db_auto_init
            SYNC_SCHEDULER_ENABLED = False
            LOG_JSON = False

        app = create_app(TempConfig)
        self._apps.append(app)
        return app

    def test_schema_not_created_without_flag(self) -> None:
        self._build_app(testing=False, db_auto_init=False)
        self.assertFalse(_table_exists(self.db_path, "erp_outbox_events"))

    def test_schema_created_with_explicit_dev_flag(self) -> None:
        self._build_app(testing=False, db_auto_init=True)
        self.assertTrue(_table_exists(self.db_path, "erp_outbox_events"))
        self.assertTrue(_table_exists(self.db_path, "erp_delivery_audit_log"))

    def test_flask_db_upgrade_and_downgrade(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        runner = app.test_cli_runner()

        upgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(upgrade_result.exit_code, 0, msg=upgrade_result.output)
        self.assertTrue(_table_exists(self.db_path, "erp_outbox_events"))
        self.assertTrue(_table_exists(self.db_path, "erp_delivery_audit_log"))

        downgrade_result = runner.invoke(args=["db", "downgrade", "base"])
        self.assertEqual(downgrade_result.exit_code, 0, msg=downgrade_result.output)
        self.assertFalse(_table_exists(self.db_path, "erp_outbox_events"))

        reupgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(reupgrade_result.exit_code, 0, msg=reupgrade_result.output)
        self.assertTrue(_table_exists(self.db_path, "erp_outbox_events"))

    def test_migrated_schema_accepts_outbox_writes(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        result = app.test_cli_runner().invoke(args=["db", "upgrade"])
        self.assertEqual(result.exit_code, 0, msg=result.output)

        bridge = app.extensions["erp_bridge"]
        event = bridge.enqueue("tenant-a", "wo-1", "WORK_ORDER_STATUS_CHANGED", {"toStatus": "OPEN"})
        self.assertEqual(bridge.store.get(event.id).status, "PENDING")

    def test_sqlalchemy_url_normalization(self) -> None:
        self.assertEqual(to_sqlalchemy_url("postgres://u:p@db/erp"), "postgresql://u:p@db/erp")
        self.assertTrue(to_sqlalchemy_url(self.db_path).startswith("sqlite:///"))
        with self.assertRaises(RuntimeError):
            to_sqlalchemy_url("  ")


if __name__ == "__main__":
    unittest.main()
