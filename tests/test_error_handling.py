import unittest

from erp_bridge import create_app
from erp_bridge.config import Config
from erp_bridge.errors import OutboxStoreError, ValidationError, classify_erp_failure
from erp_bridge.ui_strings import error_message
from tests.helpers.temp_db import TempDbSandbox


class ErrorHandlingApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="error_api")
        cfg = self._temp_db.make_config(Config, TESTING=True, PROPAGATE_EXCEPTIONS=False)
        self.app = create_app(cfg)
        self.bridge = self.app.extensions["erp_bridge"]

        @self.app.route("/boom")
        def _boom():
            raise RuntimeError("database exploded with secret details")

        self.client = self.app.test_client()

    def tearDown(self) -> None:
        self.bridge.close()
        self._temp_db.cleanup()

    def test_unexpected_exception_returns_safe_json(self) -> None:
        response = self.client.get("/boom", headers={"X-Request-Id": "req-boom-1"})

        self.assertEqual(response.status_code, 500)
        payload = response.get_json()
        self.assertEqual(payload["error"], "unexpected_error")
        self.assertEqual(payload["message"], error_message("unexpected_error"))
        self.assertEqual(payload["request_id"], "req-boom-1")
        body = response.get_data(as_text=True)
        self.assertNotIn("secret details", body)
        self.assertNotIn("Traceback", body)

    def test_unknown_route_keeps_http_status(self) -> None:
        response = self.client.get("/api/unknown")
        self.assertEqual(response.status_code, 404)

    def test_storage_outage_on_enqueue_returns_503(self) -> None:
        self.bridge.store.close()
        response = self.client.post(
            "/api/erp/outbox/events",
            json={"entity_id": "wo-1", "type": "WORK_ORDER_STATUS_CHANGED", "payload": {"toStatus": "OPEN"}},
        )
        self.assertEqual(response.status_code, 503)
        payload = response.get_json()
        self.assertEqual(payload["error"], "outbox_unavailable")
        self.assertEqual(payload["message"], error_message("outbox_unavailable"))

    def test_invalid_payload_shape_is_rejected(self) -> None:
        response = self.client.post(
            "/api/erp/outbox/events",
            json={"entity_id": "wo-1", "type": "WORK_ORDER_STATUS_CHANGED", "payload": ["not", "an", "object"]},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "validation_error")


class AppErrorTest(unittest.TestCase):
    def test_defaults_and_payload(self) -> None:
        error = ValidationError(code="event_type_invalid", message_key="event_type_invalid", payload={"field": "type"})
        payload = error.to_response_payload("req-1")
        self.assertEqual(
            payload,
            {
                "error": "event_type_invalid",
                "message": error_message("event_type_invalid"),
                "request_id": "req-1",
                "field": "type",
            },
        )
        self.assertFalse(error.critical)

        outage = OutboxStoreError(details="disk full")
        self.assertEqual(outage.http_status, 503)
        self.assertTrue(outage.critical)
        self.assertEqual(str(outage), "disk full")

    def test_unknown_message_key_falls_back_to_generic_message(self) -> None:
        error = ValidationError(message_key="no_such_key")
        self.assertEqual(error.user_message(), error_message("unexpected_error"))

    def test_classify_erp_failure(self) -> None:
        self.assertEqual(classify_erp_failure("ERP HTTP 422: bad field")[0], "erp_document_rejected")
        self.assertEqual(classify_erp_failure("ERP HTTP 429: slow down")[0], "erp_temporarily_unavailable")
        self.assertEqual(classify_erp_failure("ERP HTTP 503: down")[0], "erp_temporarily_unavailable")
        self.assertEqual(classify_erp_failure("schema violation on field x")[2], 422)
        self.assertEqual(classify_erp_failure("ERP_TEMP_ERROR: timeout")[2], 502)
        self.assertEqual(classify_erp_failure(None)[0], "erp_temporarily_unavailable")


if __name__ == "__main__":
    unittest.main()
