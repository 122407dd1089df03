import unittest
from datetime import datetime, timezone

from erp_bridge.contexts.erp.domain.contracts import (
    EVENT_STOCK_REPLENISHMENT_REQUESTED,
    EVENT_WORK_ORDER_APPROVAL_LINK_CREATED,
    EVENT_WORK_ORDER_LINE_ITEMS_CHANGED,
    EVENT_WORK_ORDER_STATUS_CHANGED,
    OutboxEvent,
)
from erp_bridge.contexts.erp.domain.schemas import coerce_payload
from erp_bridge.contexts.erp.infrastructure.mappers import looks_vin_derived, map_event_to_document


_NOW = datetime(2026, 10, 17, 9, 30, tzinfo=timezone.utc)


def _event(event_type: str, payload) -> OutboxEvent:
    return OutboxEvent(id="evt_test", tenant_id="tenant-a", entity_id="wo-42", type=event_type, payload=payload)


class DocumentMapperTest(unittest.TestCase):
    def test_status_change_maps_to_set_status(self) -> None:
        document = map_event_to_document(
            _event(EVENT_WORK_ORDER_STATUS_CHANGED, {"toStatus": "APPROVED", "customerName": "Jane"}),
            {"operational_hash": "op-hash-1"},
            now=_NOW,
        ).to_dict()

        self.assertEqual(document["operation"], "SET_STATUS")
        self.assertEqual(document["tenantId"], "tenant-a")
        self.assertEqual(document["externalRef"], "wo-42")
        self.assertEqual(document["timestamp"], "2026-10-17T09:30:00.000000Z")
        self.assertEqual(document["data"], {"status": "APPROVED"})
        self.assertEqual(
            document["meta"],
            {
                "source": "ERP_BRIDGE",
                "schemaVersion": "1.0",
                "compliance": "NO_PII",
                "correlation": {"hash": "op-hash-1"},
            },
        )

    def test_line_items_are_scrubbed_and_totalled(self) -> None:
        payload = {
            "diagnosisItems": [
                {"item": "Brake pads", "type": "PART", "recommendedPartRef": "BRK-001", "signalCost": 120},
                {"item": "Injector", "type": "PART", "recommendedPartRef": "VIN-WVWZZZ1JZXW000001", "signalCost": 80.5},
                {"item": "Engine map", "type": "PART", "recommendedPartRef": "OEM 1HGCM82633A004352", "signalCost": "x"},
                {"item": "Labour hour", "type": "SERVICE", "qty": 2},
                "not-an-item",
            ]
        }
        document = map_event_to_document(_event(EVENT_WORK_ORDER_LINE_ITEMS_CHANGED, payload), now=_NOW).to_dict()

        self.assertEqual(document["operation"], "APPEND_LINE_ITEMS")
        items = document["data"]["lineItems"]
        self.assertEqual(len(items), 4)
        self.assertEqual(items[0], {"kind": "PART", "name": "Brake pads", "qty": 1, "code": "INTERNAL"})
        self.assertNotIn("code", items[1])
        self.assertNotIn("code", items[2])
        self.assertEqual(items[3], {"kind": "LABOR", "name": "Labour hour", "qty": 2})
        self.assertEqual(document["data"]["totals"], {"estimateIndex": 200.5})
        self.assertIsNone(document["meta"]["correlation"]["hash"])

    def test_approval_link_keeps_only_the_token(self) -> None:
        document = map_event_to_document(
            _event(EVENT_WORK_ORDER_APPROVAL_LINK_CREATED, {"link": "https://shop.example/approve/tok_9f2a?ref=sms"}),
            now=_NOW,
        ).to_dict()
        self.assertEqual(document["operation"], "REGISTER_APPROVAL")
        self.assertEqual(document["data"], {"hasApproval": False, "approvalLinkId": "tok_9f2a"})

        missing = map_event_to_document(_event(EVENT_WORK_ORDER_APPROVAL_LINK_CREATED, {}), now=_NOW).to_dict()
        self.assertEqual(missing["data"]["approvalLinkId"], "TOKEN_PENDING")

    def test_stock_replenishment_maps_to_minimal_work_order_document(self) -> None:
        document = map_event_to_document(
            _event(EVENT_STOCK_REPLENISHMENT_REQUESTED, {"partCode": "BRK-001", "qty": 4}),
            {"hash": "snap-hash"},
            now=_NOW,
        ).to_dict()
        self.assertEqual(document["operation"], "CREATE_OR_UPDATE_WORKORDER")
        self.assertEqual(document["data"], {})
        self.assertEqual(document["meta"]["correlation"]["hash"], "snap-hash")

    def test_malformed_payload_never_raises(self) -> None:
        for event_type, payload in (
            (EVENT_WORK_ORDER_STATUS_CHANGED, None),
            (EVENT_WORK_ORDER_STATUS_CHANGED, {"toStatus": {"nested": True}}),
            (EVENT_WORK_ORDER_LINE_ITEMS_CHANGED, {"diagnosisItems": "oops"}),
            (EVENT_WORK_ORDER_APPROVAL_LINK_CREATED, {"link": 42}),
            ("SOMETHING_ELSE", ["not", "a", "dict"]),
        ):
            with self.subTest(event_type=event_type, payload=payload):
                document = map_event_to_document(_event(event_type, payload), "not-a-snapshot", now=_NOW)
                self.assertEqual(document.external_ref, "wo-42")
                self.assertIsNone(document.correlation_hash)

        status_doc = map_event_to_document(_event(EVENT_WORK_ORDER_STATUS_CHANGED, {}), now=_NOW)
        self.assertEqual(status_doc.data, {})
        items_doc = map_event_to_document(_event(EVENT_WORK_ORDER_LINE_ITEMS_CHANGED, {"items": "oops"}), now=_NOW)
        self.assertEqual(items_doc.data, {})

    def test_missing_or_malformed_status_is_omitted(self) -> None:
        for payload in ({}, {"toStatus": None}, {"toStatus": {"nested": True}}, {"status": ["APPROVED"]}):
            with self.subTest(payload=payload):
                document = map_event_to_document(_event(EVENT_WORK_ORDER_STATUS_CHANGED, payload), now=_NOW).to_dict()
                self.assertEqual(document["operation"], "SET_STATUS")
                self.assertNotIn("status", document["data"])

    def test_part_references_never_leave_as_written(self) -> None:
        payload = {
            "line_items": [
                {"name": "Oil", "kind": "part", "code": "OIL-5W30"},
                {"name": "Plate-matched kit", "kind": "part", "code": "ABC-1234 customer 5521"},
                {"name": "Wipers", "kind": "part"},
            ]
        }
        document = map_event_to_document(_event(EVENT_WORK_ORDER_LINE_ITEMS_CHANGED, payload), now=_NOW).to_dict()

        items = document["data"]["lineItems"]
        self.assertEqual([item.get("code") for item in items], ["INTERNAL", "INTERNAL", None])
        self.assertNotIn("OIL-5W30", str(document))
        self.assertNotIn("5521", str(document))

    def test_payload_schema_applies_aliases_and_defaults(self) -> None:
        coerced = coerce_payload(
            EVENT_WORK_ORDER_LINE_ITEMS_CHANGED,
            {"line_items": [{"name": "Oil", "kind": "part", "quantity": "3", "cost": "12.5", "code": "OIL-5W30"}]},
        )
        self.assertEqual(
            coerced,
            {"items": [{"kind": "PART", "name": "Oil", "qty": 3, "code": "OIL-5W30", "cost": 12.5}]},
        )
        self.assertEqual(coerce_payload(EVENT_WORK_ORDER_STATUS_CHANGED, {"to_status": "DONE"})["to_status"], "DONE")
        self.assertEqual(coerce_payload("UNKNOWN", {"a": 1}), {})

    def test_vin_heuristic(self) -> None:
        self.assertTrue(looks_vin_derived("vin-partial-77"))
        self.assertTrue(looks_vin_derived("ref:1HGCM82633A004352"))
        self.assertFalse(looks_vin_derived("BRK-001"))
        self.assertFalse(looks_vin_derived("12345678901234567"))
        self.assertFalse(looks_vin_derived(None))


if __name__ == "__main__":
    unittest.main()
