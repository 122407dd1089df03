import unittest

from erp_bridge.core import AuditLogAppended, EventBus, OutboxChanged


class EventBusTest(unittest.TestCase):
    def test_handler_execution_order_is_predictable(self) -> None:
        bus = EventBus()
        execution_trace = []

        bus.subscribe(OutboxChanged, lambda _event: execution_trace.append("first"))
        bus.subscribe(OutboxChanged, lambda _event: execution_trace.append("second"))
        bus.publish(OutboxChanged(tenant_id="tenant-a", entity_id="wo-1", change="enqueued"))

        self.assertEqual(execution_trace, ["first", "second"])

    def test_handlers_only_receive_their_event_type(self) -> None:
        bus = EventBus()
        outbox_changes = []
        audit_appends = []
        bus.subscribe(OutboxChanged, outbox_changes.append)
        bus.subscribe(AuditLogAppended, audit_appends.append)

        bus.publish(AuditLogAppended(tenant_id="tenant-a", external_ref="wo-1", operation="SET_STATUS"))

        self.assertEqual(outbox_changes, [])
        self.assertEqual(len(audit_appends), 1)
        self.assertEqual(audit_appends[0].operation, "SET_STATUS")

    def test_failing_handler_does_not_stop_others(self) -> None:
        bus = EventBus()
        received = []

        def broken_handler(_event):
            raise RuntimeError("boom")

        bus.subscribe(OutboxChanged, broken_handler)
        bus.subscribe(OutboxChanged, received.append)

        with self.assertLogs("erp_bridge", level="ERROR") as logs:
            bus.publish(OutboxChanged(tenant_id="tenant-a", entity_id="wo-1", change="sent"))

        self.assertEqual(len(received), 1)
        self.assertTrue(any("event_handler_failed" in line for line in logs.output))

    def test_unsubscribe_and_clear(self) -> None:
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(OutboxChanged, received.append)
        unsubscribe()
        bus.publish(OutboxChanged(tenant_id="tenant-a", entity_id="wo-1"))
        self.assertEqual(received, [])

        bus.subscribe(OutboxChanged, received.append)
        bus.clear()
        bus.publish(OutboxChanged(tenant_id="tenant-a", entity_id="wo-1"))
        self.assertEqual(received, [])

    def test_domain_event_normalizes_identity(self) -> None:
        event = OutboxChanged(event_id="  ", tenant_id="tenant-a", entity_id="wo-1")
        self.assertTrue(event.event_id)
        self.assertIsNotNone(event.occurred_at.tzinfo)


if __name__ == "__main__":
    unittest.main()
