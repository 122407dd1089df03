from erp_bridge.core.event_bus import (
    AuditLogAppended,
    DomainEvent,
    EventBus,
    OutboxChanged,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "OutboxChanged",
    "AuditLogAppended",
]
