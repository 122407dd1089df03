from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Protocol

from erp_bridge.contexts.erp.domain.contracts import OutboundDocument


class DeliveryError(RuntimeError):
    permanent = False

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = str(code or "").strip() or None


class TransientDeliveryError(DeliveryError):
    """Retryable failure: timeouts, unreachable ERP, throttling."""


class PermanentDeliveryError(DeliveryError):
    """The ERP refused the document. Retrying it unchanged will not help."""

    permanent = True


class AuditSink(Protocol):
    def append(self, document: OutboundDocument) -> None: ...


class ErpConnector(ABC):
    def __init__(self, audit_log: AuditSink | None = None) -> None:
        self.audit_log = audit_log

    def deliver(self, document: OutboundDocument) -> None:
        self._send(document)
        if self.audit_log is not None:
            self.audit_log.append(document)

    @abstractmethod
    def _send(self, document: OutboundDocument) -> None:
        raise NotImplementedError
