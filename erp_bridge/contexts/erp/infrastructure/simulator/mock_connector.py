from __future__ import annotations

import logging
import random
import time
from typing import Callable

from erp_bridge.contexts.erp.domain.connector import AuditSink, ErpConnector, TransientDeliveryError
from erp_bridge.contexts.erp.domain.contracts import OutboundDocument


class MockErpConnector(ErpConnector):
    """Simulated ERP endpoint with random latency and transient failures."""

    def __init__(
        self,
        audit_log: AuditSink | None = None,
        *,
        latency_min_ms: int = 300,
        latency_max_ms: int = 900,
        failure_rate: float = 0.1,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        super().__init__(audit_log)
        self.latency_min_ms = max(0, int(latency_min_ms))
        self.latency_max_ms = max(self.latency_min_ms, int(latency_max_ms))
        self.failure_rate = min(1.0, max(0.0, float(failure_rate)))
        self.rng = rng or random.Random()
        self.sleep = sleep or time.sleep
        self._logger = logging.getLogger("erp_bridge")

    def _send(self, document: OutboundDocument) -> None:
        latency_ms = self.rng.uniform(self.latency_min_ms, self.latency_max_ms)
        self.sleep(latency_ms / 1000.0)

        if self.rng.random() < self.failure_rate:
            raise TransientDeliveryError(
                "ERP_TEMP_ERROR: Connection timed out or endpoint busy.",
                code="erp_temporarily_unavailable",
            )

        self._logger.info(
            "erp_document_transmitted",
            extra={
                "tenant_id": document.tenant_id,
                "external_ref": document.external_ref,
                "operation": document.operation,
                "latency_ms": round(latency_ms, 1),
            },
        )
