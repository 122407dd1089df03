from __future__ import annotations

import json
import logging
import ssl
import urllib.error
import urllib.request

from erp_bridge.contexts.erp.domain.connector import (
    AuditSink,
    ErpConnector,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from erp_bridge.contexts.erp.domain.contracts import OutboundDocument
from erp_bridge.errors import is_definitive_http_status


class HttpErpConnector(ErpConnector):
    def __init__(
        self,
        base_url: str,
        audit_log: AuditSink | None = None,
        *,
        documents_path: str = "/documents",
        token: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float = 20,
        verify_ssl: bool = True,
    ) -> None:
        super().__init__(audit_log)
        base = str(base_url or "").strip().rstrip("/")
        if not base:
            raise ValueError("ERP_BASE_URL is required for the http connector.")
        self.url = f"{base}/{str(documents_path or '').strip().lstrip('/')}"
        self.token = token
        self.api_key = api_key
        self.timeout_seconds = float(timeout_seconds)
        self.verify_ssl = bool(verify_ssl)
        self._logger = logging.getLogger("erp_bridge")

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def _send(self, document: OutboundDocument) -> None:
        body = json.dumps(document.to_dict(), separators=(",", ":"), ensure_ascii=True).encode("utf-8")
        request = urllib.request.Request(self.url, data=body, headers=self._headers(), method="POST")

        context = None
        if not self.verify_ssl:
            context = ssl._create_unverified_context()

        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds, context=context) as response:
                response.read()
        except urllib.error.HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
            message = f"ERP HTTP {exc.code}: {error_body[:200]}"
            if is_definitive_http_status(exc.code):
                raise PermanentDeliveryError(message, code="erp_document_rejected") from exc
            raise TransientDeliveryError(message, code="erp_temporarily_unavailable") from exc
        except urllib.error.URLError as exc:
            raise TransientDeliveryError(
                f"ERP connection error: {exc.reason}",
                code="erp_temporarily_unavailable",
            ) from exc
        except (TimeoutError, OSError) as exc:
            raise TransientDeliveryError(f"ERP connection error: {exc}", code="erp_temporarily_unavailable") from exc

        self._logger.info(
            "erp_document_transmitted",
            extra={
                "tenant_id": document.tenant_id,
                "external_ref": document.external_ref,
                "operation": document.operation,
            },
        )
