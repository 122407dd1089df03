from __future__ import annotations

import random
from typing import Any, Mapping

from erp_bridge.contexts.erp.domain.connector import AuditSink, ErpConnector
from erp_bridge.errors import ValidationError


CONNECTOR_MODES = ("mock", "http")


def _config_value(config: Mapping[str, Any], key: str, default: Any = None) -> Any:
    value = config.get(key, default)
    return default if value is None else value


def _int_value(config: Mapping[str, Any], key: str, default: int) -> int:
    try:
        return int(_config_value(config, key, default))
    except (TypeError, ValueError):
        return default


def _float_value(config: Mapping[str, Any], key: str, default: float) -> float:
    try:
        return float(_config_value(config, key, default))
    except (TypeError, ValueError):
        return default


def _mock_rng(config: Mapping[str, Any]) -> random.Random:
    raw = str(_config_value(config, "ERP_MOCK_SEED", "") or "").strip()
    if not raw:
        return random.Random()
    try:
        return random.Random(int(raw))
    except ValueError:
        return random.Random(raw)


def build_connector(config: Mapping[str, Any], audit_log: AuditSink | None = None) -> ErpConnector:
    mode = str(_config_value(config, "ERP_MODE", "mock")).strip().lower()
    if mode == "mock":
        from erp_bridge.contexts.erp.infrastructure.simulator.mock_connector import MockErpConnector

        return MockErpConnector(
            audit_log,
            latency_min_ms=_int_value(config, "ERP_MOCK_LATENCY_MIN_MS", 300),
            latency_max_ms=_int_value(config, "ERP_MOCK_LATENCY_MAX_MS", 900),
            failure_rate=_float_value(config, "ERP_MOCK_FAILURE_RATE", 0.1),
            rng=_mock_rng(config),
        )
    if mode == "http":
        from erp_bridge.contexts.erp.infrastructure.http_connector import HttpErpConnector

        return HttpErpConnector(
            str(_config_value(config, "ERP_BASE_URL", "")),
            audit_log,
            documents_path=str(_config_value(config, "ERP_DOCUMENTS_PATH", "/documents")),
            token=config.get("ERP_TOKEN"),
            api_key=config.get("ERP_API_KEY"),
            timeout_seconds=_float_value(config, "ERP_TIMEOUT_SECONDS", 20),
            verify_ssl=bool(_config_value(config, "ERP_VERIFY_SSL", True)),
        )
    raise ValidationError(
        code="erp_mode_invalid",
        message_key="erp_mode_invalid",
        details=f"unsupported ERP_MODE: {mode}",
    )
