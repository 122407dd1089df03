import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "erp_bridge.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", True)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-erp-bridge")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    SYNC_SCHEDULER_ENABLED = _bool_env("SYNC_SCHEDULER_ENABLED", True)
    SYNC_SCHEDULER_INTERVAL_SECONDS = _int_env("SYNC_SCHEDULER_INTERVAL_SECONDS", 10)

    ERP_MODE = os.environ.get("ERP_MODE", "mock")
    ERP_BASE_URL = os.environ.get("ERP_BASE_URL")
    ERP_DOCUMENTS_PATH = os.environ.get("ERP_DOCUMENTS_PATH", "/documents")
    ERP_TOKEN = os.environ.get("ERP_TOKEN")
    ERP_API_KEY = os.environ.get("ERP_API_KEY")
    ERP_TIMEOUT_SECONDS = _int_env("ERP_TIMEOUT_SECONDS", 20)
    ERP_VERIFY_SSL = _bool_env("ERP_VERIFY_SSL", True)

    ERP_MOCK_LATENCY_MIN_MS = _int_env("ERP_MOCK_LATENCY_MIN_MS", 300)
    ERP_MOCK_LATENCY_MAX_MS = _int_env("ERP_MOCK_LATENCY_MAX_MS", 900)
    ERP_MOCK_FAILURE_RATE = _float_env("ERP_MOCK_FAILURE_RATE", 0.1)
    ERP_MOCK_SEED = os.environ.get("ERP_MOCK_SEED")

    ERP_OUTBOX_BACKOFF_SCHEDULE_SECONDS = os.environ.get("ERP_OUTBOX_BACKOFF_SCHEDULE_SECONDS", "10,30,60,120")
    ERP_SYNC_OFFLINE_ATTEMPTS = _int_env("ERP_SYNC_OFFLINE_ATTEMPTS", 3)
    ERP_AUDIT_LOG_LIMIT = _int_env("ERP_AUDIT_LOG_LIMIT", 50)
    ERP_OUTBOX_CRITICAL_AGE_SECONDS = _int_env("ERP_OUTBOX_CRITICAL_AGE_SECONDS", 900)
    ERP_OUTBOX_CRITICAL_PENDING_JOBS = _int_env("ERP_OUTBOX_CRITICAL_PENDING_JOBS", 50)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set for the production environment.")
        if env == "production" and self.SECRET_KEY == "dev-secret-erp-bridge":
            raise RuntimeError("SECRET_KEY is insecure for production.")
