import os

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from erp_bridge.config import Config
from erp_bridge.db_migrations import register_db_cli
from erp_bridge.observability import (
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    outbox_health,
    prometheus_metrics_text,
)


def create_app(config_class=Config, *, snapshot_fn=None, connector=None):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_tenant(app)
    _register_bridge(app, snapshot_fn=snapshot_fn, connector=connector)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)

    _register_scheduler(app)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _should_auto_init_schema(app: Flask) -> bool:
    if app.testing:
        return True
    if not bool(app.config.get("DB_AUTO_INIT", False)):
        return False
    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if flask_env != "development":
        app.logger.warning("db_auto_init_ignored", extra={"flask_env": flask_env})
        return False
    return True


def _register_bridge(app: Flask, *, snapshot_fn=None, connector=None) -> None:
    from erp_bridge.contexts.erp.application.bridge import ErpBridge

    config = dict(app.config)
    config["DB_AUTO_INIT"] = _should_auto_init_schema(app)
    app.extensions["erp_bridge"] = ErpBridge.open(config, snapshot_fn=snapshot_fn, connector=connector)


def _register_blueprints(app: Flask) -> None:
    from erp_bridge.routes.erp_routes import erp_bp

    app.register_blueprint(erp_bp)


def _register_scheduler(app: Flask) -> None:
    from erp_bridge.scheduler import start_erp_sync_scheduler

    start_erp_sync_scheduler(app)


def _register_error_handlers(app: Flask) -> None:
    from erp_bridge.errors import AppError, SystemError

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return observe_response(response)

    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "message_key": error.message_key,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _register_tenant(app: Flask) -> None:
    from erp_bridge.tenant import bind_request_tenant

    @app.before_request
    def load_tenant() -> None:
        bind_request_tenant()


def _outbox_state(app: Flask) -> dict:
    bridge = app.extensions["erp_bridge"]
    return outbox_health(
        bridge.store.summary(),
        critical_age_seconds=int(app.config.get("ERP_OUTBOX_CRITICAL_AGE_SECONDS", 900) or 900),
        critical_pending_jobs=int(app.config.get("ERP_OUTBOX_CRITICAL_PENDING_JOBS", 50) or 50),
    )


def _register_health(app: Flask) -> None:
    @app.route("/health")
    def health():
        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        scheduler = app.extensions.get("erp_sync_scheduler")
        payload = {
            "status": "ok",
            "db": backend,
            "erp_mode": str(app.config.get("ERP_MODE") or "mock"),
            "scheduler_running": bool(scheduler and scheduler.running),
            "metrics": {
                "http": metrics_snapshot(),
            },
        }
        worker = _outbox_state(app)
        payload["worker"] = worker
        if worker["backlog_critical"]:
            payload["status"] = "degraded"
        return payload, 200

    @app.route("/metrics")
    def metrics():
        body = prometheus_metrics_text(outbox_state=_outbox_state(app))
        return Response(body, mimetype="text/plain; version=0.0.4")
