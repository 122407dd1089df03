from __future__ import annotations

import argparse
import time
import uuid
from typing import Sequence

from erp_bridge import create_app
from erp_bridge.config import Config


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ERP outbox delivery worker.")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit.")
    parser.add_argument("--tenant-id", default="", help="Only deliver events of this tenant.")
    parser.add_argument("--interval", type=int, default=0, help="Seconds between ticks.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    # Ticks are driven by this loop only.
    worker_config = type("WorkerConfig", (Config,), {"SYNC_SCHEDULER_ENABLED": False})
    app = create_app(worker_config)
    bridge = app.extensions["erp_bridge"]

    configured_interval = int(app.config.get("SYNC_SCHEDULER_INTERVAL_SECONDS", 10) or 10)
    interval_seconds = max(1, int(args.interval or configured_interval))
    tenant_id = str(args.tenant_id or "").strip() or None

    try:
        while True:
            run_request_id = f"worker-{uuid.uuid4().hex[:12]}"
            summary = bridge.run_tick(tenant_id=tenant_id)
            app.logger.info(
                "erp_outbox_worker_tick_completed",
                extra={
                    "request_id": run_request_id,
                    "tenant_id": tenant_id or "all",
                    "processed": summary.get("processed", 0),
                    "succeeded": summary.get("succeeded", 0),
                    "failed": summary.get("failed", 0),
                    "dead_lettered": summary.get("dead_lettered", 0),
                    "skipped": summary.get("skipped", 0),
                    "unconfirmed": summary.get("unconfirmed", 0),
                },
            )
            if args.once:
                break
            time.sleep(interval_seconds)
    except KeyboardInterrupt:
        app.logger.info("erp_outbox_worker_stopped")
    finally:
        bridge.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
