from __future__ import annotations

import argparse
import asyncio
import os
import signal

import structlog

from .config import DEFAULT_CONFIG_PATH, MonitorConfig, load_config
from .errors import ConfigurationError
from .log_setup import configure_logging
from .models import Status
from .orchestrator import build_orchestrator


logger = structlog.get_logger(__name__)


async def run_monitor(config: MonitorConfig, *, once: bool = False) -> int:
    orchestrator = build_orchestrator(config, with_scheduler=not once)
    try:
        if once:
            await orchestrator.run_all()
            await orchestrator.ledger.resolve_orphans()
            await orchestrator.governor.drain()
            down = [
                f"{tenant.id}::{kind.value}"
                for tenant in config.tenants
                for kind, record in orchestrator.get_status(tenant.id).items()
                if record.status == Status.DOWN
            ]
            if down:
                logger.warning("Down after one cycle", descriptors=down)
            return 1 if down else 0

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass

        await orchestrator.start()
        await stop.wait()
        return 0
    finally:
        await orchestrator.aclose()


def serve(config: MonitorConfig, *, host: str, port: int) -> int:
    import uvicorn

    from .api import create_app

    orchestrator = build_orchestrator(config)
    app = create_app(orchestrator, manage_lifecycle=True)
    uvicorn.run(app, host=host, port=port, log_level=config.log_level.lower())
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Multi-tenant endpoint health monitor")
    parser.add_argument(
        "--config",
        default=os.getenv("MONITOR_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to YAML config",
    )
    parser.add_argument("--once", action="store_true", help="Run one cycle for every tenant and exit")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (INFO, WARNING, ...); defaults to the configured level",
    )
    parser.add_argument("--serve", action="store_true", help="Run the monitor behind the HTTP status API")
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"), help="Bind host for --serve")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")), help="Bind port for --serve")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        configure_logging(args.log_level or "INFO")
        logger.error("Invalid configuration", error=str(exc))
        return 2

    if args.log_level:
        config.log_level = str(args.log_level).upper()
    configure_logging(config.log_level)

    if not config.tenants:
        logger.error("No tenants configured", config=args.config)
        return 2

    if args.serve:
        return serve(config, host=args.host, port=args.port)
    return asyncio.run(run_monitor(config, once=bool(args.once)))


if __name__ == "__main__":
    raise SystemExit(main())
