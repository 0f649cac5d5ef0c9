from __future__ import annotations

import argparse
import asyncio
import signal

import structlog

from holter.config import get_settings
from holter.errors import HolterError
from holter.observability.logging import configure_logging
from holter.server import HolterServerBuilder


async def _run(builder: HolterServerBuilder) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    server = builder.build()
    await server.serve(stop.wait())


def main() -> None:
    parser = argparse.ArgumentParser(description="Standalone Holter metrics/health sidecar")
    parser.add_argument("--listen", default=None, help="host:port to bind (overrides HOLTER_LISTEN_ADDRESS)")
    parser.add_argument("--database-url", default=None, help="SQLAlchemy URL probed by /healthz")
    args = parser.parse_args()

    settings = get_settings()
    updates = {}
    if args.listen:
        updates["listen_address"] = args.listen
    if args.database_url:
        updates["database_url"] = args.database_url
    if updates:
        settings = settings.model_copy(update=updates)

    configure_logging(settings.log_level, standalone=True)
    try:
        asyncio.run(_run(HolterServerBuilder.from_settings(settings)))
    except HolterError as exc:
        structlog.get_logger("holter").error("sidecar_failed", error=str(exc))
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
