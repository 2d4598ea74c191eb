"""
Relay entry point. Serves the tally over WebSocket, SSE and the admin API
on a single port.
"""
import asyncio
import logging
import signal
import sys

import structlog
import uvicorn

from tally_sync.config import config
from tally_sync.logging_setup import configure_logging
from tally_sync.services import RelayService, SessionRegistry
from tally_sync.storage import build_store

configure_logging(config)

log = structlog.get_logger()


async def main():
    store = build_store(config)
    registry = SessionRegistry()
    relay = RelayService(config, store, registry)

    shutdown = asyncio.Event()

    loop = asyncio.get_event_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    server = uvicorn.Server(uvicorn.Config(
        relay.app, host="0.0.0.0", port=config.http_port, log_level="warning"
    ))

    log.info(
        "relay_starting",
        node_id=config.node_id,
        http=config.http_port,
        env=config.app_env,
        store=config.store_backend,
        policy=config.write_policy,
    )

    async def wait_shutdown():
        await shutdown.wait()
        server.should_exit = True

    watcher = asyncio.create_task(wait_shutdown())
    try:
        await server.serve()
    finally:
        watcher.cancel()
        store.close()

    if not server.started:
        log.error("relay_start_failed", http=config.http_port)
        return 1
    log.info("relay_stopped", node_id=config.node_id)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
