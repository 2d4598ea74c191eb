"""
Headless viewer. Follows a relay over WebSocket and logs what a display
would show.
"""
import asyncio
import signal

import structlog

from tally_sync.config import config
from tally_sync.holder import CounterStateHolder
from tally_sync.logging_setup import configure_logging
from tally_sync.services import DisplaySurface, RelayBridge

configure_logging(config)

log = structlog.get_logger()


async def main():
    holder = CounterStateHolder()
    bridge = RelayBridge(config, holder)
    display = DisplaySurface(holder, config.special_duration)

    bridge.on_special(display.set_special)
    bridge.add_connection_listener(display.set_connected)
    display.on_change(lambda view: log.info("display_changed", **view.model_dump(mode="json")))

    shutdown = asyncio.Event()

    loop = asyncio.get_event_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    log.info("viewer_starting", relay=bridge.url)
    await bridge.start()
    try:
        await shutdown.wait()
    finally:
        await bridge.stop()
        display.close()
        log.info("viewer_stopped")


if __name__ == "__main__":
    asyncio.run(main())
