"""hookrelay entry point - wires the store, source, dispatcher and API together."""

from __future__ import annotations

import asyncio
import signal
import sys

import click

from hookrelay import __version__
from hookrelay.api.server import RegistryServer
from hookrelay.config import Settings, load_settings
from hookrelay.core.bus import EventBus, EventType
from hookrelay.dispatch.dispatcher import EventDispatcher
from hookrelay.sources.base import MessagingSource
from hookrelay.sources.signal_source import SignalSource
from hookrelay.store import create_store
from hookrelay.utils.logging import get_logger, setup_logging

log = get_logger(__name__)


class Relay:
    """Main application orchestrator."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

        self.bus = EventBus()
        self.store = create_store(settings)
        self.dispatcher = EventDispatcher(self.store, settings.relay)

        self.source: MessagingSource | None = None
        if settings.signal.enabled:
            self.source = SignalSource(settings.signal, self.bus, settings.relay.events)

        self.api = RegistryServer(settings.api, self.store, self.source, settings.relay)

    async def start(self) -> None:
        log.info(
            "hookrelay_starting",
            version=__version__,
            storage=self.settings.storage.backend,
            source=self.source.platform_name if self.source else None,
        )

        await self.store.initialize()

        self.bus.subscribe(EventType.SOURCE_EVENT, self.dispatcher.handle_event)
        await self.bus.start()

        await self.api.start()

        if self.source is not None:
            await self.source.start()
        else:
            log.warning("no_messaging_source", msg="No source enabled; only the registry API is running.")

        log.info("hookrelay_ready")

    async def stop(self) -> None:
        log.info("hookrelay_stopping")
        if self.source is not None:
            await self.source.stop()
        await self.bus.stop(drain_timeout=self.settings.relay.shutdown_grace)
        await self.api.stop()
        await self.dispatcher.close()
        await self.store.close()
        log.info("hookrelay_stopped")


async def run(settings: Settings) -> None:
    app = Relay(settings)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        log.info("shutdown_signal")
        stop_event.set()

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

    await app.start()

    try:
        if sys.platform == "win32":
            while not stop_event.is_set():
                await asyncio.sleep(1)
        else:
            await stop_event.wait()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


@click.command()
@click.option("--config", "config_path", default=None, help="Path to config YAML file")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.option("--port", type=int, default=None, help="Override the registry API port")
def cli(config_path: str | None, log_level: str | None, port: int | None) -> None:
    """Relay chat events to registered webhooks."""
    settings = load_settings(config_path)
    if log_level:
        settings.log_level = log_level
    if port is not None:
        settings.api.port = port
    setup_logging(level=settings.log_level, json_output=settings.log_json)
    asyncio.run(run(settings))


if __name__ == "__main__":
    cli()
