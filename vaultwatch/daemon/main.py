"""Main daemon process for vaultwatch."""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .bus import EventBus, ITEM_INDEXED, ITEM_UPDATED, ITEM_DELETED, SCAN_ERROR, EMBEDDING_FAILED
from .capability import LocalDirectoryHandle, local_handle_factory
from .config import Config
from .embedding import create_provider
from .logging_config import setup_logging
from .registry import MonitorRegistry
from .store import JsonRecordStore


ITEM_INDEXES = ("folder_id", "embedding_status", "file_extension")


class VaultwatchDaemon:
    """Wires config, stores, embedding provider and registry together."""

    def __init__(self, config: Config):
        self.config = config
        self.event_bus = EventBus()
        self.item_store = JsonRecordStore(config.index_path, indexes=ITEM_INDEXES)
        self.folder_store = JsonRecordStore(config.folders_path)
        self.registry = MonitorRegistry(
            self.item_store,
            self.folder_store,
            create_provider(config.embedding),
            bus=self.event_bus,
            config=config,
            handle_factory=local_handle_factory,
        )
        self.stats = {"indexed": 0, "updated": 0, "deleted": 0, "errors": 0}
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        logger.info("Starting vaultwatch daemon...")
        await self.event_bus.start()
        await self.item_store.open()
        await self.folder_store.open()

        self.event_bus.subscribe("item.*", self._on_item)
        self.event_bus.subscribe(SCAN_ERROR, self._on_error)
        self.event_bus.subscribe(EMBEDDING_FAILED, self._on_error)

        await self.registry.start()
        await self.registry.restore()

        known = {f.display_path for f in self.registry.get_folders()}
        for watched in self.config.folders:
            path = str(watched.path)
            if path in known:
                continue
            try:
                await self.registry.add_folder(LocalDirectoryHandle(watched.path), path, watched.options)
            except Exception as e:
                logger.error(f"Cannot watch {path}: {e}")

        logger.info(f"vaultwatch daemon started, {len(self.registry.get_folders())} folders")

    async def stop(self) -> None:
        if self._stopped.is_set():
            return
        logger.info("Stopping vaultwatch daemon...")
        await self.registry.close()
        await self.event_bus.stop()
        self._stopped.set()
        logger.info("vaultwatch daemon stopped")

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def _on_item(self, event) -> None:
        if event.type == ITEM_INDEXED:
            self.stats["indexed"] += 1
        elif event.type == ITEM_UPDATED:
            self.stats["updated"] += 1
        elif event.type == ITEM_DELETED:
            self.stats["deleted"] += 1

    async def _on_error(self, event) -> None:
        self.stats["errors"] += 1

    async def get_status(self) -> dict:
        status = await self.registry.get_status()
        status["events"] = dict(self.stats)
        status["bus"] = self.event_bus.get_stats()
        return status


async def main(config_path: Optional[str] = None):
    """Main entry point for the daemon."""
    try:
        if config_path:
            config = Config.load(Path(config_path))
        else:
            config = Config.load()
    except FileNotFoundError as e:
        setup_logging()
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(config.logging.level, config.logging.file or config.data_dir / "logs" / "daemon.log")

    daemon = VaultwatchDaemon(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: _request_stop(daemon, s))

    try:
        await daemon.start()
        await daemon.wait_stopped()
    except Exception as e:
        logger.exception(f"Daemon error: {e}")
    finally:
        await daemon.stop()


def _request_stop(daemon: VaultwatchDaemon, sig: int) -> None:
    logger.info(f"Received signal {sig}, shutting down...")
    asyncio.ensure_future(daemon.stop())


def run() -> None:
    """Console script entry point."""
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))


if __name__ == "__main__":
    run()
