"""
MochiMap Service

Composition root: builds the store, the emit sink, both ingestors, the peer
scanner and the query API from one ServiceConfig, starts them together and
shuts them down in order:

1. stop accepting file events (watchers), finishing the in-flight block
2. stop the peer scanner and clear its timers
3. stop the API
4. close the store last
"""

import asyncio
import json
import logging
import signal
from typing import Optional

from .api import EventBroadcaster, QueryApi
from .config import ServiceConfig
from .metrics import ServiceMetrics
from .network import GeoConfig, GeoLocator, PeerProtocol, PeerScanner
from .node_adapter import BlockIngestor, MempoolIngestor
from .storage import PostgresStore, Store


class MochiMapService:
    """
    Full ingestion service.

    Usage:
        service = MochiMapService(ServiceConfig.from_env(), protocol=protocol)
        await service.run_forever()
    """

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        store: Optional[Store] = None,
        protocol: Optional[PeerProtocol] = None,
        enable_api: bool = True,
    ):
        self.config = config or ServiceConfig()
        self.metrics = ServiceMetrics()
        self._logger = logging.getLogger("MochiMapService")

        self.store = store or PostgresStore(self.config.database)
        self.broadcaster = EventBroadcaster(self.config.api, self.metrics.stream)

        self.blocks = BlockIngestor(
            self.store,
            self.config.ingestor,
            emit=self.broadcaster.emit,
            watcher_config=self.config.watcher,
            metrics=self.metrics.blocks,
            watcher_metrics=self.metrics.block_watcher,
        )
        self.mempool = MempoolIngestor(
            self.store,
            self.config.ingestor,
            emit=self.broadcaster.emit,
            watcher_config=self.config.watcher,
            metrics=self.metrics.mempool,
            watcher_metrics=self.metrics.mempool_watcher,
        )

        self._protocol = protocol
        self.scanner: Optional[PeerScanner] = None
        if protocol is not None:
            geo = GeoLocator(GeoConfig(token=self.config.scanner.ipinfo_token))
            self.scanner = PeerScanner(
                protocol,
                self.config.scanner,
                emit=self.broadcaster.emit,
                geo=geo,
                metrics=self.metrics.scanner,
            )
        else:
            self._logger.warning("No peer protocol configured; network scanning disabled")

        self.api: Optional[QueryApi] = None
        if enable_api:
            self.api = QueryApi(
                self.store,
                self.broadcaster,
                self.scanner,
                self.config.api,
                status=self.metrics.to_dict,
            )

        self._metrics_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    async def start(self) -> None:
        self._logger.info("Starting MochiMap service")
        self.metrics.is_running = True

        await self.blocks.start()
        await self.mempool.start()
        if self.scanner:
            await self.scanner.start()
        if self.api:
            await self.api.start()

        if self.config.log_metrics_interval > 0:
            self._metrics_task = asyncio.create_task(self._metrics_log_loop())

    async def stop(self) -> None:
        self._logger.info("Stopping MochiMap service")
        self.metrics.is_running = False

        await self.blocks.stop()
        await self.mempool.stop()
        if self.scanner:
            await self.scanner.stop()
        if self._protocol:
            await self._protocol.close()
        if self.api:
            await self.api.stop()

        if self._metrics_task:
            self._metrics_task.cancel()
            await asyncio.gather(self._metrics_task, return_exceptions=True)
            self._metrics_task = None

        await self.store.close()
        self._logger.info("MochiMap service stopped")

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def run_forever(self) -> None:
        """Run until SIGINT/SIGTERM or request_stop()."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                pass

        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    async def _metrics_log_loop(self) -> None:
        """Periodically log metrics."""
        while self.metrics.is_running:
            try:
                await asyncio.sleep(self.config.log_metrics_interval)
                self._logger.info(f"Metrics: {json.dumps(self.metrics.to_dict())}")
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.debug(f"Metrics logging failed: {e}")


async def import_archive(
    config: ServiceConfig,
    directory: str,
    store: Optional[Store] = None,
) -> BlockIngestor:
    """
    Replay every block file in `directory` into the store.

    Uses a scan-only watcher so the directory is listed once and nothing is
    left watching afterwards. Returns the ingestor for its metrics.
    """
    logger = logging.getLogger("ArchiveImport")
    store = store or PostgresStore(config.database)
    ingestor = BlockIngestor(
        store,
        config.ingestor,
        watcher_config=config.watcher,
        target=directory,
        scan_only=True,
    )
    try:
        await ingestor.start()
        await ingestor.drain()
        logger.info(
            f"Imported {ingestor.metrics.blocks_processed} blocks from {directory} "
            f"({ingestor.metrics.blocks_rejected} rejected, {ingestor.metrics.persist_errors} failed)"
        )
    finally:
        await ingestor.stop()
        await store.close()
    return ingestor
