import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI

from .broker import Broker, EventPublisher, Topology, create_broker
from .config import Settings
from .conflicts import ConflictDetector
from .context import ConfigResolver
from .crypto import CredentialCipher
from .database import DatabaseManager
from .hooks import OutboundSyncHooks, OutboxSweeper
from .ledger import EventLedger
from .mapping import MappingRepository
from .models import ChannelContext, Direction
from .webhooks import WebhookIngest, router
from .workers import BaseConsumer, create_worker

logger = logging.getLogger(__name__)

app = FastAPI(title="Channel Sync Server", version="1.0")
app.include_router(router)


class SyncRuntime:
    """Everything one process needs to ingest, publish and consume sync events."""

    def __init__(self, settings: Settings, broker: Optional[Broker] = None):
        self.settings = settings
        self.db_manager = DatabaseManager(settings)
        self.broker = broker or create_broker(settings)
        self.ledger = EventLedger(self.db_manager, max_attempts=settings.worker.max_retries)
        self.publisher = EventPublisher(self.broker, self.ledger)
        self.cipher = CredentialCipher(settings.encryption_key) if settings.encryption_key else None
        self.resolver = ConfigResolver(self.db_manager, self.cipher)
        self.mappings = MappingRepository()
        self.ingest = WebhookIngest(settings.property_id, self.resolver, self.ledger, self.publisher)
        self.sweeper = OutboxSweeper(self.ledger, self.publisher, settings.outbox)
        self.sweep_task: Optional[asyncio.Task] = None
        self.workers: List[BaseConsumer] = []
        self.worker_tasks: List[asyncio.Task] = []
        self.logger = logger.getChild('runtime')

    def integrations(self) -> List[str]:
        with self.db_manager.get_session() as session:
            configs = self.db_manager.get_channel_configs(session, self.settings.property_id)
            return [c.channel for c in configs]

    def context(self, channel: str) -> ChannelContext:
        return self.resolver.resolve(self.settings.property_id, channel)

    def hooks(self, channel: str) -> OutboundSyncHooks:
        return OutboundSyncHooks(self.context(channel), self.db_manager, self.ledger, self.publisher)

    def conflict_detector(self) -> ConflictDetector:
        return ConflictDetector(self.settings, self.db_manager, ledger=self.ledger, publisher=self.publisher)

    def worker(self, direction: Direction, channel: str) -> BaseConsumer:
        return create_worker(
            direction, self.context(channel), self.settings, self.broker, self.ledger, self.db_manager
        )

    async def start(self, sweep: bool = True, embedded_workers: bool = False) -> None:
        """Create tables, declare topologies and start background tasks.

        Args:
            sweep: Run the outbox sweeper
            embedded_workers: Consume both queues of every integration in
                this process (needed with the in-memory broker)
        """
        self.db_manager.init_db()
        for integration in self.integrations():
            await self.broker.declare_topology(Topology(integration))
            if embedded_workers:
                for direction in (Direction.INBOUND, Direction.OUTBOUND):
                    worker = self.worker(direction, integration)
                    self.workers.append(worker)
                    self.worker_tasks.append(asyncio.create_task(worker.run()))

        if sweep:
            self.sweep_task = asyncio.create_task(self.sweeper.run())
        self.logger.info(f"Runtime started ({len(self.workers)} embedded workers)")

    async def stop(self) -> None:
        self.sweeper.stop()
        for worker in self.workers:
            worker.stop()

        tasks = [t for t in [self.sweep_task, *self.worker_tasks] if t is not None]
        if tasks:
            await asyncio.wait(tasks, timeout=self.settings.worker.consume_timeout_seconds + 1)
        for task in tasks:
            if not task.done():
                task.cancel()
        await self.broker.close()
        self.logger.info("Runtime stopped")

    async def health(self) -> Dict[str, Any]:
        queues = {}
        for integration in self.integrations():
            topology = Topology(integration)
            for queue in topology.queues:
                queues[queue] = {
                    'depth': await self.broker.queue_depth(queue),
                    'dead_letters': len(await self.broker.list_dead_letters(queue)),
                }
        last_sweep = self.sweeper.last_sweep
        return {
            'ok': True,
            'property_id': self.settings.property_id,
            'queues': queues,
            'outbox': {
                'last_sweep': last_sweep.isoformat() if last_sweep else None,
                'last_published': self.sweeper.last_published,
                'pending': len(self.ledger.pending_publish(limit=1000)),
            },
        }


@app.on_event("startup")
async def on_startup():
    settings = Settings()
    settings.ensure_directories()
    runtime = SyncRuntime(settings)
    await runtime.start(embedded_workers=settings.uses_memory_broker)
    app.state.settings = settings
    app.state.runtime = runtime
    app.state.ingest = runtime.ingest


@app.on_event("shutdown")
async def on_shutdown():
    runtime: SyncRuntime = app.state.runtime
    await runtime.stop()


@app.get("/health")
async def health():
    runtime: SyncRuntime = app.state.runtime
    return await runtime.health()
