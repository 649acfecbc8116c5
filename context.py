"""
Explicit application context threaded through the orchestrator and handlers.
"""

from dataclasses import dataclass

from config import Settings
from managers import WorkerPool
from models import PendingConversion, PendingLink
from storage import Database
from subscriptions import SubscriptionLedger
from tasks import TaskStore
from tokens import TokenRegistry, conversion_registry, link_registry


@dataclass
class AppContext:
    settings: Settings
    db: Database
    pool: WorkerPool
    ledger: SubscriptionLedger
    links: TokenRegistry[PendingLink]
    conversions: TokenRegistry[PendingConversion]
    tasks: TaskStore

    async def close(self) -> None:
        await self.pool.stop()
        await self.db.close()


async def build_context(settings: Settings) -> AppContext:
    """Open the database and wire stores and the worker pool. Needs a running loop."""
    db = await Database(settings.database_path).connect()
    return AppContext(
        settings=settings,
        db=db,
        pool=WorkerPool(settings.worker_pool_size),
        ledger=SubscriptionLedger(db),
        links=link_registry(db, settings.token_ttl_seconds),
        conversions=conversion_registry(db, settings.token_ttl_seconds),
        tasks=TaskStore(db, dedup_scope=settings.dedup_scope),
    )
