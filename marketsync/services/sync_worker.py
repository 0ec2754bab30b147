"""
Claim-process-commit loop for the sync queue.

Each worker claims a batch, then reconciles the items one by one. An item's
outcome never affects the rest of the batch: every exception is caught,
classified, fed into ``sync_queue.mark_failure`` and written to the sync log.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.config import get_settings
from marketsync.core.crypto import TokenCipher
from marketsync.core.enums import ConnectionStatus, Marketplace, SyncStatus, SyncType
from marketsync.core.exceptions import (
    ConnectionUnavailableError,
    ValidationError,
    is_authorization_failure,
    is_transient,
)
from marketsync.integrations.base import ConnectionContext, MarketplaceAdapter
from marketsync.integrations.collaborators import CatalogProvider, InventoryProvider, ProductInfo
from marketsync.models.sync_queue import SyncQueueItem
from marketsync.services import listing_registry, sync_log, sync_queue
from marketsync.services.connection_store import ConnectionStore
from marketsync.services.safety_margin import SafetyMarginResolver, published_quantity

logger = logging.getLogger(__name__)

_OUTCOME_COUNTERS = {
    SyncStatus.SUCCESS: "success",
    SyncStatus.ERROR: "error",
    SyncStatus.FAILED: "failed",
}


@dataclass
class SyncOutcome:
    old_value: Optional[object] = None
    new_value: Optional[object] = None
    listing_id: Optional[str] = None
    note: Optional[str] = None


class SyncWorker:
    def __init__(
        self,
        session_factory,
        adapters: Dict[Marketplace, MarketplaceAdapter],
        inventory: InventoryProvider,
        catalog: CatalogProvider,
        settings=None,
        cipher: Optional[TokenCipher] = None,
        name: str = "sync-worker",
    ):
        self.session_factory = session_factory
        self.adapters = adapters
        self.inventory = inventory
        self.catalog = catalog
        self.settings = settings or get_settings()
        self.cipher = cipher or TokenCipher.from_settings(self.settings)
        self.name = name

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    async def run_batch(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Claim one batch and process it. Returns counts per outcome."""
        stats = {"claimed": 0, "success": 0, "error": 0, "failed": 0}
        async with self.session_factory() as db:
            items = await sync_queue.claim_batch(db, limit or self.settings.SYNC_BATCH_SIZE)
            await db.commit()
            stats["claimed"] = len(items)
            item_ids = [item.id for item in items]

            for item_id in item_ids:
                try:
                    # A failed item rolls the session back, which expires every claimed row
                    item = await db.get(SyncQueueItem, item_id, populate_existing=True)
                    outcome = await self.process_item(db, item)
                    stats[_OUTCOME_COUNTERS[outcome]] += 1
                except Exception:
                    # Bookkeeping itself failed (e.g. database gone); the reaper will recover the claim
                    logger.exception("%s could not record outcome for queue item %s", self.name, item_id)
                    await db.rollback()

        if stats["claimed"]:
            logger.info("%s processed batch: %s", self.name, stats)
        return stats

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        logger.info("%s started (batch=%s, poll=%ss)", self.name,
                    self.settings.SYNC_BATCH_SIZE, self.settings.SYNC_POLL_INTERVAL)
        while not stop_event.is_set():
            try:
                stats = await self.run_batch()
            except Exception:
                logger.exception("%s batch failed", self.name)
                stats = {"claimed": 0}

            if stats["claimed"] == 0:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.settings.SYNC_POLL_INTERVAL)
                except asyncio.TimeoutError:
                    pass
        logger.info("%s stopped", self.name)

    # ------------------------------------------------------------------
    # One item
    # ------------------------------------------------------------------
    async def process_item(self, db: AsyncSession, item: SyncQueueItem) -> SyncStatus:
        """Reconcile one claimed item. Returns SUCCESS, ERROR (will retry) or FAILED."""
        item_id = item.id
        try:
            outcome = await self._reconcile(db, item)
            await sync_queue.mark_success(db, item)
            await sync_log.record_attempt(
                db, item,
                status=SyncStatus.SUCCESS,
                old_value=outcome.old_value,
                new_value=outcome.new_value,
                listing_id=outcome.listing_id,
                error_message=outcome.note,
            )
            await db.commit()
            logger.info("Queue item %s %s sync ok: %s -> %s%s", item_id, item.sync_type.value,
                        outcome.old_value, outcome.new_value,
                        f" ({outcome.note})" if outcome.note else "")
            return SyncStatus.SUCCESS
        except Exception as e:
            return await self._handle_failure(db, item_id, e)

    async def _handle_failure(self, db: AsyncSession, item_id: int, error: Exception) -> SyncStatus:
        await db.rollback()
        item = await db.get(SyncQueueItem, item_id, populate_existing=True)
        if item is None:
            logger.error("Queue item %s vanished while handling failure: %s", item_id, error)
            return SyncStatus.FAILED
        message = f"{type(error).__name__}: {error}"
        permanent = not is_transient(error)

        if is_authorization_failure(error):
            store = ConnectionStore(db, self.adapters, cipher=self.cipher, settings=self.settings)
            connection = await store.get(item.tenant_id, item.marketplace)
            if connection is not None and connection.status == ConnectionStatus.CONNECTED:
                await store.mark_error(connection, str(error))

        status = await sync_queue.mark_failure(
            db, item, message,
            permanent=permanent,
            retry_base_delay=self.settings.SYNC_RETRY_BASE_DELAY,
            retry_max_delay=self.settings.SYNC_RETRY_MAX_DELAY,
        )
        # A retried attempt is an ERROR in the log; the queue item itself is back to PENDING
        attempt_status = SyncStatus.FAILED if status == SyncStatus.FAILED else SyncStatus.ERROR
        await sync_log.record_attempt(db, item, status=attempt_status, error_message=message)
        await db.commit()
        log = logger.warning if status == SyncStatus.FAILED else logger.info
        log("Queue item %s %s (%s): %s", item_id,
            "failed" if status == SyncStatus.FAILED else "will retry",
            "permanent" if permanent else "transient", message)
        return attempt_status

    async def _reconcile(self, db: AsyncSession, item: SyncQueueItem) -> SyncOutcome:
        marketplace = Marketplace(item.marketplace)
        adapter = self.adapters.get(marketplace)
        if adapter is None:
            raise ValidationError(f"No adapter registered for {marketplace.value}")

        store = ConnectionStore(db, self.adapters, cipher=self.cipher, settings=self.settings)
        connection = await store.get(item.tenant_id, marketplace)
        if connection is None or connection.status != ConnectionStatus.CONNECTED:
            state = connection.status.value if connection else "missing"
            raise ConnectionUnavailableError(f"{marketplace.value} connection is {state}")
        ctx = await store.get_context(item.tenant_id, marketplace)

        product = await self._with_timeout(self.catalog.get_product(item.tenant_id, item.product_id))
        if item.sync_type == SyncType.PRICE:
            return await self._sync_price(db, adapter, ctx, item, product)
        return await self._sync_stock(db, adapter, ctx, item, product)

    async def _with_timeout(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.settings.COLLABORATOR_TIMEOUT)

    async def _target_quantity(self, db, item: SyncQueueItem, product: ProductInfo) -> int:
        available = await self._with_timeout(
            self.inventory.get_sellable_quantity(item.tenant_id, item.product_id, item.variant_id)
        )
        resolver = SafetyMarginResolver(db, self.catalog, settings=self.settings)
        margin = await resolver.resolve(item.tenant_id, item.marketplace, item.product_id, product.category_id)
        quantity = published_quantity(available, margin)
        logger.debug("Product %s: available=%s margin=%s%% published=%s",
                     item.product_id, available, margin, quantity)
        return quantity

    async def _target_price(self, item: SyncQueueItem, product: ProductInfo) -> Decimal:
        """The variant's own price when it has one, otherwise the product's"""
        if item.variant_id is not None:
            variants = await self._with_timeout(self.catalog.get_variants(item.tenant_id, item.product_id))
            for variant in variants:
                if variant.variant_id == item.variant_id and variant.price is not None:
                    return Decimal(str(variant.price))
        return Decimal(str(product.price))

    async def _listing_or_publish(self, db, adapter, ctx: ConnectionContext, item, product, quantity):
        listing = await listing_registry.get_listing(
            db, tenant_id=item.tenant_id, product_id=item.product_id,
            variant_id=item.variant_id, marketplace=item.marketplace,
        )
        if listing is not None:
            return listing, False
        listing = await listing_registry.publish_listing(
            db, adapter, ctx, product=product, variant_id=item.variant_id, quantity=quantity,
        )
        return listing, True

    async def _sync_stock(self, db, adapter, ctx, item, product) -> SyncOutcome:
        quantity = await self._target_quantity(db, item, product)
        listing, created = await self._listing_or_publish(db, adapter, ctx, item, product, quantity)
        if created:
            return SyncOutcome(None, quantity, listing.listing_id, "Listing created")

        old_quantity = listing.quantity
        if old_quantity == quantity:
            listing_registry.apply_remote_state(listing)
            return SyncOutcome(old_quantity, quantity, listing.listing_id, "Quantity unchanged")

        remote = await adapter.update_quantity(ctx, listing.listing_id, quantity, listing.external_variation_id)
        listing_registry.apply_remote_state(listing, remote, quantity=quantity)
        return SyncOutcome(old_quantity, quantity, listing.listing_id)

    async def _sync_price(self, db, adapter, ctx, item, product) -> SyncOutcome:
        price = await self._target_price(item, product)
        listing = await listing_registry.get_listing(
            db, tenant_id=item.tenant_id, product_id=item.product_id,
            variant_id=item.variant_id, marketplace=item.marketplace,
        )
        if listing is None:
            quantity = await self._target_quantity(db, item, product)
            listing, _ = await self._listing_or_publish(db, adapter, ctx, item, product, quantity)
            return SyncOutcome(None, price, listing.listing_id, "Listing created")

        old_price = listing.price
        if old_price is not None and Decimal(str(old_price)) == price:
            listing_registry.apply_remote_state(listing)
            return SyncOutcome(old_price, price, listing.listing_id, "Price unchanged")

        remote = await adapter.update_price(ctx, listing.listing_id, price, listing.external_variation_id)
        listing_registry.apply_remote_state(listing, remote, price=price)
        return SyncOutcome(old_price, price, listing.listing_id)


class SyncWorkerPool:
    """Fixed number of SyncWorker loops running as asyncio tasks."""

    def __init__(self, worker_factory, size: int = 2):
        self.worker_factory = worker_factory
        self.size = max(1, size)
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        for index in range(self.size):
            worker = self.worker_factory(f"sync-worker-{index + 1}")
            self._tasks.append(asyncio.create_task(worker.run_forever(self._stop)))
        logger.info("Started %s sync worker(s)", self.size)

    async def stop(self, timeout: float = 30.0) -> None:
        if not self._tasks:
            return
        self._stop.set()
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Sync workers stopped")
