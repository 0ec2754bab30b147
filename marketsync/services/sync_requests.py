"""Turning stock-change events and manual requests into queue items."""

import logging
import uuid
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.config import get_settings
from marketsync.core.enums import ListingStatus, Marketplace, SyncPriority, SyncType
from marketsync.integrations.events import StockChangeEvent
from marketsync.models.sync_queue import SyncQueueItem
from marketsync.services import listing_registry, sync_queue

logger = logging.getLogger(__name__)


async def handle_stock_change(db: AsyncSession, event: StockChangeEvent, settings=None) -> List[SyncQueueItem]:
    """
    Enqueue a normal-priority STOCK sync on every marketplace where the
    product/variant is listed. Marketplaces whose connection is not
    CONNECTED are skipped by ``sync_queue.enqueue``.
    """
    settings = settings or get_settings()
    listings = await listing_registry.list_listings(db, tenant_id=event.tenant_id, product_id=event.product_id)
    items = []
    for listing in listings:
        if listing.variant_id != event.variant_id or listing.status == ListingStatus.CLOSED:
            continue
        item = await sync_queue.enqueue(
            db,
            tenant_id=event.tenant_id,
            product_id=event.product_id,
            variant_id=event.variant_id,
            marketplace=listing.marketplace,
            sync_type=SyncType.STOCK,
            priority=SyncPriority.NORMAL,
            max_retries=settings.SYNC_MAX_RETRIES,
        )
        if item is not None:
            items.append(item)
    await db.commit()
    logger.debug("Stock change for product %s enqueued %s item(s)", event.product_id, len(items))
    return items


async def request_resync(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    product_id: uuid.UUID,
    marketplace: Optional[Marketplace] = None,
    sync_types=(SyncType.STOCK,),
    settings=None,
) -> List[SyncQueueItem]:
    """
    Manual resync: HIGH priority for every listing of the product.

    This is also the way to revive an item that ended FAILED, since a FAILED
    row no longer blocks the key.
    """
    settings = settings or get_settings()
    listings = await listing_registry.list_listings(
        db, tenant_id=tenant_id, marketplace=marketplace, product_id=product_id
    )
    items = []
    for listing in listings:
        for sync_type in sync_types:
            item = await sync_queue.enqueue(
                db,
                tenant_id=tenant_id,
                product_id=product_id,
                variant_id=listing.variant_id,
                marketplace=listing.marketplace,
                sync_type=sync_type,
                priority=SyncPriority.HIGH,
                max_retries=settings.SYNC_MAX_RETRIES,
            )
            if item is not None:
                items.append(item)
    await db.commit()
    logger.info("Manual resync of product %s enqueued %s item(s)", product_id, len(items))
    return items
