import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.enums import Marketplace, OrderStatus, SyncStatus
from marketsync.core.exceptions import BaseServiceError
from marketsync.dependencies import (
    get_adapters,
    get_collaborators,
    get_db,
    get_marketplace,
    get_tenant_id,
    http_error,
)
from marketsync.integrations.events import StockChangeEvent
from marketsync.schemas.marketplace import (
    ImportListingsRequest,
    ImportListingsResponse,
    ListingRead,
    MarketplaceOrderRead,
    PublishRequest,
    QueueSummary,
    RemoteListingPreview,
    ResyncRequest,
    ResyncResponse,
    StockChangeRequest,
    SyncLogEntryRead,
    SyncQueueItemRead,
)
from marketsync.services import listing_registry, sync_log, sync_queue, sync_requests
from marketsync.services.listing_import import ListingImporter
from marketsync.services.order_importer import OrderImporter
from marketsync.services.publish_service import PublishService

router = APIRouter(prefix="/api", tags=["sync"])


@router.post("/marketplaces/{marketplace}/publish", response_model=List[ListingRead])
async def publish_product(
    body: PublishRequest,
    marketplace: Marketplace = Depends(get_marketplace),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    adapters=Depends(get_adapters),
    collaborators=Depends(get_collaborators),
):
    """Publish a product; one listing per variant when it has variants"""
    service = PublishService(db, adapters, collaborators.catalog)
    try:
        listings = await service.publish_product(tenant_id, marketplace, body.product_id, body.variant_id)
    except BaseServiceError as e:
        raise http_error(e)
    return [ListingRead.from_orm_model(listing) for listing in listings]


@router.get("/marketplaces/{marketplace}/remote-listings", response_model=List[RemoteListingPreview])
async def preview_remote_listings(
    marketplace: Marketplace = Depends(get_marketplace),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    adapters=Depends(get_adapters),
    collaborators=Depends(get_collaborators),
):
    """The seller's active items on the marketplace, for choosing what to import"""
    importer = ListingImporter(db, adapters, collaborators.catalog)
    try:
        return await importer.preview(tenant_id, marketplace)
    except BaseServiceError as e:
        raise http_error(e)


@router.post("/marketplaces/{marketplace}/listings/import", response_model=ImportListingsResponse)
async def import_listings(
    body: ImportListingsRequest,
    marketplace: Marketplace = Depends(get_marketplace),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    adapters=Depends(get_adapters),
    collaborators=Depends(get_collaborators),
):
    importer = ListingImporter(db, adapters, collaborators.catalog)
    try:
        return await importer.import_listings(tenant_id, marketplace, body.listing_ids)
    except BaseServiceError as e:
        raise http_error(e)


@router.post("/marketplaces/{marketplace}/listings/{listing_id}/refresh", response_model=List[ListingRead])
async def refresh_listing(
    listing_id: str,
    marketplace: Marketplace = Depends(get_marketplace),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    adapters=Depends(get_adapters),
    collaborators=Depends(get_collaborators),
):
    """Re-read a linked item's status from the marketplace"""
    importer = ListingImporter(db, adapters, collaborators.catalog)
    try:
        listings = await importer.refresh_listing(tenant_id, marketplace, listing_id)
    except BaseServiceError as e:
        raise http_error(e)
    return [ListingRead.from_orm_model(listing) for listing in listings]


@router.get("/marketplaces/{marketplace}/orders", response_model=List[MarketplaceOrderRead])
async def list_orders(
    marketplace: Marketplace = Depends(get_marketplace),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    status: Optional[OrderStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    adapters=Depends(get_adapters),
    collaborators=Depends(get_collaborators),
):
    importer = OrderImporter(db, adapters, collaborators.sales)
    orders = await importer.list_orders(tenant_id, marketplace, status=status, limit=limit)
    return [MarketplaceOrderRead.from_orm_model(order) for order in orders]


@router.get("/marketplaces/{marketplace}/listings", response_model=List[ListingRead])
async def list_listings(
    marketplace: Marketplace = Depends(get_marketplace),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    product_id: Optional[uuid.UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    listings = await listing_registry.list_listings(
        db, tenant_id=tenant_id, marketplace=marketplace, product_id=product_id
    )
    return [ListingRead.from_orm_model(listing) for listing in listings]


@router.post("/sync/resync", response_model=ResyncResponse)
async def manual_resync(
    body: ResyncRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """High-priority stock resync of a product on every marketplace it is listed on"""
    items = await sync_requests.request_resync(db, tenant_id=tenant_id, product_id=body.product_id)
    return ResyncResponse(enqueued=len(items))


@router.post("/sync/stock-events", response_model=ResyncResponse)
async def stock_changed(
    body: StockChangeRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Called by the inventory module whenever sellable quantity changes"""
    event = StockChangeEvent(tenant_id=tenant_id, product_id=body.product_id, variant_id=body.variant_id)
    items = await sync_requests.handle_stock_change(db, event)
    return ResyncResponse(enqueued=len(items))


@router.get("/sync/queue", response_model=List[SyncQueueItemRead])
async def queue_items(
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    status: Optional[SyncStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    items = await sync_queue.list_items(db, tenant_id=tenant_id, status=status, limit=limit)
    return [SyncQueueItemRead.from_orm_model(item) for item in items]


@router.get("/sync/queue/summary", response_model=QueueSummary)
async def queue_summary(
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return QueueSummary(counts=await sync_queue.count_by_status(db, tenant_id=tenant_id))


@router.get("/sync/log", response_model=List[SyncLogEntryRead])
async def sync_history(
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    product_id: Optional[uuid.UUID] = Query(None),
    status: Optional[SyncStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    entries = await sync_log.history(db, tenant_id=tenant_id, product_id=product_id, status=status, limit=limit)
    return [SyncLogEntryRead.from_orm_model(entry) for entry in entries]
