import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from marketsync.core.enums import Marketplace
from marketsync.core.exceptions import BaseServiceError, ValidationError
from marketsync.database import async_session
from marketsync.dependencies import get_adapters, get_collaborators, get_marketplace
from marketsync.schemas.webhook import MarketplaceNotification
from marketsync.services.listing_import import ListingImporter
from marketsync.services.order_importer import OrderImporter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def process_order_notification(marketplace: Marketplace, notification: MarketplaceNotification,
                                     adapters, order_sink):
    """Background half of the webhook: import the order in a fresh session."""
    async with async_session() as db:
        importer = OrderImporter(db, adapters, order_sink)
        try:
            await importer.handle_notification(marketplace, notification)
        except BaseServiceError as e:
            # The marketplace redelivers and the poller backfills; nothing else to do here
            logger.error("Processing %s notification %s failed: %s",
                         marketplace.value, notification.resource, e)
        except Exception:
            logger.exception("Unexpected error processing %s notification %s",
                             marketplace.value, notification.resource)


async def process_item_notification(marketplace: Marketplace, notification: MarketplaceNotification,
                                    adapters, catalog):
    """Background half of an item notification: mirror the item's status onto its listings."""
    async with async_session() as db:
        importer = ListingImporter(db, adapters, catalog)
        try:
            await importer.handle_notification(marketplace, notification)
        except BaseServiceError as e:
            logger.error("Processing %s notification %s failed: %s",
                         marketplace.value, notification.resource, e)
        except Exception:
            logger.exception("Unexpected error processing %s notification %s",
                             marketplace.value, notification.resource)


@router.post("/{marketplace}")
async def marketplace_notification(
    notification: MarketplaceNotification,
    background_tasks: BackgroundTasks,
    marketplace: Marketplace = Depends(get_marketplace),
    adapters=Depends(get_adapters),
    collaborators=Depends(get_collaborators),
):
    """Receive a marketplace notification; order and item topics are handled in the background"""
    adapter = adapters.get(marketplace)
    if adapter is None:
        raise HTTPException(status_code=404, detail=f"{marketplace.value} is not configured")

    try:
        order_id = OrderImporter.order_id_from_notification(adapter, notification)
        listing_id = ListingImporter.listing_id_from_notification(adapter, notification)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if order_id is not None:
        background_tasks.add_task(
            process_order_notification, marketplace, notification, adapters, collaborators.sales
        )
    elif listing_id is not None:
        background_tasks.add_task(
            process_item_notification, marketplace, notification, adapters, collaborators.catalog
        )
    else:
        return {"status": "ignored"}
    return {"status": "received"}
