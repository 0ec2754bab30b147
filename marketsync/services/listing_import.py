"""
Listings that already exist on a marketplace.

``ListingImporter`` previews a seller's items, links chosen ones to catalog
products (creating the products through the catalog service) and keeps
linked items' status current from item notifications. Importing never
pushes stock: a product the catalog just created has no inventory yet.
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.config import get_settings
from marketsync.core.crypto import TokenCipher
from marketsync.core.enums import Marketplace
from marketsync.core.exceptions import BaseServiceError, ListingNotFoundError, MarketplaceAPIError, ValidationError
from marketsync.integrations.base import MarketplaceAdapter, RemoteListing
from marketsync.integrations.collaborators import CatalogProvider, ProductImport, VariantImport
from marketsync.models.listing import MarketplaceListing
from marketsync.schemas.marketplace import ImportListingsResponse, RemoteListingPreview
from marketsync.schemas.webhook import MarketplaceNotification
from marketsync.services import listing_registry
from marketsync.services.connection_store import ConnectionStore

logger = logging.getLogger(__name__)


def product_import_from(remote: RemoteListing) -> ProductImport:
    """Catalog product for a marketplace item; items without a SKU use their listing id."""
    title = remote.title or remote.listing_id
    return ProductImport(
        name=title,
        sku=remote.sku or remote.listing_id,
        price=remote.price,
        variants=[
            VariantImport(
                external_variation_id=variation.variation_id,
                name=" - ".join([title, *variation.attributes.values()]),
                sku=variation.sku,
                price=variation.price,
                attributes=variation.attributes,
            )
            for variation in remote.variations
        ],
    )


class ListingImporter:
    def __init__(
        self,
        db: AsyncSession,
        adapters: Dict[Marketplace, MarketplaceAdapter],
        catalog: CatalogProvider,
        settings=None,
        cipher: Optional[TokenCipher] = None,
    ):
        self.db = db
        self.catalog = catalog
        self.settings = settings or get_settings()
        self.connections = ConnectionStore(db, adapters, cipher=cipher, settings=self.settings)

    async def preview(self, tenant_id: uuid.UUID, marketplace: Marketplace) -> List[RemoteListingPreview]:
        """Active items of the seller, flagging the ones already linked to a product"""
        marketplace = Marketplace(marketplace)
        adapter = self.connections.adapter_for(marketplace)
        ctx = await self.connections.get_context(tenant_id, marketplace)
        listing_ids = await adapter.list_seller_listings(ctx)
        linked = await listing_registry.linked_listing_ids(
            self.db, tenant_id=tenant_id, marketplace=marketplace, listing_ids=listing_ids,
        )

        previews = []
        for listing_id in listing_ids:
            try:
                remote = await adapter.get_listing(ctx, listing_id)
            except MarketplaceAPIError as e:
                logger.error("Could not load %s listing %s for preview: %s", marketplace.value, listing_id, e)
                continue
            previews.append(RemoteListingPreview(
                listing_id=remote.listing_id,
                title=remote.title,
                sku=remote.sku,
                price=remote.price,
                quantity=remote.quantity,
                status=remote.status,
                thumbnail=remote.thumbnail,
                has_variations=bool(remote.variations),
                already_imported=listing_id in linked,
            ))
        return previews

    async def import_listings(self, tenant_id: uuid.UUID, marketplace: Marketplace,
                              listing_ids: Sequence[str]) -> ImportListingsResponse:
        """
        Link each item to a catalog product, one commit per item. Items
        already linked are skipped; a failing item is reported and the
        rest carry on.
        """
        marketplace = Marketplace(marketplace)
        adapter = self.connections.adapter_for(marketplace)
        ctx = await self.connections.get_context(tenant_id, marketplace)
        listing_ids = list(dict.fromkeys(str(listing_id) for listing_id in listing_ids))
        linked = await listing_registry.linked_listing_ids(
            self.db, tenant_id=tenant_id, marketplace=marketplace, listing_ids=listing_ids,
        )

        summary = ImportListingsResponse()
        for listing_id in listing_ids:
            if listing_id in linked:
                summary.skipped += 1
                continue
            try:
                remote = await adapter.get_listing(ctx, listing_id)
                product = await asyncio.wait_for(
                    self.catalog.import_product(tenant_id, product_import_from(remote)),
                    timeout=self.settings.COLLABORATOR_TIMEOUT,
                )
                listings = await listing_registry.link_remote_listing(
                    self.db, tenant_id=tenant_id, marketplace=marketplace, remote=remote, product=product,
                )
                await self.db.commit()
            except (BaseServiceError, asyncio.TimeoutError) as e:
                await self.db.rollback()
                logger.error("Importing %s listing %s failed: %s", marketplace.value, listing_id, e)
                summary.errors.append(f"{listing_id}: {str(e) or type(e).__name__}")
                continue
            summary.imported += 1
            logger.info("Imported %s listing %s as product %s (%s rows)",
                        marketplace.value, listing_id, product.product_id, len(listings))
        return summary

    async def refresh_listing(self, tenant_id: uuid.UUID, marketplace: Marketplace,
                              listing_id: str) -> List[MarketplaceListing]:
        marketplace = Marketplace(marketplace)
        adapter = self.connections.adapter_for(marketplace)
        ctx = await self.connections.get_context(tenant_id, marketplace)
        listings = await listing_registry.refresh_listing_status(self.db, adapter, ctx, listing_id)
        await self.db.commit()
        return listings

    # ------------------------------------------------------------------
    # Webhook entry point
    # ------------------------------------------------------------------
    @staticmethod
    def listing_id_from_notification(adapter: MarketplaceAdapter,
                                     notification: MarketplaceNotification) -> Optional[str]:
        """
        Listing id carried by a notification, or None for other topics.
        Raises ValidationError for an item topic with a malformed resource.
        """
        if not adapter.is_item_topic(notification.topic):
            return None
        listing_id = adapter.listing_id_from_resource(notification.resource)
        if listing_id is None:
            raise ValidationError(f"Unrecognised item resource: {notification.resource!r}")
        return listing_id

    async def handle_notification(self, marketplace: Marketplace,
                                  notification: MarketplaceNotification) -> List[MarketplaceListing]:
        marketplace = Marketplace(marketplace)
        adapter = self.connections.adapter_for(marketplace)
        listing_id = self.listing_id_from_notification(adapter, notification)
        if listing_id is None:
            return []

        connection = await self.connections.find_by_external_user(marketplace, str(notification.user_id))
        if connection is None:
            logger.warning("No %s connection for marketplace user %s; dropping item %s",
                           marketplace.value, notification.user_id, listing_id)
            return []

        try:
            return await self.refresh_listing(connection.tenant_id, marketplace, listing_id)
        except ListingNotFoundError:
            logger.info("Item %s is not linked to a product; ignoring notification", listing_id)
            return []
