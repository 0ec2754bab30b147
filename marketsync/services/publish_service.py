import logging
import uuid
from typing import Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.config import get_settings
from marketsync.core.crypto import TokenCipher
from marketsync.core.enums import Marketplace, SyncPriority, SyncType
from marketsync.integrations.base import MarketplaceAdapter
from marketsync.integrations.collaborators import CatalogProvider
from marketsync.models.listing import MarketplaceListing
from marketsync.services import listing_registry, sync_queue
from marketsync.services.connection_store import ConnectionStore

logger = logging.getLogger(__name__)


class PublishService:
    """
    Publishes a product on a marketplace.

    The listing is created with quantity 0; the real quantity follows through
    a high-priority STOCK sync so the safety margin is applied in one place.
    """

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

    async def publish_product(
        self,
        tenant_id: uuid.UUID,
        marketplace: Marketplace,
        product_id: uuid.UUID,
        variant_id: Optional[uuid.UUID] = None,
        pictures: Sequence[bytes] = (),
    ) -> List[MarketplaceListing]:
        """
        Publish a product and return its listings.

        A product with variants becomes one item with a variation per
        variant (a listing each). Passing ``variant_id`` publishes that
        variant on its own.
        """
        marketplace = Marketplace(marketplace)
        if variant_id is None:
            existing = await listing_registry.list_listings(
                self.db, tenant_id=tenant_id, marketplace=marketplace, product_id=product_id,
            )
        else:
            listing = await listing_registry.get_listing(
                self.db, tenant_id=tenant_id, product_id=product_id,
                variant_id=variant_id, marketplace=marketplace,
            )
            existing = [listing] if listing is not None else []
        if existing:
            logger.info("Product %s already listed on %s as %s; nothing to publish",
                        product_id, marketplace.value, existing[0].listing_id)
            return existing

        adapter = self.connections.adapter_for(marketplace)
        ctx = await self.connections.get_context(tenant_id, marketplace)
        product = await self.catalog.get_product(tenant_id, product_id)
        variants = [] if variant_id is not None else await self.catalog.get_variants(tenant_id, product_id)

        picture_ids = []
        for index, content in enumerate(pictures):
            picture_ids.append(await adapter.upload_picture(ctx, content, filename=f"{product_id}-{index}.jpg"))

        if variants:
            listings = await listing_registry.publish_variations(
                self.db, adapter, ctx, product=product, variants=variants, picture_ids=picture_ids,
            )
        else:
            listings = [await listing_registry.publish_listing(
                self.db, adapter, ctx,
                product=product, variant_id=variant_id, quantity=0, picture_ids=picture_ids,
            )]
        for listing in listings:
            await sync_queue.enqueue(
                self.db,
                tenant_id=tenant_id,
                product_id=product_id,
                variant_id=listing.variant_id,
                marketplace=marketplace,
                sync_type=SyncType.STOCK,
                priority=SyncPriority.HIGH,
                max_retries=self.settings.SYNC_MAX_RETRIES,
            )
        await self.db.commit()
        logger.info("Published product %s on %s as %s (%s listings)",
                    product_id, marketplace.value, listings[0].listing_id if listings else None, len(listings))
        return listings
