"""Mapping between internal products/variants and marketplace listings."""

import logging
import uuid
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.enums import ListingStatus, Marketplace
from marketsync.core.exceptions import ListingNotFoundError
from marketsync.core.utils import utc_now
from marketsync.integrations.base import (
    ConnectionContext,
    ListingDraft,
    MarketplaceAdapter,
    RemoteListing,
    RemoteVariation,
    VariationDraft,
)
from marketsync.integrations.collaborators import ImportedProduct, ProductInfo, VariantInfo
from marketsync.models.listing import MarketplaceListing, variant_key

logger = logging.getLogger(__name__)


async def get_listing(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    product_id: uuid.UUID,
    variant_id: Optional[uuid.UUID],
    marketplace: Marketplace,
) -> Optional[MarketplaceListing]:
    stmt = select(MarketplaceListing).where(
        MarketplaceListing.tenant_id == tenant_id,
        MarketplaceListing.product_id == product_id,
        MarketplaceListing.variant_key == variant_key(variant_id),
        MarketplaceListing.marketplace == Marketplace(marketplace),
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def _rows_for_listing(db: AsyncSession, tenant_id: uuid.UUID, marketplace: Marketplace,
                            listing_id: str) -> List[MarketplaceListing]:
    stmt = select(MarketplaceListing).where(
        MarketplaceListing.tenant_id == tenant_id,
        MarketplaceListing.marketplace == Marketplace(marketplace),
        MarketplaceListing.listing_id == str(listing_id),
    ).order_by(MarketplaceListing.id)
    return list((await db.execute(stmt)).scalars().all())


async def find_by_external_id(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    marketplace: Marketplace,
    listing_id: str,
    variation_id: Optional[str] = None,
) -> Optional[MarketplaceListing]:
    """Resolve a marketplace item (and variation, when given) back to the internal listing."""
    listings = await _rows_for_listing(db, tenant_id, marketplace, listing_id)
    if variation_id is not None:
        for listing in listings:
            if listing.external_variation_id == str(variation_id):
                return listing
    return listings[0] if listings else None


async def linked_listing_ids(
    db: AsyncSession, *, tenant_id: uuid.UUID, marketplace: Marketplace, listing_ids: Iterable[str]
) -> Set[str]:
    """The subset of ``listing_ids`` already linked to a product."""
    listing_ids = [str(listing_id) for listing_id in listing_ids]
    if not listing_ids:
        return set()
    stmt = select(MarketplaceListing.listing_id).where(
        MarketplaceListing.tenant_id == tenant_id,
        MarketplaceListing.marketplace == Marketplace(marketplace),
        MarketplaceListing.listing_id.in_(listing_ids),
    )
    return set((await db.execute(stmt)).scalars().all())


async def list_listings(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    marketplace: Optional[Marketplace] = None,
    product_id: Optional[uuid.UUID] = None,
) -> List[MarketplaceListing]:
    stmt = select(MarketplaceListing).where(MarketplaceListing.tenant_id == tenant_id)
    if marketplace is not None:
        stmt = stmt.where(MarketplaceListing.marketplace == Marketplace(marketplace))
    if product_id is not None:
        stmt = stmt.where(MarketplaceListing.product_id == product_id)
    stmt = stmt.order_by(MarketplaceListing.id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def listed_variants(
    db: AsyncSession, *, tenant_id: uuid.UUID, marketplace: Marketplace
) -> List[Tuple[uuid.UUID, Optional[uuid.UUID]]]:
    """Distinct (product_id, variant_id) pairs listed on a marketplace, excluding closed listings."""
    stmt = (
        select(MarketplaceListing.product_id, MarketplaceListing.variant_id)
        .where(
            MarketplaceListing.tenant_id == tenant_id,
            MarketplaceListing.marketplace == Marketplace(marketplace),
            MarketplaceListing.status != ListingStatus.CLOSED,
        )
        .distinct()
    )
    rows = (await db.execute(stmt)).all()
    return [(row[0], row[1]) for row in rows]


async def register_listing(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    product_id: uuid.UUID,
    variant_id: Optional[uuid.UUID],
    marketplace: Marketplace,
    remote: RemoteListing,
    title: Optional[str] = None,
    external_variation_id: Optional[str] = None,
) -> MarketplaceListing:
    """Persist a newly published listing; an existing row for the same variant wins."""
    existing = await get_listing(db, tenant_id=tenant_id, product_id=product_id,
                                 variant_id=variant_id, marketplace=marketplace)
    if existing is not None:
        logger.info("Listing for product %s on %s already registered as %s",
                    product_id, Marketplace(marketplace).value, existing.listing_id)
        return existing

    listing = MarketplaceListing(
        tenant_id=tenant_id,
        product_id=product_id,
        variant_id=variant_id,
        variant_key=variant_key(variant_id),
        marketplace=Marketplace(marketplace),
        listing_id=remote.listing_id,
        external_variation_id=external_variation_id,
        title=title,
        price=remote.price,
        quantity=remote.quantity,
        status=remote.status or ListingStatus.ACTIVE,
        last_sync_at=utc_now(),
    )
    db.add(listing)
    await db.flush()
    logger.info("Registered listing %s for product %s on %s",
                listing.listing_id, product_id, Marketplace(marketplace).value)
    return listing


async def publish_listing(
    db: AsyncSession,
    adapter: MarketplaceAdapter,
    ctx: ConnectionContext,
    *,
    product: ProductInfo,
    variant_id: Optional[uuid.UUID],
    quantity: int,
    picture_ids: Sequence[str] = (),
) -> MarketplaceListing:
    """Create the listing on the marketplace and register it."""
    draft = ListingDraft(
        title=product.name,
        price=product.price,
        quantity=quantity,
        sku=product.sku,
        picture_ids=list(picture_ids),
    )
    remote = await adapter.create_listing(ctx, draft)
    if remote.quantity is None:
        remote.quantity = quantity
    if remote.price is None:
        remote.price = product.price
    return await register_listing(
        db,
        tenant_id=ctx.tenant_id,
        product_id=product.product_id,
        variant_id=variant_id,
        marketplace=ctx.marketplace,
        remote=remote,
        title=product.name,
    )


def variation_attributes(variant: VariantInfo) -> Dict[str, str]:
    """
    Attribute combination identifying a variant on the marketplace.

    Variants without explicit attributes fall back to their name,
    ``"Camiseta - Azul - M"`` giving COLOR=Azul and SIZE=M.
    """
    if variant.attributes:
        return dict(variant.attributes)
    parts = [part.strip() for part in variant.name.split(" - ") if part.strip()]
    attributes = {}
    if len(parts) >= 2:
        attributes["COLOR"] = parts[1]
    if len(parts) >= 3:
        attributes["SIZE"] = parts[2]
    return attributes


def match_variations(
    variants: Sequence[VariantInfo], remote_variations: Sequence[RemoteVariation]
) -> List[Tuple[VariantInfo, Optional[RemoteVariation]]]:
    """Pair variants with the marketplace variations created for them: SKU, then attributes, then position."""
    remaining = list(remote_variations)
    matches: Dict[int, RemoteVariation] = {}
    for index, variant in enumerate(variants):
        attributes = variation_attributes(variant)
        for variation in remaining:
            if (variant.sku and variation.sku == variant.sku) or (attributes and variation.attributes == attributes):
                matches[index] = variation
                remaining.remove(variation)
                break
    for index in range(len(variants)):
        if index not in matches and remaining:
            matches[index] = remaining.pop(0)
    return [(variant, matches.get(index)) for index, variant in enumerate(variants)]


async def publish_variations(
    db: AsyncSession,
    adapter: MarketplaceAdapter,
    ctx: ConnectionContext,
    *,
    product: ProductInfo,
    variants: Sequence[VariantInfo],
    picture_ids: Sequence[str] = (),
) -> List[MarketplaceListing]:
    """
    Create one marketplace item carrying every variant as a variation and
    register a listing per variant, all sharing the item id.

    Variations start at quantity 0 like any new listing.
    """
    draft = ListingDraft(
        title=product.name,
        price=product.price,
        quantity=0,
        sku=product.sku,
        picture_ids=list(picture_ids),
        variations=[
            VariationDraft(
                price=variant.price if variant.price is not None else product.price,
                quantity=0,
                sku=variant.sku,
                attributes=variation_attributes(variant),
            )
            for variant in variants
        ],
    )
    remote = await adapter.create_listing(ctx, draft)

    listings = []
    for variant, variation in match_variations(variants, remote.variations):
        if variation is None:
            logger.error("Listing %s came back without a variation for variant %s; not linked",
                         remote.listing_id, variant.variant_id)
            continue
        listings.append(await register_listing(
            db,
            tenant_id=ctx.tenant_id,
            product_id=product.product_id,
            variant_id=variant.variant_id,
            marketplace=ctx.marketplace,
            remote=RemoteListing(
                listing_id=remote.listing_id,
                status=remote.status,
                quantity=variation.quantity if variation.quantity is not None else 0,
                price=variation.price if variation.price is not None else product.price,
            ),
            title=variant.name or product.name,
            external_variation_id=variation.variation_id,
        ))
    return listings


async def link_remote_listing(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    marketplace: Marketplace,
    remote: RemoteListing,
    product: ImportedProduct,
) -> List[MarketplaceListing]:
    """
    Register an existing marketplace item against a catalog product.

    Variations the catalog created variants for get a row each; an item
    with none of those is linked at product level.
    """
    listings = []
    for variation in remote.variations:
        variant_id = product.variant_ids.get(variation.variation_id)
        if variant_id is None:
            logger.warning("Variation %s of listing %s has no catalog variant; skipped",
                           variation.variation_id, remote.listing_id)
            continue
        listings.append(await register_listing(
            db,
            tenant_id=tenant_id,
            product_id=product.product_id,
            variant_id=variant_id,
            marketplace=marketplace,
            remote=RemoteListing(
                listing_id=remote.listing_id,
                status=remote.status,
                quantity=variation.quantity,
                price=variation.price if variation.price is not None else remote.price,
            ),
            title=remote.title,
            external_variation_id=variation.variation_id,
        ))
    if not listings:
        listings.append(await register_listing(
            db,
            tenant_id=tenant_id,
            product_id=product.product_id,
            variant_id=None,
            marketplace=marketplace,
            remote=remote,
            title=remote.title,
        ))
    return listings


def apply_remote_state(
    listing: MarketplaceListing,
    remote: Optional[RemoteListing] = None,
    *,
    quantity: Optional[int] = None,
    price: Optional[Decimal] = None,
) -> None:
    """Update the cached quantity/price/status after a successful marketplace call."""
    if quantity is not None:
        listing.quantity = quantity
    if price is not None:
        listing.price = price
    if remote is not None and remote.status is not None and remote.status != listing.status:
        logger.info("Listing %s status %s -> %s", listing.listing_id,
                    listing.status.value if listing.status else None, remote.status.value)
        listing.status = remote.status
    listing.last_sync_at = utc_now()


async def refresh_listing_status(
    db: AsyncSession,
    adapter: MarketplaceAdapter,
    ctx: ConnectionContext,
    listing_id: str,
) -> List[MarketplaceListing]:
    """
    Fetch a marketplace item and mirror its status onto every listing
    linked to it (one per variation for items with variations).

    Raises:
        ListingNotFoundError: the item is not linked to any product
    """
    listings = await _rows_for_listing(db, ctx.tenant_id, ctx.marketplace, listing_id)
    if not listings:
        raise ListingNotFoundError(f"Listing {listing_id} is not linked to any product")
    remote = await adapter.get_listing(ctx, listing_id)
    for listing in listings:
        apply_remote_state(listing, remote)
    await db.flush()
    return listings
