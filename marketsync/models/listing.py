from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Integer, Numeric, String, UniqueConstraint, Uuid

from marketsync.core.enums import ListingStatus, Marketplace
from marketsync.core.utils import utc_now
from marketsync.database import Base


def variant_key(variant_id) -> str:
    """Unique constraints treat NULLs as distinct, so a missing variant is stored as '-'."""
    return str(variant_id) if variant_id is not None else "-"


class MarketplaceListing(Base):
    """
    A product (or product variant) as published on a marketplace.
    """
    __tablename__ = "marketplace_listings"
    __table_args__ = (
        UniqueConstraint("tenant_id", "marketplace", "product_id", "variant_key",
                         name="uq_marketplace_listing_variant"),
        Index("ix_marketplace_listings_external", "marketplace", "listing_id"),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Uuid, nullable=False, index=True)
    product_id = Column(Uuid, nullable=False, index=True)
    variant_id = Column(Uuid, nullable=True)
    variant_key = Column(String(40), nullable=False, default="-")
    marketplace = Column(SQLEnum(Marketplace, native_enum=False, length=32), nullable=False)
    listing_id = Column(String(64), nullable=False)  # marketplace-assigned id
    external_variation_id = Column(String(64), nullable=True)
    title = Column(String(255), nullable=True)
    price = Column(Numeric(12, 2), nullable=True)
    quantity = Column(Integer, nullable=True)
    status = Column(SQLEnum(ListingStatus, native_enum=False, length=32),
                    nullable=False, default=ListingStatus.PENDING)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return (f"<MarketplaceListing(id={self.id}, product={self.product_id}, "
                f"listing_id='{self.listing_id}', status={self.status})>")
