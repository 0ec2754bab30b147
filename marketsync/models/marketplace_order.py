from sqlalchemy import (Boolean, Column, DateTime, Enum as SQLEnum, Integer, JSON, Numeric, String,
                        UniqueConstraint, Uuid)

from marketsync.core.enums import Marketplace, OrderStatus
from marketsync.core.utils import utc_now
from marketsync.database import Base


class MarketplaceOrder(Base):
    """
    An order placed on a marketplace and its link to the internal sales order.
    """
    __tablename__ = "marketplace_orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "marketplace", "external_order_id",
                         name="uq_marketplace_order_external"),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Uuid, nullable=False, index=True)
    marketplace = Column(SQLEnum(Marketplace, native_enum=False, length=32), nullable=False)
    external_order_id = Column(String(64), nullable=False)
    internal_order_id = Column(String(64), nullable=True)

    # Buyer snapshot
    buyer_name = Column(String(255), nullable=True)
    buyer_email = Column(String(255), nullable=True)
    buyer_phone = Column(String(64), nullable=True)

    total_amount = Column(Numeric(12, 2), nullable=True)
    status = Column(SQLEnum(OrderStatus, native_enum=False, length=32),
                    nullable=False, default=OrderStatus.PENDING)
    external_status = Column(String(32), nullable=True)
    payment_status = Column(String(32), nullable=True)
    payment_approved = Column(Boolean, nullable=False, default=False)
    shipping_status = Column(String(32), nullable=True)
    shipping_substatus = Column(String(64), nullable=True)
    raw_data = Column(JSON, nullable=True)

    imported_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return (f"<MarketplaceOrder(id={self.id}, external='{self.external_order_id}', "
                f"internal='{self.internal_order_id}', status={self.status})>")
