from sqlalchemy import Column, DateTime, Enum as SQLEnum, Integer, String, Text, Uuid

from marketsync.core.enums import Marketplace, SyncStatus, SyncType
from marketsync.core.utils import utc_now
from marketsync.database import Base


class SyncLogEntry(Base):
    """
    Append-only audit record of a single reconciliation attempt.
    Rows are never updated and outlive the queue items they describe.
    """
    __tablename__ = "marketplace_sync_log"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Uuid, nullable=False, index=True)
    queue_item_id = Column(Integer, nullable=True, index=True)
    product_id = Column(Uuid, nullable=False, index=True)
    variant_id = Column(Uuid, nullable=True)
    marketplace = Column(SQLEnum(Marketplace, native_enum=False, length=32), nullable=False)
    sync_type = Column(SQLEnum(SyncType, native_enum=False, length=16), nullable=False)
    listing_id = Column(String(64), nullable=True)
    old_value = Column(String(64), nullable=True)
    new_value = Column(String(64), nullable=True)
    status = Column(SQLEnum(SyncStatus, native_enum=False, length=32), nullable=False)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    synced_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    def __repr__(self):
        return (f"<SyncLogEntry(id={self.id}, product={self.product_id}, status={self.status}, "
                f"{self.old_value}->{self.new_value})>")
