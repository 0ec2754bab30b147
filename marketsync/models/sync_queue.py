from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Integer, String, Text, Uuid, text

from marketsync.core.enums import Marketplace, SyncPriority, SyncStatus, SyncType
from marketsync.core.utils import utc_now
from marketsync.database import Base

ACTIVE_STATUS_CLAUSE = "status IN ('PENDING', 'PROCESSING')"


def build_dedup_key(tenant_id, product_id, variant_id, marketplace, sync_type) -> str:
    marketplace = Marketplace(marketplace).value
    sync_type = SyncType(sync_type).value
    variant = str(variant_id) if variant_id is not None else "-"
    return f"{tenant_id}:{product_id}:{variant}:{marketplace}:{sync_type}"


class SyncQueueItem(Base):
    """
    One unit of stock/price reconciliation work.

    The partial unique index on ``dedup_key`` allows at most one
    PENDING/PROCESSING row per (tenant, product, variant, marketplace, type).
    """
    __tablename__ = "marketplace_sync_queue"
    __table_args__ = (
        Index(
            "uq_sync_queue_active_key",
            "dedup_key",
            unique=True,
            postgresql_where=text(ACTIVE_STATUS_CLAUSE),
            sqlite_where=text(ACTIVE_STATUS_CLAUSE),
        ),
        Index("ix_sync_queue_claim_order", "status", "priority", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Uuid, nullable=False, index=True)
    product_id = Column(Uuid, nullable=False)
    variant_id = Column(Uuid, nullable=True)
    marketplace = Column(SQLEnum(Marketplace, native_enum=False, length=32), nullable=False)
    sync_type = Column(SQLEnum(SyncType, native_enum=False, length=16), nullable=False)
    priority = Column(Integer, nullable=False, default=SyncPriority.NORMAL.value)
    status = Column(SQLEnum(SyncStatus, native_enum=False, length=32),
                    nullable=False, default=SyncStatus.PENDING)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    dedup_key = Column(String(255), nullable=False)

    # Claim bookkeeping
    claim_token = Column(String(64), nullable=True, index=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    available_at = Column(DateTime(timezone=True), nullable=True)  # retry backoff

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in SyncStatus.terminal()

    def __repr__(self):
        return (f"<SyncQueueItem(id={self.id}, key='{self.dedup_key}', status={self.status}, "
                f"retries={self.retry_count}/{self.max_retries})>")
