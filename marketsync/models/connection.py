from datetime import timedelta

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Integer, String, Text, UniqueConstraint, Uuid

from marketsync.core.enums import ConnectionStatus, Marketplace
from marketsync.core.utils import ensure_utc, utc_now
from marketsync.database import Base


class MarketplaceConnection(Base):
    """
    OAuth2 connection of one tenant to one marketplace.

    Tokens are only ever stored encrypted; ConnectionStore is the single
    place that encrypts or decrypts them.
    """
    __tablename__ = "marketplace_connections"
    __table_args__ = (
        UniqueConstraint("tenant_id", "marketplace", name="uq_marketplace_connection_tenant"),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Uuid, nullable=False, index=True)
    marketplace = Column(SQLEnum(Marketplace, native_enum=False, length=32), nullable=False)
    external_user_id = Column(String(64), nullable=True, index=True)
    access_token_encrypted = Column(Text, nullable=True)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(SQLEnum(ConnectionStatus, native_enum=False, length=32),
                    nullable=False, default=ConnectionStatus.PENDING)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    def is_token_expiring(self, threshold_minutes: int, now=None) -> bool:
        """True when ``now + threshold >= token_expires_at``; no expiry counts as expiring."""
        if self.token_expires_at is None:
            return True
        now = ensure_utc(now) if now else utc_now()
        return now + timedelta(minutes=threshold_minutes) >= ensure_utc(self.token_expires_at)

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def __repr__(self):
        return (f"<MarketplaceConnection(tenant={self.tenant_id}, marketplace={self.marketplace}, "
                f"status={self.status})>")
