"""
OAuth2 connections per (tenant, marketplace).

ConnectionStore is the only component that sees tokens in plain text: it
encrypts grants on the way in and decrypts access tokens on the way out to
build a ``ConnectionContext`` for an adapter call. Writes commit
immediately so a refreshed (possibly rotated) token is never lost to a
caller's rollback.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import ClassVar, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.config import get_settings
from marketsync.core.crypto import TokenCipher
from marketsync.core.enums import ConnectionStatus, Marketplace
from marketsync.core.exceptions import (
    ConnectionNotFoundError,
    ConnectionUnavailableError,
    MarketplaceAPIError,
    TokenDecryptionError,
    TokenRefreshError,
    ValidationError,
)
from marketsync.core.utils import utc_now
from marketsync.integrations.base import ConnectionContext, MarketplaceAdapter, TokenGrant
from marketsync.models.connection import MarketplaceConnection

logger = logging.getLogger(__name__)


class ConnectionStore:
    _refresh_locks: ClassVar[Dict[str, asyncio.Lock]] = {}

    def __init__(
        self,
        db: AsyncSession,
        adapters: Dict[Marketplace, MarketplaceAdapter],
        cipher: Optional[TokenCipher] = None,
        settings=None,
    ):
        self.db = db
        self.adapters = adapters
        self.settings = settings or get_settings()
        self.cipher = cipher or TokenCipher.from_settings(self.settings)

    def adapter_for(self, marketplace: Marketplace) -> MarketplaceAdapter:
        adapter = self.adapters.get(Marketplace(marketplace))
        if adapter is None:
            raise ValidationError(f"Marketplace {Marketplace(marketplace).value} is not configured")
        return adapter

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def get(self, tenant_id: uuid.UUID, marketplace: Marketplace) -> Optional[MarketplaceConnection]:
        stmt = select(MarketplaceConnection).where(
            MarketplaceConnection.tenant_id == tenant_id,
            MarketplaceConnection.marketplace == Marketplace(marketplace),
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def require(self, tenant_id: uuid.UUID, marketplace: Marketplace) -> MarketplaceConnection:
        connection = await self.get(tenant_id, marketplace)
        if connection is None:
            raise ConnectionNotFoundError(
                f"Tenant {tenant_id} has no {Marketplace(marketplace).value} connection"
            )
        return connection

    async def find_by_external_user(self, marketplace: Marketplace,
                                    external_user_id: str) -> Optional[MarketplaceConnection]:
        stmt = select(MarketplaceConnection).where(
            MarketplaceConnection.marketplace == Marketplace(marketplace),
            MarketplaceConnection.external_user_id == str(external_user_id),
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def list_connected(self, marketplace: Optional[Marketplace] = None) -> List[MarketplaceConnection]:
        stmt = select(MarketplaceConnection).where(MarketplaceConnection.status == ConnectionStatus.CONNECTED)
        if marketplace is not None:
            stmt = stmt.where(MarketplaceConnection.marketplace == Marketplace(marketplace))
        result = await self.db.execute(stmt.order_by(MarketplaceConnection.id))
        return list(result.scalars().all())

    async def list_expiring(self, threshold_minutes: int, now=None) -> List[MarketplaceConnection]:
        """CONNECTED connections for which ``is_token_expiring(threshold_minutes)`` holds."""
        now = now or utc_now()
        horizon = now + timedelta(minutes=threshold_minutes)
        stmt = (
            select(MarketplaceConnection)
            .where(
                MarketplaceConnection.status == ConnectionStatus.CONNECTED,
                or_(
                    MarketplaceConnection.token_expires_at.is_(None),
                    MarketplaceConnection.token_expires_at <= horizon,
                ),
            )
            .order_by(MarketplaceConnection.token_expires_at)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # OAuth flow
    # ------------------------------------------------------------------
    def encode_state(self, tenant_id: uuid.UUID, marketplace: Marketplace) -> str:
        return self.cipher.encrypt(f"{tenant_id}|{Marketplace(marketplace).value}")

    def decode_state(self, state: str, marketplace: Marketplace) -> uuid.UUID:
        try:
            tenant_part, marketplace_part = self.cipher.decrypt(state).split("|", 1)
            tenant_id = uuid.UUID(tenant_part)
        except (TokenDecryptionError, ValueError) as e:
            raise ValidationError(f"Invalid OAuth state: {e}") from e
        if marketplace_part != Marketplace(marketplace).value:
            raise ValidationError("OAuth state was issued for a different marketplace")
        return tenant_id

    async def start_authorization(self, tenant_id: uuid.UUID, marketplace: Marketplace) -> str:
        """Create (or reset) the PENDING connection and return the consent URL."""
        marketplace = Marketplace(marketplace)
        adapter = self.adapter_for(marketplace)
        connection = await self.get(tenant_id, marketplace)
        if connection is None:
            connection = MarketplaceConnection(
                tenant_id=tenant_id,
                marketplace=marketplace,
                status=ConnectionStatus.PENDING,
            )
            self.db.add(connection)
        elif connection.status != ConnectionStatus.CONNECTED:
            connection.status = ConnectionStatus.PENDING
            connection.error_message = None
        await self.db.commit()
        logger.info("Started %s authorization for tenant %s", marketplace.value, tenant_id)
        return adapter.authorization_url(self.encode_state(tenant_id, marketplace))

    async def complete_authorization(self, marketplace: Marketplace, code: str,
                                     state: str) -> MarketplaceConnection:
        """OAuth callback: exchange the code and mark the connection CONNECTED."""
        marketplace = Marketplace(marketplace)
        if not code:
            raise ValidationError("Missing authorization code")
        tenant_id = self.decode_state(state, marketplace)
        adapter = self.adapter_for(marketplace)

        connection = await self.get(tenant_id, marketplace)
        if connection is None:
            connection = MarketplaceConnection(tenant_id=tenant_id, marketplace=marketplace)
            self.db.add(connection)

        try:
            grant = await adapter.exchange_code(code)
        except MarketplaceAPIError as e:
            connection.status = ConnectionStatus.ERROR
            connection.error_message = f"Authorization failed: {e}"[:2000]
            await self.db.commit()
            logger.error("Code exchange failed for tenant %s on %s: %s", tenant_id, marketplace.value, e)
            raise

        self._apply_grant(connection, grant)
        await self.db.commit()
        logger.info("Tenant %s connected to %s as user %s",
                    tenant_id, marketplace.value, connection.external_user_id)
        return connection

    def _apply_grant(self, connection: MarketplaceConnection, grant: TokenGrant) -> None:
        connection.access_token_encrypted = self.cipher.encrypt(grant.access_token)
        # Marketplaces that do not rotate refresh tokens omit them from the response
        if grant.refresh_token:
            connection.refresh_token_encrypted = self.cipher.encrypt(grant.refresh_token)
        if grant.external_user_id:
            connection.external_user_id = grant.external_user_id
        connection.token_expires_at = grant.expires_at
        connection.status = ConnectionStatus.CONNECTED
        connection.error_message = None

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------
    def _lock_for(self, connection: MarketplaceConnection) -> asyncio.Lock:
        key = f"{connection.tenant_id}:{Marketplace(connection.marketplace).value}"
        lock = self._refresh_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[key] = lock
        return lock

    async def refresh(self, connection: MarketplaceConnection) -> MarketplaceConnection:
        """
        Run the refresh-token grant for ``connection``.

        Any failure leaves the connection in ERROR with the reason recorded
        and raises TokenRefreshError.
        """
        marketplace = Marketplace(connection.marketplace)
        try:
            adapter = self.adapter_for(marketplace)
            refresh_token = self.cipher.decrypt(connection.refresh_token_encrypted)
            if not refresh_token:
                raise TokenRefreshError("No refresh token stored")
            grant = await adapter.refresh_token(refresh_token)
        except (MarketplaceAPIError, TokenDecryptionError, TokenRefreshError, ValidationError) as e:
            await self.mark_error(connection, f"Token refresh failed: {e}")
            logger.error("Token refresh failed for tenant %s on %s: %s",
                         connection.tenant_id, marketplace.value, e)
            raise TokenRefreshError(str(e)) from e

        self._apply_grant(connection, grant)
        await self.db.commit()
        logger.info("Refreshed %s token for tenant %s (expires %s)",
                    marketplace.value, connection.tenant_id, connection.token_expires_at)
        return connection

    async def refresh_if_expiring(self, connection: MarketplaceConnection, threshold_minutes: int) -> bool:
        """
        Refresh ``connection`` unless someone else already did.

        Inline and background refreshes both go through here. The row is
        re-read under the process lock and a row lock, and the grant only runs
        if the token is still expiring. Returns True when this call ran it.
        """
        async with self._lock_for(connection):
            stmt = (
                select(MarketplaceConnection)
                .where(MarketplaceConnection.id == connection.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            await self.db.execute(stmt)
            if connection.status != ConnectionStatus.CONNECTED:
                await self.db.commit()
                raise ConnectionUnavailableError(
                    f"Connection for tenant {connection.tenant_id} is {connection.status.value}"
                )
            if not connection.is_token_expiring(threshold_minutes):
                # Releases the row lock
                await self.db.commit()
                logger.debug("Token for tenant %s was refreshed concurrently", connection.tenant_id)
                return False
            await self.refresh(connection)
            return True

    async def get_valid_token(self, tenant_id: uuid.UUID, marketplace: Marketplace,
                              threshold_minutes: Optional[int] = None) -> str:
        """
        Return a usable access token, refreshing inline when
        ``now + threshold >= token_expires_at``.
        """
        if threshold_minutes is None:
            threshold_minutes = self.settings.TOKEN_INLINE_REFRESH_MINUTES
        connection = await self.require(tenant_id, marketplace)
        if connection.status != ConnectionStatus.CONNECTED:
            raise ConnectionUnavailableError(
                f"{Marketplace(marketplace).value} connection for tenant {tenant_id} is "
                f"{connection.status.value}"
            )

        if connection.is_token_expiring(threshold_minutes):
            logger.info("Token for tenant %s expiring, refreshing inline", tenant_id)
            await self.refresh_if_expiring(connection, threshold_minutes)

        return self.cipher.decrypt(connection.access_token_encrypted)

    async def get_context(self, tenant_id: uuid.UUID, marketplace: Marketplace) -> ConnectionContext:
        access_token = await self.get_valid_token(tenant_id, marketplace)
        connection = await self.require(tenant_id, marketplace)
        return ConnectionContext(
            tenant_id=tenant_id,
            marketplace=Marketplace(marketplace),
            access_token=access_token,
            external_user_id=connection.external_user_id,
        )

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------
    async def mark_error(self, connection: MarketplaceConnection, message: str) -> None:
        connection.status = ConnectionStatus.ERROR
        connection.error_message = (message or "")[:2000]
        await self.db.commit()
        logger.warning("Connection for tenant %s on %s set to ERROR: %s",
                       connection.tenant_id, Marketplace(connection.marketplace).value, message)

    async def touch_last_sync(self, connection: MarketplaceConnection, when=None) -> None:
        connection.last_sync_at = when or utc_now()
        await self.db.commit()

    async def disconnect(self, tenant_id: uuid.UUID, marketplace: Marketplace) -> MarketplaceConnection:
        """Explicit user action: revoke (best effort), wipe tokens, mark DISCONNECTED."""
        connection = await self.require(tenant_id, marketplace)
        if connection.access_token_encrypted and connection.status == ConnectionStatus.CONNECTED:
            try:
                ctx = ConnectionContext(
                    tenant_id=tenant_id,
                    marketplace=Marketplace(marketplace),
                    access_token=self.cipher.decrypt(connection.access_token_encrypted),
                    external_user_id=connection.external_user_id,
                )
                await self.adapter_for(marketplace).revoke(ctx)
            except (MarketplaceAPIError, TokenDecryptionError, ValidationError) as e:
                logger.warning("Revoking %s token for tenant %s failed: %s",
                               Marketplace(marketplace).value, tenant_id, e)

        connection.status = ConnectionStatus.DISCONNECTED
        connection.access_token_encrypted = None
        connection.refresh_token_encrypted = None
        connection.token_expires_at = None
        connection.error_message = None
        await self.db.commit()
        logger.info("Tenant %s disconnected from %s", tenant_id, Marketplace(marketplace).value)
        return connection
