import uuid
from typing import AsyncGenerator, Dict

from fastapi import Header, HTTPException, Path, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.enums import Marketplace
from marketsync.core.exceptions import (
    BaseServiceError,
    CollaboratorError,
    ConnectionNotFoundError,
    ConnectionUnavailableError,
    DuplicateRuleError,
    ListingNotFoundError,
    MarketplaceAPIError,
    ProductNotFoundError,
    RuleNotFoundError,
    TokenRefreshError,
    ValidationError,
)
from marketsync.database import async_session
from marketsync.integrations.base import MarketplaceAdapter
from marketsync.integrations.setup import Collaborators


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID")) -> uuid.UUID:
    """Tenant is always explicit; there is no ambient tenant context."""
    try:
        return uuid.UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="X-Tenant-ID must be a UUID")


def get_marketplace(marketplace: str = Path(...)) -> Marketplace:
    try:
        return Marketplace.from_slug(marketplace)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown marketplace '{marketplace}'")


def get_adapters(request: Request) -> Dict[Marketplace, MarketplaceAdapter]:
    return request.app.state.adapters


def get_collaborators(request: Request) -> Collaborators:
    return request.app.state.collaborators


_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (DuplicateRuleError, 409),
    (ConnectionUnavailableError, 409),
    (TokenRefreshError, 409),
    ((RuleNotFoundError, ConnectionNotFoundError, ListingNotFoundError, ProductNotFoundError), 404),
    ((MarketplaceAPIError, CollaboratorError), 502),
)


def http_error(exc: BaseServiceError) -> HTTPException:
    """Translate a service exception into the HTTPException a route should raise."""
    for error_types, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_types):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
