import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.enums import Marketplace
from marketsync.core.exceptions import BaseServiceError
from marketsync.core.security import require_auth
from marketsync.dependencies import get_adapters, get_db, get_marketplace, get_tenant_id, http_error
from marketsync.schemas.marketplace import AuthorizationStart, ConnectionRead
from marketsync.services.connection_store import ConnectionStore

router = APIRouter(prefix="/api/marketplaces/{marketplace}", tags=["connections"])
# The OAuth redirect comes from the tenant's browser; the encrypted state authenticates it
callback_router = APIRouter(prefix="/api/marketplaces/{marketplace}", tags=["connections"])


@router.get("/connection", response_model=ConnectionRead, dependencies=[require_auth()])
async def get_connection(
    marketplace: Marketplace = Depends(get_marketplace),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    adapters=Depends(get_adapters),
):
    store = ConnectionStore(db, adapters)
    connection = await store.get(tenant_id, marketplace)
    if connection is None:
        raise HTTPException(status_code=404, detail="No connection for this marketplace")
    return ConnectionRead.from_orm_model(connection)


@router.post("/connect", response_model=AuthorizationStart, dependencies=[require_auth()])
async def start_connection(
    marketplace: Marketplace = Depends(get_marketplace),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    adapters=Depends(get_adapters),
):
    """Begin the OAuth flow; the caller redirects the user to the returned URL"""
    try:
        url = await ConnectionStore(db, adapters).start_authorization(tenant_id, marketplace)
    except BaseServiceError as e:
        raise http_error(e)
    return AuthorizationStart(authorization_url=url)


@callback_router.get("/callback", response_model=ConnectionRead)
async def oauth_callback(
    code: str = Query(...),
    state: str = Query(...),
    marketplace: Marketplace = Depends(get_marketplace),
    db: AsyncSession = Depends(get_db),
    adapters=Depends(get_adapters),
):
    try:
        connection = await ConnectionStore(db, adapters).complete_authorization(marketplace, code, state)
    except BaseServiceError as e:
        raise http_error(e)
    return ConnectionRead.from_orm_model(connection)


@router.delete("/connection", response_model=ConnectionRead, dependencies=[require_auth()])
async def disconnect(
    marketplace: Marketplace = Depends(get_marketplace),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    adapters=Depends(get_adapters),
):
    try:
        connection = await ConnectionStore(db, adapters).disconnect(tenant_id, marketplace)
    except BaseServiceError as e:
        raise http_error(e)
    return ConnectionRead.from_orm_model(connection)
