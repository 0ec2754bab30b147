import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.enums import Marketplace
from marketsync.core.exceptions import BaseServiceError
from marketsync.dependencies import get_collaborators, get_db, get_tenant_id, http_error
from marketsync.schemas.marketplace import (
    ResyncResponse,
    SafetyMarginRuleCreate,
    SafetyMarginRuleRead,
    SafetyMarginRuleUpdate,
)
from marketsync.services.safety_margin import SafetyMarginResolver

router = APIRouter(prefix="/api/safety-margins", tags=["safety-margins"])


@router.get("", response_model=List[SafetyMarginRuleRead])
async def list_rules(
    marketplace: Optional[Marketplace] = Query(None),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    collaborators=Depends(get_collaborators),
):
    rules = await SafetyMarginResolver(db, collaborators.catalog).list_rules(tenant_id, marketplace)
    return [SafetyMarginRuleRead.from_orm_model(rule) for rule in rules]


@router.post("", response_model=SafetyMarginRuleRead, status_code=201)
async def create_rule(
    body: SafetyMarginRuleCreate,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    collaborators=Depends(get_collaborators),
):
    resolver = SafetyMarginResolver(db, collaborators.catalog)
    try:
        rule = await resolver.create_rule(
            tenant_id,
            body.marketplace,
            priority=body.priority,
            margin_percentage=body.margin_percentage,
            product_id=body.product_id,
            category_id=body.category_id,
        )
    except BaseServiceError as e:
        raise http_error(e)
    return SafetyMarginRuleRead.from_orm_model(rule)


@router.put("/{rule_id}", response_model=SafetyMarginRuleRead)
async def update_rule(
    rule_id: int,
    body: SafetyMarginRuleUpdate,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    collaborators=Depends(get_collaborators),
):
    resolver = SafetyMarginResolver(db, collaborators.catalog)
    try:
        rule = await resolver.update_rule(tenant_id, rule_id, body.margin_percentage)
    except BaseServiceError as e:
        raise http_error(e)
    return SafetyMarginRuleRead.from_orm_model(rule)


@router.delete("/{rule_id}", response_model=ResyncResponse)
async def delete_rule(
    rule_id: int,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    collaborators=Depends(get_collaborators),
):
    resolver = SafetyMarginResolver(db, collaborators.catalog)
    try:
        enqueued = await resolver.delete_rule(tenant_id, rule_id)
    except BaseServiceError as e:
        raise http_error(e)
    return ResyncResponse(enqueued=enqueued)
