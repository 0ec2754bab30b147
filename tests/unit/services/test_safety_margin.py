import uuid
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from marketsync.core.enums import Marketplace, RuleScope, SyncStatus
from marketsync.core.exceptions import DuplicateRuleError, RuleNotFoundError, ValidationError
from marketsync.models.sync_queue import SyncQueueItem
from marketsync.services.safety_margin import SafetyMarginResolver, published_quantity

MELI = Marketplace.MERCADO_LIVRE


@pytest.mark.parametrize("available, margin, expected", [
    (37, 90, 33),
    (10, 100, 10),
    (10, 0, 0),
    (1, 99, 0),
    (Decimal("7.9"), 100, 7),
    (-4, 80, 0),
])
def test_published_quantity_floors(available, margin, expected):
    assert published_quantity(available, margin) == expected


@pytest.mark.asyncio
async def test_resolve_defaults_to_full_quantity(db_session, settings, tenant_id):
    resolver = SafetyMarginResolver(db_session, settings=settings)

    margin = await resolver.resolve(tenant_id, MELI, uuid.uuid4(), uuid.uuid4())

    assert margin == Decimal("100")


@pytest.mark.asyncio
async def test_resolve_cascade_product_over_category_over_global(db_session, settings, catalog, tenant_id):
    resolver = SafetyMarginResolver(db_session, catalog, settings=settings)
    product_id, other_product, category_id = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()

    await resolver.create_rule(tenant_id, MELI, priority=RuleScope.GLOBAL, margin_percentage=50)
    await resolver.create_rule(tenant_id, MELI, priority=RuleScope.CATEGORY, margin_percentage=70,
                               category_id=category_id)
    await resolver.create_rule(tenant_id, MELI, priority=RuleScope.PRODUCT, margin_percentage=90,
                               product_id=product_id)

    assert await resolver.resolve(tenant_id, MELI, product_id, category_id) == Decimal("90")
    assert await resolver.resolve(tenant_id, MELI, other_product, category_id) == Decimal("70")
    assert await resolver.resolve(tenant_id, MELI, other_product, uuid.uuid4()) == Decimal("50")
    assert await resolver.resolve(tenant_id, MELI, other_product, None) == Decimal("50")


@pytest.mark.asyncio
async def test_rules_are_tenant_scoped(db_session, settings, tenant_id):
    resolver = SafetyMarginResolver(db_session, settings=settings)
    await resolver.create_rule(tenant_id, MELI, priority=RuleScope.GLOBAL, margin_percentage=10)

    assert await resolver.resolve(uuid.uuid4(), MELI, uuid.uuid4(), None) == Decimal("100")


@pytest.mark.parametrize("rule", [
    SimpleNamespace(priority=1, margin_percentage=101, product_id=uuid.uuid4(), category_id=None),
    SimpleNamespace(priority=1, margin_percentage=-1, product_id=uuid.uuid4(), category_id=None),
    SimpleNamespace(priority=1, margin_percentage=50, product_id=None, category_id=None),
    SimpleNamespace(priority=2, margin_percentage=50, product_id=uuid.uuid4(), category_id=None),
    SimpleNamespace(priority=3, margin_percentage=50, product_id=None, category_id=uuid.uuid4()),
    SimpleNamespace(priority=4, margin_percentage=50, product_id=None, category_id=None),
])
def test_validate_rejects_inconsistent_rules(rule):
    with pytest.raises(ValidationError):
        SafetyMarginResolver.validate(rule)


def test_validate_accepts_boundaries():
    SafetyMarginResolver.validate(SimpleNamespace(priority=3, margin_percentage=0, product_id=None, category_id=None))
    SafetyMarginResolver.validate(SimpleNamespace(priority=3, margin_percentage=100, product_id=None, category_id=None))


@pytest.mark.asyncio
async def test_duplicate_scope_is_rejected(db_session, settings, tenant_id):
    resolver = SafetyMarginResolver(db_session, settings=settings)
    product_id = uuid.uuid4()
    await resolver.create_rule(tenant_id, MELI, priority=RuleScope.PRODUCT, margin_percentage=80,
                               product_id=product_id)

    with pytest.raises(DuplicateRuleError):
        await resolver.create_rule(tenant_id, MELI, priority=RuleScope.PRODUCT, margin_percentage=60,
                                   product_id=product_id)


@pytest.mark.asyncio
async def test_get_rule_of_other_tenant_is_not_found(db_session, settings, tenant_id):
    resolver = SafetyMarginResolver(db_session, settings=settings)
    rule = await resolver.create_rule(tenant_id, MELI, priority=RuleScope.GLOBAL, margin_percentage=80)

    with pytest.raises(RuleNotFoundError):
        await resolver.get_rule(uuid.uuid4(), rule.id)


@pytest.mark.asyncio
async def test_rule_changes_enqueue_resync_for_affected_listings(
    db_session, settings, catalog, tenant_id, make_connection, make_listing
):
    await make_connection(tenant_id)
    category_id = uuid.uuid4()
    in_category = catalog.add(category_id=category_id)
    elsewhere = catalog.add(category_id=uuid.uuid4())
    await make_listing(tenant_id, in_category.product_id, listing_id="MLB1")
    await make_listing(tenant_id, elsewhere.product_id, listing_id="MLB2")
    resolver = SafetyMarginResolver(db_session, catalog, settings=settings)

    rule = await resolver.create_rule(tenant_id, MELI, priority=RuleScope.CATEGORY, margin_percentage=50,
                                      category_id=category_id)

    items = (await db_session.execute(select(SyncQueueItem))).scalars().all()
    assert [item.product_id for item in items] == [in_category.product_id]
    assert items[0].status == SyncStatus.PENDING

    # Deleting re-enqueues the same scope; the pending item is reused
    enqueued = await resolver.delete_rule(tenant_id, rule.id)
    assert enqueued == 1
    items = (await db_session.execute(select(SyncQueueItem))).scalars().all()
    assert len(items) == 1
    assert await resolver.list_rules(tenant_id) == []


@pytest.mark.asyncio
async def test_update_rule_changes_margin(db_session, settings, tenant_id):
    resolver = SafetyMarginResolver(db_session, settings=settings)
    rule = await resolver.create_rule(tenant_id, MELI, priority=RuleScope.GLOBAL, margin_percentage=80)

    updated = await resolver.update_rule(tenant_id, rule.id, 25)

    assert updated.margin_percentage == Decimal("25")
    assert await resolver.resolve(tenant_id, MELI, uuid.uuid4(), None) == Decimal("25")
