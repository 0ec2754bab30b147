import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from marketsync.core.enums import Marketplace, OrderStatus
from marketsync.core.exceptions import CollaboratorError, ValidationError
from marketsync.core.utils import ensure_utc, utc_now
from marketsync.models.connection import MarketplaceConnection
from marketsync.models.marketplace_order import MarketplaceOrder
from marketsync.schemas.webhook import MarketplaceNotification
from marketsync.services.order_importer import (
    OrderImporter,
    map_buyer,
    map_order_status,
    poll_all_connections,
)

MELI = Marketplace.MERCADO_LIVRE


def order_payload(order_id="2000003508419013", status="paid", payment_status="approved", listing_id="MLB1"):
    return {
        "id": int(order_id),
        "status": status,
        "payments": [{"id": 1, "status": payment_status}],
        "buyer": {"id": 987, "nickname": "COMPRADOR", "first_name": "Ana", "last_name": "Souza",
                  "email": "ana@example.test", "phone": {"area_code": "11", "number": "99999999"}},
        "order_items": [{"item": {"id": listing_id, "title": "Test Guitar"}, "quantity": 1, "unit_price": 100}],
        "total_amount": 100,
        "shipping": {"status": "ready_to_ship", "substatus": "printed"},
    }


@pytest.fixture
def importer(db_session, adapters, sales, settings, cipher):
    return OrderImporter(db_session, adapters, sales, settings=settings, cipher=cipher)


@pytest.fixture
async def connected(tenant_id, make_connection):
    return await make_connection(tenant_id)


async def _order_count(db):
    return (await db.execute(select(func.count(MarketplaceOrder.id)))).scalar()


"""
1. Status mapping
"""

@pytest.mark.parametrize("external_status,approved,expected", [
    ("paid", False, OrderStatus.PAID),
    ("confirmed", True, OrderStatus.PAID),
    ("confirmed", False, OrderStatus.PENDING),
    ("payment_required", False, OrderStatus.PENDING),
    ("cancelled", True, OrderStatus.CANCELLED),
    (None, False, OrderStatus.PENDING),
])
def test_map_order_status(external_status, approved, expected):
    assert map_order_status(external_status, approved) == expected


def test_map_buyer_joins_name_and_phone():
    buyer = map_buyer(order_payload())
    assert buyer.external_id == "987"
    assert buyer.name == "Ana Souza"
    assert buyer.phone == "1199999999"


def test_map_buyer_falls_back_to_nickname():
    buyer = map_buyer({"buyer": {"id": 1, "nickname": "COMPRADOR"}})
    assert buyer.name == "COMPRADOR"
    assert buyer.phone is None


"""
2. Idempotent import
"""

@pytest.mark.asyncio
async def test_import_creates_sales_order(importer, db_session, tenant_id, connected, mock_marketplace,
                                          sales, make_listing):
    product_id = uuid.uuid4()
    await make_listing(tenant_id, product_id, listing_id="MLB1")
    mock_marketplace.orders["2000003508419013"] = order_payload()

    order = await importer.import_order(tenant_id, MELI, "2000003508419013")

    assert order.internal_order_id == "SO-1"
    assert order.status == OrderStatus.PAID
    assert order.payment_approved is True
    assert order.shipping_status == "ready_to_ship"
    [created] = sales.created
    assert created["items"][0].product_id == product_id
    assert created["payment"].approved is True


@pytest.mark.asyncio
async def test_order_line_for_variation_resolves_variant(importer, tenant_id, connected, mock_marketplace,
                                                         sales, make_listing):
    product_id, blue_id, red_id = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    await make_listing(tenant_id, product_id, variant_id=blue_id, listing_id="MLB300", external_variation_id="17001")
    await make_listing(tenant_id, product_id, variant_id=red_id, listing_id="MLB300", external_variation_id="17002")
    payload = order_payload(listing_id="MLB300")
    payload["order_items"][0]["item"]["variation_id"] = 17002
    mock_marketplace.orders["2000003508419013"] = payload

    await importer.import_order(tenant_id, MELI, "2000003508419013")

    [line] = sales.created[0]["items"]
    assert (line.product_id, line.variant_id, line.variation_id) == (product_id, red_id, "17002")


@pytest.mark.asyncio
async def test_list_orders_newest_first(importer, tenant_id, connected, mock_marketplace):
    for order_id in ("2001", "2002"):
        mock_marketplace.orders[order_id] = order_payload(order_id=order_id)
        await importer.import_order(tenant_id, MELI, order_id)

    orders = await importer.list_orders(tenant_id, MELI)

    assert [order.external_order_id for order in orders] == ["2002", "2001"]
    assert await importer.list_orders(uuid.uuid4(), MELI) == []


@pytest.mark.asyncio
async def test_import_twice_creates_one_sales_order(importer, db_session, tenant_id, connected,
                                                    mock_marketplace, sales):
    mock_marketplace.orders["555"] = order_payload("555", status="confirmed", payment_status="pending")

    first = await importer.import_order(tenant_id, MELI, "555")
    assert first.status == OrderStatus.PENDING

    mock_marketplace.orders["555"] = order_payload("555", status="paid")
    second = await importer.import_order(tenant_id, MELI, "555")

    assert len(sales.created) == 1
    assert second.id == first.id
    assert second.status == OrderStatus.PAID
    assert await _order_count(db_session) == 1


@pytest.mark.asyncio
async def test_cancellation_is_forwarded_once(importer, tenant_id, connected, mock_marketplace, sales):
    mock_marketplace.orders["777"] = order_payload("777")
    await importer.import_order(tenant_id, MELI, "777")

    mock_marketplace.orders["777"] = order_payload("777", status="cancelled")
    order = await importer.import_order(tenant_id, MELI, "777")
    await importer.import_order(tenant_id, MELI, "777")

    assert order.status == OrderStatus.CANCELLED
    assert [internal_id for internal_id, _ in sales.cancelled] == ["SO-1"]


@pytest.mark.asyncio
async def test_sales_failure_leaves_no_order(importer, db_session, tenant_id, connected, mock_marketplace, sales):
    mock_marketplace.orders["888"] = order_payload("888")
    sales.should_fail = True

    with pytest.raises(CollaboratorError):
        await importer.import_order(tenant_id, MELI, "888")

    assert await _order_count(db_session) == 0


@pytest.mark.asyncio
async def test_failed_cancellation_keeps_single_sales_order(importer, db_session, tenant_id, connected,
                                                            mock_marketplace, sales):
    mock_marketplace.orders["999"] = order_payload("999", status="cancelled")
    sales.cancel_should_fail = True

    with pytest.raises(CollaboratorError):
        await importer.import_order(tenant_id, MELI, "999")

    order = await importer.get_order(tenant_id, MELI, "999")
    assert order.internal_order_id == "SO-1"
    assert order.status != OrderStatus.CANCELLED

    with pytest.raises(CollaboratorError):
        await importer.import_order(tenant_id, MELI, "999")

    sales.cancel_should_fail = False
    order = await importer.import_order(tenant_id, MELI, "999")

    assert len(sales.created) == 1
    assert await _order_count(db_session) == 1
    assert order.status == OrderStatus.CANCELLED
    assert [internal_id for internal_id, _ in sales.cancelled] == ["SO-1"]


"""
3. Notifications
"""

def test_order_id_from_notification(mock_marketplace):
    notification = MarketplaceNotification(resource="/orders/123", topic="orders_v2", user_id=123456)
    assert OrderImporter.order_id_from_notification(mock_marketplace, notification) == "123"


def test_non_order_topic_is_ignored(mock_marketplace):
    notification = MarketplaceNotification(resource="/items/MLB1", topic="items", user_id=123456)
    assert OrderImporter.order_id_from_notification(mock_marketplace, notification) is None


def test_malformed_order_resource_rejected(mock_marketplace):
    notification = MarketplaceNotification(resource="/orders/abc", topic="orders_v2", user_id=123456)
    with pytest.raises(ValidationError):
        OrderImporter.order_id_from_notification(mock_marketplace, notification)


@pytest.mark.asyncio
async def test_duplicate_notification_is_idempotent(importer, db_session, tenant_id, connected,
                                                    mock_marketplace, sales):
    mock_marketplace.orders["123"] = order_payload("123")

    first = MarketplaceNotification(resource="/orders/123", topic="orders_v2", user_id=123456)
    retry = MarketplaceNotification(resource="/orders/123", topic="orders_v2", user_id=123456, attempts=2)
    await importer.handle_notification(MELI, first)
    order = await importer.handle_notification(MELI, retry)

    assert order.external_order_id == "123"
    assert len(sales.created) == 1
    assert await _order_count(db_session) == 1


@pytest.mark.asyncio
async def test_notification_for_unknown_user_is_dropped(importer, tenant_id, connected, mock_marketplace, sales):
    mock_marketplace.orders["123"] = order_payload("123")
    notification = MarketplaceNotification(resource="/orders/123", topic="orders_v2", user_id=999)

    assert await importer.handle_notification(MELI, notification) is None
    assert sales.created == []


"""
4. Polling
"""

@pytest.mark.asyncio
async def test_poll_advances_last_sync(importer, session_factory, tenant_id, connected, mock_marketplace, sales):
    mock_marketplace.orders["1"] = order_payload("1")
    mock_marketplace.orders["2"] = order_payload("2")
    mock_marketplace.searched_order_ids = ["1", "2"]
    before = utc_now()

    stats = await importer.poll_connection(connected)

    assert stats == {"found": 2, "imported": 2, "failed": 0}
    async with session_factory() as db:
        connection = await db.get(MarketplaceConnection, connected.id)
    assert ensure_utc(connection.last_sync_at) >= before - timedelta(seconds=1)


@pytest.mark.asyncio
async def test_poll_keeps_last_sync_when_an_import_fails(importer, session_factory, tenant_id, connected,
                                                         mock_marketplace, sales):
    mock_marketplace.orders["1"] = order_payload("1")
    mock_marketplace.searched_order_ids = ["1"]
    sales.should_fail = True

    stats = await importer.poll_connection(connected)

    assert stats == {"found": 1, "imported": 0, "failed": 1}
    async with session_factory() as db:
        connection = await db.get(MarketplaceConnection, connected.id)
    assert connection.last_sync_at is None


@pytest.mark.asyncio
async def test_poll_resumes_from_truncated_search(importer, session_factory, tenant_id, connected,
                                                  mock_marketplace, sales):
    resume_from = utc_now() - timedelta(hours=3)
    mock_marketplace.orders["1"] = order_payload("1")
    mock_marketplace.searched_order_ids = ["1"]
    mock_marketplace.search_resume_from = resume_from

    stats = await importer.poll_connection(connected)

    assert stats == {"found": 1, "imported": 1, "failed": 0}
    async with session_factory() as db:
        connection = await db.get(MarketplaceConnection, connected.id)
    assert ensure_utc(connection.last_sync_at) == resume_from


@pytest.mark.asyncio
async def test_poll_all_connections(session_factory, adapters, sales, settings, tenant_id, connected,
                                    mock_marketplace):
    mock_marketplace.orders["1"] = order_payload("1")
    mock_marketplace.searched_order_ids = ["1"]

    totals = await poll_all_connections(session_factory, adapters, sales, settings=settings)

    assert totals == {"connections": 1, "found": 1, "imported": 1, "failed": 0}
    assert len(sales.created) == 1
