import uuid

import pytest
from sqlalchemy import select

from marketsync.core.enums import ListingStatus
from marketsync.models.listing import MarketplaceListing
from marketsync.models.marketplace_order import MarketplaceOrder

ORDER_NOTIFICATION = {
    "resource": "/orders/2000003508419013",
    "user_id": 123456,
    "topic": "orders_v2",
    "application_id": 2069392825111111,
    "attempts": 1,
}


def order_payload():
    return {
        "id": 2000003508419013,
        "status": "paid",
        "payments": [{"status": "approved"}],
        "buyer": {"id": 1, "nickname": "COMPRADOR"},
        "order_items": [{"item": {"id": "MLB1"}, "quantity": 1, "unit_price": 100}],
        "total_amount": 100,
    }


@pytest.mark.asyncio
async def test_order_notification_imports_in_background(client, session_factory, tenant_id, make_connection,
                                                        mock_marketplace, sales):
    await make_connection(tenant_id)
    mock_marketplace.orders["2000003508419013"] = order_payload()

    response = await client.post("/api/webhooks/mercado-livre", json=ORDER_NOTIFICATION)

    assert response.status_code == 200
    assert response.json() == {"status": "received"}
    async with session_factory() as db:
        [order] = (await db.execute(select(MarketplaceOrder))).scalars().all()
    assert order.external_order_id == "2000003508419013"
    assert order.internal_order_id == "SO-1"


@pytest.mark.asyncio
async def test_redelivered_notification_does_not_duplicate(client, tenant_id, make_connection,
                                                           mock_marketplace, sales):
    await make_connection(tenant_id)
    mock_marketplace.orders["2000003508419013"] = order_payload()

    await client.post("/api/webhooks/mercado-livre", json=ORDER_NOTIFICATION)
    response = await client.post("/api/webhooks/mercado-livre", json={**ORDER_NOTIFICATION, "attempts": 2})

    assert response.status_code == 200
    assert len(sales.created) == 1


@pytest.mark.asyncio
async def test_background_failure_still_acknowledged(client, tenant_id, make_connection, mock_marketplace, sales):
    await make_connection(tenant_id)
    mock_marketplace.orders["2000003508419013"] = order_payload()
    sales.should_fail = True

    response = await client.post("/api/webhooks/mercado-livre", json=ORDER_NOTIFICATION)

    assert response.status_code == 200
    assert sales.created == []


@pytest.mark.asyncio
async def test_other_topics_are_ignored(client):
    response = await client.post(
        "/api/webhooks/mercado-livre",
        json={"resource": "/questions/5036111111", "user_id": 123456, "topic": "questions"},
    )

    assert response.status_code == 200
    assert response.json() == {"status": "ignored"}


@pytest.mark.asyncio
async def test_item_notification_mirrors_listing_status(client, session_factory, tenant_id, make_connection,
                                                        make_listing, mock_marketplace):
    await make_connection(tenant_id)
    listing = await make_listing(tenant_id, uuid.uuid4(), listing_id="MLB555")
    mock_marketplace.add_listing("MLB555", status=ListingStatus.PAUSED)

    response = await client.post(
        "/api/webhooks/mercado-livre",
        json={"resource": "/items/MLB555", "user_id": 123456, "topic": "items"},
    )

    assert response.status_code == 200
    assert response.json() == {"status": "received"}
    async with session_factory() as db:
        assert (await db.get(MarketplaceListing, listing.id)).status == ListingStatus.PAUSED


@pytest.mark.asyncio
async def test_item_notification_for_unlinked_item(client, session_factory, tenant_id, make_connection,
                                                   mock_marketplace):
    await make_connection(tenant_id)
    mock_marketplace.add_listing("MLB556")

    response = await client.post(
        "/api/webhooks/mercado-livre",
        json={"resource": "/items/MLB556", "user_id": 123456, "topic": "items"},
    )

    assert response.status_code == 200
    async with session_factory() as db:
        assert (await db.execute(select(MarketplaceListing))).scalars().all() == []


@pytest.mark.asyncio
async def test_malformed_item_resource(client):
    response = await client.post(
        "/api/webhooks/mercado-livre",
        json={"resource": "/items/MLB555/description", "user_id": 123456, "topic": "items"},
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_malformed_order_resource(client):
    response = await client.post(
        "/api/webhooks/mercado-livre",
        json={"resource": "/orders/not-a-number", "user_id": 123456, "topic": "orders_v2"},
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_missing_fields_rejected(client):
    response = await client.post("/api/webhooks/mercado-livre", json={"topic": "orders_v2"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unknown_marketplace(client):
    response = await client.post("/api/webhooks/amazon", json=ORDER_NOTIFICATION)

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_webhook_needs_no_auth_and_no_tenant(client):
    response = await client.post("/api/webhooks/mercado-livre", json={**ORDER_NOTIFICATION, "topic": "questions"})

    assert response.status_code == 200
