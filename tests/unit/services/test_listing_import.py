import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from marketsync.core.enums import ConnectionStatus, ListingStatus, Marketplace
from marketsync.core.exceptions import ConnectionUnavailableError, ListingNotFoundError, TransientMarketplaceError
from marketsync.integrations.base import RemoteListing, RemoteVariation
from marketsync.models.listing import MarketplaceListing
from marketsync.models.sync_queue import SyncQueueItem
from marketsync.schemas.webhook import MarketplaceNotification
from marketsync.services.listing_import import ListingImporter, product_import_from

MELI = Marketplace.MERCADO_LIVRE

SHIRT_VARIATIONS = [
    {"variation_id": "1770001", "quantity": 3, "price": Decimal("59.90"), "sku": "CAM-AZ-M",
     "attributes": {"COLOR": "Azul", "SIZE": "M"}},
    {"variation_id": "1770002", "quantity": 0, "price": Decimal("64.90"), "sku": None,
     "attributes": {"COLOR": "Vermelha", "SIZE": "G"}},
]


@pytest.fixture
def importer(db_session, adapters, catalog, settings, cipher):
    return ListingImporter(db_session, adapters, catalog, settings=settings, cipher=cipher)


async def _listings(db_session):
    result = await db_session.execute(select(MarketplaceListing).order_by(MarketplaceListing.id))
    return list(result.scalars().all())


def test_product_import_from_item_without_sku():
    remote = RemoteListing(listing_id="MLB42", title="Violão Yamaha", price=Decimal("899.00"))

    product = product_import_from(remote)

    assert product.sku == "MLB42"
    assert product.name == "Violão Yamaha"
    assert product.variants == []


def test_product_import_from_item_with_variations():
    remote = RemoteListing(listing_id="MLB43", title="Camiseta", sku="CAM-1",
                           variations=[RemoteVariation(**variation) for variation in SHIRT_VARIATIONS])

    product = product_import_from(remote)

    assert [variant.name for variant in product.variants] == ["Camiseta - Azul - M", "Camiseta - Vermelha - G"]
    assert product.variants[0].external_variation_id == "1770001"


"""
1. Preview
"""

@pytest.mark.asyncio
async def test_preview_flags_linked_items(importer, tenant_id, make_connection, make_listing, mock_marketplace):
    await make_connection(tenant_id)
    mock_marketplace.add_listing("MLB1", title="Fender Stratocaster", sku="FS-1")
    mock_marketplace.add_listing("MLB2", title="Camiseta", variations=SHIRT_VARIATIONS)
    await make_listing(tenant_id, uuid.uuid4(), listing_id="MLB1")

    previews = await importer.preview(tenant_id, MELI)

    assert [(p.listing_id, p.already_imported, p.has_variations) for p in previews] == [
        ("MLB1", True, False),
        ("MLB2", False, True),
    ]
    assert previews[0].title == "Fender Stratocaster"
    assert previews[0].sku == "FS-1"


@pytest.mark.asyncio
async def test_preview_requires_connection(importer, tenant_id, make_connection):
    await make_connection(tenant_id, status=ConnectionStatus.DISCONNECTED)

    with pytest.raises(ConnectionUnavailableError):
        await importer.preview(tenant_id, MELI)


"""
2. Import
"""

@pytest.mark.asyncio
async def test_import_links_simple_item(importer, db_session, tenant_id, make_connection, catalog,
                                        mock_marketplace):
    await make_connection(tenant_id)
    mock_marketplace.add_listing("MLB1", title="Fender Stratocaster", sku="FS-1", price="4999.00", quantity=2)

    summary = await importer.import_listings(tenant_id, MELI, ["MLB1"])

    assert (summary.imported, summary.skipped, summary.errors) == (1, 0, [])
    [imported] = catalog.imported
    assert (imported.name, imported.sku, imported.price) == ("Fender Stratocaster", "FS-1", Decimal("4999.00"))
    [listing] = await _listings(db_session)
    assert listing.listing_id == "MLB1"
    assert listing.variant_id is None
    assert listing.quantity == 2
    assert listing.status == ListingStatus.ACTIVE
    assert listing.product_id in catalog.products
    # Nothing is pushed back to the marketplace on import
    assert (await db_session.execute(select(SyncQueueItem))).scalars().all() == []
    assert mock_marketplace.update_calls == []


@pytest.mark.asyncio
async def test_import_links_one_row_per_variation(importer, db_session, tenant_id, make_connection, catalog,
                                                  mock_marketplace):
    await make_connection(tenant_id)
    mock_marketplace.add_listing("MLB2", title="Camiseta", sku="CAM-1", variations=SHIRT_VARIATIONS)

    summary = await importer.import_listings(tenant_id, MELI, ["MLB2"])

    assert summary.imported == 1
    listings = await _listings(db_session)
    assert [(listing.listing_id, listing.external_variation_id) for listing in listings] == [
        ("MLB2", "1770001"),
        ("MLB2", "1770002"),
    ]
    product_id = listings[0].product_id
    assert {listing.product_id for listing in listings} == {product_id}
    assert {listing.variant_id for listing in listings} == {v.variant_id for v in catalog.variants[product_id]}
    assert listings[1].price == Decimal("64.90")


@pytest.mark.asyncio
async def test_import_skips_linked_and_duplicate_ids(importer, tenant_id, make_connection, make_listing, catalog,
                                                     mock_marketplace):
    await make_connection(tenant_id)
    mock_marketplace.add_listing("MLB1")
    mock_marketplace.add_listing("MLB3")
    await make_listing(tenant_id, uuid.uuid4(), listing_id="MLB1")

    summary = await importer.import_listings(tenant_id, MELI, ["MLB1", "MLB3", "MLB3"])

    assert (summary.imported, summary.skipped) == (1, 1)
    assert len(catalog.imported) == 1


@pytest.mark.asyncio
async def test_import_reports_failures_and_continues(importer, db_session, tenant_id, make_connection, catalog,
                                                     mock_marketplace):
    await make_connection(tenant_id)
    mock_marketplace.add_listing("MLB3")

    summary = await importer.import_listings(tenant_id, MELI, ["MLB404", "MLB3"])

    assert summary.imported == 1
    [error] = summary.errors
    assert error.startswith("MLB404:")
    assert [listing.listing_id for listing in await _listings(db_session)] == ["MLB3"]


@pytest.mark.asyncio
async def test_import_catalog_outage_links_nothing(importer, db_session, tenant_id, make_connection, catalog,
                                                   mock_marketplace):
    await make_connection(tenant_id)
    mock_marketplace.add_listing("MLB3")
    catalog.import_should_fail = True

    summary = await importer.import_listings(tenant_id, MELI, ["MLB3"])

    assert summary.imported == 0
    assert summary.errors == ["MLB3: catalog unavailable"]
    assert await _listings(db_session) == []


"""
3. Item status
"""

@pytest.mark.asyncio
async def test_item_notification_refreshes_status(importer, db_session, tenant_id, make_connection, make_listing,
                                                   mock_marketplace):
    await make_connection(tenant_id)
    listing = await make_listing(tenant_id, uuid.uuid4(), listing_id="MLB5")
    mock_marketplace.add_listing("MLB5", status=ListingStatus.PAUSED)
    notification = MarketplaceNotification(resource="/items/MLB5", topic="items", user_id=123456)

    [refreshed] = await importer.handle_notification(MELI, notification)

    assert refreshed.id == listing.id
    assert refreshed.status == ListingStatus.PAUSED


@pytest.mark.asyncio
async def test_item_notification_for_unknown_seller(importer, tenant_id, make_connection, mock_marketplace):
    await make_connection(tenant_id)
    notification = MarketplaceNotification(resource="/items/MLB5", topic="items", user_id=999)

    assert await importer.handle_notification(MELI, notification) == []


@pytest.mark.asyncio
async def test_refresh_unlinked_listing(importer, tenant_id, make_connection, mock_marketplace):
    await make_connection(tenant_id)
    mock_marketplace.add_listing("MLB6")

    with pytest.raises(ListingNotFoundError):
        await importer.refresh_listing(tenant_id, MELI, "MLB6")


@pytest.mark.asyncio
async def test_refresh_marketplace_outage_propagates(importer, tenant_id, make_connection, make_listing,
                                                     mock_marketplace):
    await make_connection(tenant_id)
    await make_listing(tenant_id, uuid.uuid4(), listing_id="MLB7")
    mock_marketplace.should_fail = TransientMarketplaceError("503", status_code=503)

    with pytest.raises(TransientMarketplaceError):
        await importer.refresh_listing(tenant_id, MELI, "MLB7")
