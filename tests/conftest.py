# tests/conftest.py
import os

# Must be set before marketsync is imported: the database module builds its engine at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SYNC_WORKERS_ENABLED", "false")

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from marketsync import models  # noqa: F401
from marketsync.core.config import Settings
from marketsync.core.crypto import TokenCipher
from marketsync.core.enums import ConnectionStatus, ListingStatus, Marketplace
from marketsync.core.utils import utc_now
from marketsync.database import Base
from marketsync.models.connection import MarketplaceConnection
from marketsync.models.listing import MarketplaceListing, variant_key

from tests.mocks import FakeCatalog, FakeInventory, FakeSales, MockMarketplace

TEST_SECRET_KEY = os.environ["SECRET_KEY"]


@pytest.fixture
def settings():
    """Provide test settings"""
    return Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        SECRET_KEY=TEST_SECRET_KEY,
        MERCADOLIVRE_CLIENT_ID="test-client",
        MERCADOLIVRE_CLIENT_SECRET="test-secret",
        MERCADOLIVRE_REDIRECT_URI="https://sync.example.test/callback",
        SYNC_RETRY_BASE_DELAY=0,
        SYNC_MAX_RETRIES=3,
        COLLABORATOR_TIMEOUT=5,
        SCHEDULER_ENABLED=False,
        SYNC_WORKERS_ENABLED=False,
    )


@pytest.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite per test so separate sessions really are separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Provide a database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def cipher():
    return TokenCipher(TEST_SECRET_KEY)


@pytest.fixture
def tenant_id():
    return uuid.uuid4()


@pytest.fixture
def mock_marketplace():
    return MockMarketplace()


@pytest.fixture
def adapters(mock_marketplace):
    return {Marketplace.MERCADO_LIVRE: mock_marketplace}


@pytest.fixture
def inventory():
    return FakeInventory()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def sales():
    return FakeSales()


@pytest.fixture
def make_connection(db_session, cipher):
    """Factory for persisted connections with encrypted tokens"""
    async def _make(tenant_id, *, status=ConnectionStatus.CONNECTED, expires_in=timedelta(hours=6),
                    external_user_id="123456", access_token="access-0", refresh_token="refresh-0"):
        connection = MarketplaceConnection(
            tenant_id=tenant_id,
            marketplace=Marketplace.MERCADO_LIVRE,
            external_user_id=external_user_id,
            access_token_encrypted=cipher.encrypt(access_token),
            refresh_token_encrypted=cipher.encrypt(refresh_token),
            token_expires_at=utc_now() + expires_in if expires_in is not None else None,
            status=status,
        )
        db_session.add(connection)
        await db_session.commit()
        return connection
    return _make


@pytest.fixture
def make_listing(db_session):
    async def _make(tenant_id, product_id, *, variant_id=None, listing_id="MLB1", quantity=0,
                    price="100.00", status=ListingStatus.ACTIVE, external_variation_id=None):
        listing = MarketplaceListing(
            tenant_id=tenant_id,
            product_id=product_id,
            variant_id=variant_id,
            variant_key=variant_key(variant_id),
            marketplace=Marketplace.MERCADO_LIVRE,
            listing_id=listing_id,
            external_variation_id=external_variation_id,
            title="Test Guitar",
            price=Decimal(price) if price is not None else None,
            quantity=quantity,
            status=status,
        )
        db_session.add(listing)
        await db_session.commit()
        return listing
    return _make
