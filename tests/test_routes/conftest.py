import pytest
from httpx import ASGITransport, AsyncClient

from marketsync.dependencies import get_db
from marketsync.integrations.setup import Collaborators
from marketsync.main import app
from marketsync.routes import webhooks


@pytest.fixture
async def client(session_factory, adapters, inventory, catalog, sales, monkeypatch):
    """AsyncClient against the app with test adapters, fake collaborators and the test database.

    ASGITransport does not run the lifespan, so app.state is populated here.
    """
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.state.adapters = adapters
    app.state.collaborators = Collaborators(inventory=inventory, catalog=catalog, sales=sales)
    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(webhooks, "async_session", session_factory)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def tenant_headers(tenant_id):
    return {"X-Tenant-ID": str(tenant_id)}
