from .mock_marketplace import MockMarketplace
from .fake_collaborators import FakeCatalog, FakeInventory, FakeSales

__all__ = ["MockMarketplace", "FakeCatalog", "FakeInventory", "FakeSales"]
