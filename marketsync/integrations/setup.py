"""
Wiring of marketplace adapters and internal collaborators from settings.

Called once at startup (FastAPI lifespan, worker entry point) so every
worker task in the process shares the same adapter instances and with them
the per-connection rate-limit gates.
"""

import logging
from dataclasses import dataclass
from typing import Dict

from marketsync.core.config import get_settings
from marketsync.core.enums import Marketplace
from marketsync.integrations.base import MarketplaceAdapter
from marketsync.integrations.collaborators import (
    CatalogProvider,
    HttpCatalogService,
    HttpInventoryService,
    HttpSalesService,
    InventoryProvider,
    OrderSink,
)
from marketsync.integrations.platforms.mercadolivre import MercadoLivreClient

logger = logging.getLogger(__name__)


@dataclass
class Collaborators:
    inventory: InventoryProvider
    catalog: CatalogProvider
    sales: OrderSink


def build_marketplace_adapters(settings=None) -> Dict[Marketplace, MarketplaceAdapter]:
    settings = settings or get_settings()
    adapters: Dict[Marketplace, MarketplaceAdapter] = {}

    if settings.MERCADOLIVRE_CLIENT_ID and settings.MERCADOLIVRE_CLIENT_SECRET:
        adapters[Marketplace.MERCADO_LIVRE] = MercadoLivreClient.from_settings(settings)
        logger.info("Registered Mercado Livre adapter")
    else:
        logger.info("Mercado Livre credentials not configured, skipping registration.")

    return adapters


def build_collaborators(settings=None) -> Collaborators:
    settings = settings or get_settings()
    timeout = settings.COLLABORATOR_TIMEOUT
    return Collaborators(
        inventory=HttpInventoryService(settings.INVENTORY_SERVICE_URL, timeout=timeout),
        catalog=HttpCatalogService(settings.CATALOG_SERVICE_URL, timeout=timeout),
        sales=HttpSalesService(settings.SALES_SERVICE_URL, timeout=timeout),
    )
