from .connection import MarketplaceConnection
from .safety_margin_rule import SafetyMarginRule
from .listing import MarketplaceListing
from .sync_queue import SyncQueueItem
from .sync_log import SyncLogEntry
from .marketplace_order import MarketplaceOrder

# This ensures all models are registered with SQLAlchemy
__all__ = [
    'MarketplaceConnection',
    'SafetyMarginRule',
    'MarketplaceListing',
    'SyncQueueItem',
    'SyncLogEntry',
    'MarketplaceOrder',
]
