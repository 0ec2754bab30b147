"""
Core module exports.
"""
from .enums import (
    Marketplace,
    ConnectionStatus,
    SyncType,
    SyncPriority,
    SyncStatus,
    ListingStatus,
    OrderStatus,
    RuleScope,
)

from .exceptions import (
    BaseServiceError,
    ValidationError,
    DuplicateRuleError,
    RuleNotFoundError,
    ConnectionNotFoundError,
    ConnectionUnavailableError,
    TokenRefreshError,
    TokenDecryptionError,
    ListingNotFoundError,
    CollaboratorError,
    ProductNotFoundError,
    MarketplaceAPIError,
    TransientMarketplaceError,
    PermanentMarketplaceError,
    MarketplaceAuthError,
)
