class BaseServiceError(Exception):
    """Base exception for all service-related errors."""
    pass

class ValidationError(BaseServiceError):
    """Raised when data validation fails at a boundary (rules, webhooks)."""
    pass

class SafetyMarginError(BaseServiceError):
    """Base exception for safety margin rule errors."""
    pass

class DuplicateRuleError(SafetyMarginError):
    """Raised when a rule already exists for the exact same scope."""
    pass

class RuleNotFoundError(SafetyMarginError):
    """Raised when a safety margin rule is not found."""
    pass

class ConnectionServiceError(BaseServiceError):
    """Base exception for marketplace connection errors."""
    pass

class ConnectionNotFoundError(ConnectionServiceError):
    """Raised when a tenant has no connection for a marketplace."""
    pass

class ConnectionUnavailableError(ConnectionServiceError):
    """Raised when a connection exists but is not CONNECTED."""
    pass

class TokenRefreshError(ConnectionServiceError):
    """Raised when the refresh-token grant fails."""
    pass

class TokenDecryptionError(ConnectionServiceError):
    """Raised when a stored token cannot be authenticated/decrypted."""
    pass

class ListingNotFoundError(BaseServiceError):
    """Raised when a marketplace listing is not found."""
    pass

class CollaboratorError(BaseServiceError):
    """Raised when an internal collaborator (inventory, catalog, sales) fails."""
    pass

class ProductNotFoundError(BaseServiceError):
    """Raised when the catalog does not know a product."""
    pass

class MarketplaceAPIError(BaseServiceError):
    """Raised when marketplace API calls fail."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code

class TransientMarketplaceError(MarketplaceAPIError):
    """Timeouts, 5xx, 429 and network failures. Worth retrying."""
    pass

class PermanentMarketplaceError(MarketplaceAPIError):
    """Request rejected in a way retrying will not fix."""
    pass

class MarketplaceAuthError(PermanentMarketplaceError):
    """401/403 or revoked token; the connection needs attention."""
    pass


PERMANENT_ERRORS = (PermanentMarketplaceError, ConnectionServiceError, ValidationError, SafetyMarginError)


def is_transient(exc: BaseException) -> bool:
    """
    Classify an exception raised while reconciling a queue item.

    Only rejections that retrying cannot fix are permanent. Anything else,
    including errors we do not recognise, goes back to the queue and is
    bounded by the item's retry counter.
    """
    return not isinstance(exc, PERMANENT_ERRORS)


def is_authorization_failure(exc: BaseException) -> bool:
    """Errors that should flip the connection to ERROR."""
    return isinstance(exc, (MarketplaceAuthError, TokenDecryptionError))
