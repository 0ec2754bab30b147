import asyncio

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from marketsync.core.exceptions import (
    CollaboratorError,
    ConnectionUnavailableError,
    MarketplaceAuthError,
    PermanentMarketplaceError,
    ProductNotFoundError,
    TokenDecryptionError,
    TransientMarketplaceError,
    ValidationError,
    is_authorization_failure,
    is_transient,
)


@pytest.mark.parametrize("error", [
    TransientMarketplaceError("503", status_code=503),
    CollaboratorError("inventory unavailable"),
    asyncio.TimeoutError(),
    httpx.ConnectError("refused"),
    ProductNotFoundError("not in catalog yet"),
    OperationalError("SELECT 1", {}, Exception("database is locked")),
    RuntimeError("something unexpected"),
])
def test_retryable_errors(error):
    assert is_transient(error)


@pytest.mark.parametrize("error", [
    PermanentMarketplaceError("item closed", status_code=400),
    MarketplaceAuthError("invalid token", status_code=401),
    ConnectionUnavailableError("connection is ERROR"),
    TokenDecryptionError("bad ciphertext"),
    ValidationError("no adapter registered"),
])
def test_permanent_errors(error):
    assert not is_transient(error)


def test_authorization_failures():
    assert is_authorization_failure(MarketplaceAuthError("revoked", status_code=403))
    assert is_authorization_failure(TokenDecryptionError("bad ciphertext"))
    assert not is_authorization_failure(PermanentMarketplaceError("item closed", status_code=400))
