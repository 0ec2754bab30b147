"""Background refresh of marketplace tokens nearing expiry."""

import logging
from typing import Dict

from marketsync.core.config import get_settings
from marketsync.core.crypto import TokenCipher
from marketsync.core.enums import Marketplace
from marketsync.core.exceptions import ConnectionUnavailableError, TokenRefreshError
from marketsync.services.connection_store import ConnectionStore

logger = logging.getLogger(__name__)


class TokenRefresher:
    """
    Scans CONNECTED connections whose token expires within the threshold and
    refreshes each one. A failed refresh puts that connection in ERROR and
    the scan moves on to the next.
    """

    def __init__(self, session_factory, adapters, settings=None, cipher: TokenCipher = None):
        self.session_factory = session_factory
        self.adapters = adapters
        self.settings = settings or get_settings()
        self.cipher = cipher or TokenCipher.from_settings(self.settings)

    async def run_once(self, threshold_minutes: int = None) -> Dict[str, int]:
        if threshold_minutes is None:
            threshold_minutes = self.settings.TOKEN_REFRESH_THRESHOLD_MINUTES
        stats = {"checked": 0, "refreshed": 0, "skipped": 0, "failed": 0}

        async with self.session_factory() as db:
            store = ConnectionStore(db, self.adapters, cipher=self.cipher, settings=self.settings)
            connections = await store.list_expiring(threshold_minutes)
            stats["checked"] = len(connections)

            for connection in connections:
                tenant_id = connection.tenant_id
                marketplace = Marketplace(connection.marketplace).value
                try:
                    if await store.refresh_if_expiring(connection, threshold_minutes):
                        stats["refreshed"] += 1
                    else:
                        stats["skipped"] += 1
                except (TokenRefreshError, ConnectionUnavailableError) as e:
                    stats["failed"] += 1
                    logger.warning("Could not refresh %s token for tenant %s: %s", marketplace, tenant_id, e)

        if stats["checked"]:
            logger.info("Token refresh run: %s", stats)
        return stats
