"""
Shared enums used by models, services and schemas.
"""

from enum import Enum, IntEnum


class Marketplace(str, Enum):
    MERCADO_LIVRE = "MERCADO_LIVRE"

    @property
    def slug(self):
        return self.value.lower().replace('_', '-')

    @classmethod
    def from_slug(cls, value: str) -> "Marketplace":
        normalized = value.strip().upper().replace('-', '_')
        return cls(normalized)


class ConnectionStatus(str, Enum):
    """OAuth connection lifecycle"""
    PENDING = "PENDING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"
    DISCONNECTED = "DISCONNECTED"


class SyncType(str, Enum):
    STOCK = "STOCK"
    PRICE = "PRICE"


class SyncPriority(IntEnum):
    NORMAL = 0
    HIGH = 1


class SyncStatus(str, Enum):
    """Queue item and sync log status values"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    FAILED = "FAILED"

    @classmethod
    def active(cls):
        return (cls.PENDING, cls.PROCESSING)

    @classmethod
    def terminal(cls):
        return (cls.SUCCESS, cls.FAILED)


class ListingStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CLOSED = "CLOSED"
    ERROR = "ERROR"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class RuleScope(IntEnum):
    """Safety margin rule priority; lower value wins"""
    PRODUCT = 1
    CATEGORY = 2
    GLOBAL = 3
