import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel

from marketsync.core.enums import ListingStatus, Marketplace


@dataclass
class ConnectionContext:
    """What an adapter needs to act on behalf of one tenant's connection."""
    tenant_id: uuid.UUID
    marketplace: Marketplace
    access_token: str = field(repr=False)
    external_user_id: Optional[str] = None

    @property
    def rate_limit_key(self) -> str:
        return f"{self.tenant_id}:{Marketplace(self.marketplace).value}"


class TokenGrant(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    external_user_id: Optional[str] = None


class VariationDraft(BaseModel):
    price: Decimal
    quantity: int = 0
    sku: Optional[str] = None
    attributes: Dict[str, str] = {}  # e.g. {"COLOR": "Azul", "SIZE": "M"}
    picture_ids: List[str] = []


class ListingDraft(BaseModel):
    title: str
    price: Decimal
    quantity: int = 0
    sku: Optional[str] = None
    category_id: Optional[str] = None
    picture_ids: List[str] = []
    variations: List[VariationDraft] = []


class OrderSearchResult(BaseModel):
    order_ids: List[str] = []
    truncated: bool = False
    # Set when truncated: creation date of the last order returned. Orders not
    # returned were created, and so last updated, no earlier than this.
    resume_from: Optional[datetime] = None


class RemoteVariation(BaseModel):
    variation_id: str
    quantity: Optional[int] = None
    price: Optional[Decimal] = None
    sku: Optional[str] = None
    attributes: Dict[str, str] = {}


class RemoteListing(BaseModel):
    listing_id: str
    status: Optional[ListingStatus] = None
    quantity: Optional[int] = None
    price: Optional[Decimal] = None
    title: Optional[str] = None
    sku: Optional[str] = None
    thumbnail: Optional[str] = None
    variations: List[RemoteVariation] = []


class MarketplaceAdapter(ABC):
    """
    Per-marketplace boundary used by the sync engine.

    Implementations translate HTTP outcomes into the exception taxonomy in
    ``marketsync.core.exceptions``: TransientMarketplaceError for timeouts,
    429 and 5xx; MarketplaceAuthError for 401/403; PermanentMarketplaceError
    for any other rejection.
    """

    marketplace: ClassVar[Marketplace]
    ORDER_TOPICS: ClassVar[frozenset] = frozenset()
    ORDER_RESOURCE_PATTERN: ClassVar[re.Pattern] = re.compile(r"^/orders/(\d+)$")
    ITEM_TOPICS: ClassVar[frozenset] = frozenset()
    ITEM_RESOURCE_PATTERN: ClassVar[re.Pattern] = re.compile(r"^/items/([A-Z]+\d+)$")
    STATUS_MAP: ClassVar[Dict[str, ListingStatus]] = {}

    # OAuth
    @abstractmethod
    def authorization_url(self, state: str) -> str:
        """URL the tenant is redirected to for consent"""
        pass

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenGrant:
        pass

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        pass

    @abstractmethod
    async def revoke(self, ctx: ConnectionContext) -> None:
        pass

    # Listings
    @abstractmethod
    async def create_listing(self, ctx: ConnectionContext, draft: ListingDraft) -> RemoteListing:
        pass

    @abstractmethod
    async def update_quantity(self, ctx: ConnectionContext, listing_id: str, quantity: int,
                              variation_id: Optional[str] = None) -> RemoteListing:
        pass

    @abstractmethod
    async def update_price(self, ctx: ConnectionContext, listing_id: str, price: Decimal,
                           variation_id: Optional[str] = None) -> RemoteListing:
        pass

    @abstractmethod
    async def get_listing(self, ctx: ConnectionContext, listing_id: str) -> RemoteListing:
        pass

    @abstractmethod
    async def list_seller_listings(self, ctx: ConnectionContext, status: str = "active") -> List[str]:
        """Ids of the seller's listings in ``status``, whether or not they are linked yet"""
        pass

    @abstractmethod
    async def upload_picture(self, ctx: ConnectionContext, content: bytes,
                             filename: str = "picture.jpg") -> str:
        """Upload image bytes and return the marketplace picture id"""
        pass

    # Orders
    @abstractmethod
    async def get_order(self, ctx: ConnectionContext, external_order_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def search_orders(self, ctx: ConnectionContext, since: datetime) -> OrderSearchResult:
        """Ids of orders changed since ``since``"""
        pass

    # Helpers shared by implementations
    def is_order_topic(self, topic: Optional[str]) -> bool:
        return bool(topic) and topic.strip().lower() in self.ORDER_TOPICS

    def order_id_from_resource(self, resource: Optional[str]) -> Optional[str]:
        if not resource:
            return None
        match = self.ORDER_RESOURCE_PATTERN.match(resource.strip())
        return match.group(1) if match else None

    def is_item_topic(self, topic: Optional[str]) -> bool:
        return bool(topic) and topic.strip().lower() in self.ITEM_TOPICS

    def listing_id_from_resource(self, resource: Optional[str]) -> Optional[str]:
        if not resource:
            return None
        match = self.ITEM_RESOURCE_PATTERN.match(resource.strip())
        return match.group(1) if match else None

    def normalize_listing_status(self, raw_status: Optional[str]) -> Optional[ListingStatus]:
        if not raw_status:
            return None
        return self.STATUS_MAP.get(raw_status.lower())
