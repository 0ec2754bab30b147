import asyncio
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from marketsync.core.enums import ListingStatus, Marketplace
from marketsync.core.exceptions import MarketplaceAuthError, PermanentMarketplaceError
from marketsync.core.utils import utc_now
from marketsync.integrations.base import (
    ConnectionContext,
    ListingDraft,
    MarketplaceAdapter,
    OrderSearchResult,
    RemoteListing,
    RemoteVariation,
    TokenGrant,
)


class MockMarketplace(MarketplaceAdapter):
    marketplace = Marketplace.MERCADO_LIVRE
    ORDER_TOPICS = frozenset({"orders_v2", "orders"})
    ITEM_TOPICS = frozenset({"items"})
    STATUS_MAP = {"active": ListingStatus.ACTIVE, "paused": ListingStatus.PAUSED, "closed": ListingStatus.CLOSED}

    def __init__(self):
        self.listings: Dict[str, Dict[str, Any]] = {}  # listing_id -> state
        self.orders: Dict[str, Dict[str, Any]] = {}  # order_id -> payload
        self.update_calls: list = []  # Track calls for testing
        self.created: List[ListingDraft] = []
        self.refresh_calls: List[str] = []
        self.revoked: List[ConnectionContext] = []
        self.should_fail: Optional[Exception] = None  # Raised by every listing call when set
        self.refresh_error: Optional[Exception] = None
        self.exchange_error: Optional[Exception] = None
        self.searched_order_ids: List[str] = []
        self.search_resume_from = None  # Simulates a search cut short at the page cap
        self.seller_listing_ids: List[str] = []
        self._next_listing = 1000
        self._next_variation = 17000
        self._token_counter = 0
        self._used_refresh_tokens = set()

    # OAuth
    def authorization_url(self, state: str) -> str:
        return f"https://auth.example.test/authorize?state={state}"

    def _grant(self, user_id: Optional[str] = "123456") -> TokenGrant:
        self._token_counter += 1
        return TokenGrant(
            access_token=f"access-{self._token_counter}",
            refresh_token=f"refresh-{self._token_counter}",
            expires_at=utc_now() + timedelta(hours=6),
            external_user_id=user_id,
        )

    async def exchange_code(self, code: str) -> TokenGrant:
        if self.exchange_error:
            raise self.exchange_error
        return self._grant()

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls.append(refresh_token)
        await asyncio.sleep(0)
        if self.refresh_error:
            raise self.refresh_error
        # Refresh tokens are single use, like the real thing
        if refresh_token in self._used_refresh_tokens:
            raise MarketplaceAuthError("invalid_grant", status_code=400)
        self._used_refresh_tokens.add(refresh_token)
        return self._grant()

    async def revoke(self, ctx: ConnectionContext) -> None:
        self.revoked.append(ctx)

    # Listings
    def _check(self):
        if self.should_fail:
            raise self.should_fail

    def _remote(self, listing_id: str) -> RemoteListing:
        state = self.listings[listing_id]
        return RemoteListing(
            listing_id=listing_id,
            status=state["status"],
            quantity=state["quantity"],
            price=state["price"],
            title=state.get("title"),
            sku=state.get("sku"),
            variations=[RemoteVariation(**variation) for variation in state.get("variations", [])],
        )

    def add_listing(self, listing_id, *, title="Remote item", price="100.00", quantity=5, sku=None,
                    status=ListingStatus.ACTIVE, variations=()):
        """Seed a listing that exists on the marketplace, e.g. one created by hand"""
        self.listings[listing_id] = {
            "status": status,
            "quantity": quantity,
            "price": Decimal(price),
            "title": title,
            "sku": sku,
            "variations": [dict(variation) for variation in variations],
        }
        self.seller_listing_ids.append(listing_id)

    async def create_listing(self, ctx: ConnectionContext, draft: ListingDraft) -> RemoteListing:
        self._check()
        self._next_listing += 1
        listing_id = f"MLB{self._next_listing}"
        self.created.append(draft)
        variations = []
        for variation in draft.variations:
            self._next_variation += 1
            variations.append({
                "variation_id": str(self._next_variation),
                "quantity": variation.quantity,
                "price": variation.price,
                "sku": variation.sku,
                "attributes": dict(variation.attributes),
            })
        self.listings[listing_id] = {
            "status": ListingStatus.ACTIVE,
            "quantity": draft.quantity,
            "price": Decimal(str(draft.price)),
            "title": draft.title,
            "sku": draft.sku,
            "variations": variations,
        }
        return self._remote(listing_id)

    async def update_quantity(self, ctx, listing_id, quantity, variation_id=None) -> RemoteListing:
        self._check()
        self.update_calls.append({"listing_id": listing_id, "quantity": quantity, "token": ctx.access_token,
                                  "variation_id": variation_id})
        self.listings.setdefault(listing_id, {"status": ListingStatus.ACTIVE, "price": None})
        self.listings[listing_id]["quantity"] = quantity
        return self._remote(listing_id)

    async def update_price(self, ctx, listing_id, price, variation_id=None) -> RemoteListing:
        self._check()
        self.update_calls.append({"listing_id": listing_id, "price": price, "token": ctx.access_token,
                                  "variation_id": variation_id})
        self.listings.setdefault(listing_id, {"status": ListingStatus.ACTIVE, "quantity": None})
        self.listings[listing_id]["price"] = Decimal(str(price))
        return self._remote(listing_id)

    async def get_listing(self, ctx, listing_id) -> RemoteListing:
        self._check()
        if listing_id not in self.listings:
            raise PermanentMarketplaceError(f"Item {listing_id} not found", status_code=404)
        return self._remote(listing_id)

    async def list_seller_listings(self, ctx, status="active") -> List[str]:
        self._check()
        return list(self.seller_listing_ids)

    async def upload_picture(self, ctx, content: bytes, filename: str = "picture.jpg") -> str:
        return f"PIC-{len(content)}"

    # Orders
    async def get_order(self, ctx, external_order_id) -> Dict[str, Any]:
        return self.orders[str(external_order_id)]

    async def search_orders(self, ctx, since) -> OrderSearchResult:
        return OrderSearchResult(
            order_ids=list(self.searched_order_ids),
            truncated=self.search_resume_from is not None,
            resume_from=self.search_resume_from,
        )

    def clear_history(self):
        """Clear test history"""
        self.update_calls = []
        self.created = []
