import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from marketsync.core.config import get_settings
from marketsync.core.enums import ListingStatus, Marketplace
from marketsync.core.exceptions import (
    MarketplaceAuthError,
    PermanentMarketplaceError,
    TransientMarketplaceError,
)
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
from marketsync.integrations.rate_limit import RateLimitRegistry

logger = logging.getLogger(__name__)


class MercadoLivreClient(MarketplaceAdapter):
    """
    Async client for the Mercado Livre REST API.

    Covers the OAuth grants, item create/update, picture upload and order
    lookups the sync engine needs. All calls go through ``_make_request``,
    which waits on the connection's shared rate-limit gate, retries 429/5xx
    with backoff and maps failures onto the marketplace exception taxonomy.

    Documentation: https://developers.mercadolivre.com.br/
    """

    marketplace = Marketplace.MERCADO_LIVRE
    ORDER_TOPICS = frozenset({"orders_v2", "orders"})
    ITEM_TOPICS = frozenset({"items"})
    STATUS_MAP = {
        "active": ListingStatus.ACTIVE,
        "paused": ListingStatus.PAUSED,
        "under_review": ListingStatus.PAUSED,
        "inactive": ListingStatus.PAUSED,
        "closed": ListingStatus.CLOSED,
        "not_yet_active": ListingStatus.PENDING,
        "payment_required": ListingStatus.PENDING,
    }
    ORDER_PAGE_SIZE = 50
    MAX_ORDER_PAGES = 20
    ITEM_PAGE_SIZE = 50
    MAX_ITEM_PAGES = 20

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        api_url: str = "https://api.mercadolibre.com",
        auth_url: str = "https://auth.mercadolivre.com.br/authorization",
        timeout: float = 30.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        currency_id: str = "BRL",
        default_category: str = "MLB1648",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.api_url = api_url.rstrip("/")
        self.auth_url = auth_url
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.currency_id = currency_id
        self.default_category = default_category
        self._transport = transport
        self.rate_limits = RateLimitRegistry(base_delay, max_delay, sleep=sleep)

    @classmethod
    def from_settings(cls, settings=None, **overrides) -> "MercadoLivreClient":
        settings = settings or get_settings()
        kwargs = dict(
            client_id=settings.MERCADOLIVRE_CLIENT_ID,
            client_secret=settings.MERCADOLIVRE_CLIENT_SECRET,
            redirect_uri=settings.MERCADOLIVRE_REDIRECT_URI,
            api_url=settings.MERCADOLIVRE_API_URL,
            auth_url=settings.MERCADOLIVRE_AUTH_URL,
            timeout=settings.MARKETPLACE_HTTP_TIMEOUT,
            max_attempts=settings.MARKETPLACE_MAX_ATTEMPTS,
            base_delay=settings.RATE_LIMIT_BASE_DELAY,
            max_delay=settings.RATE_LIMIT_MAX_DELAY,
            default_category=settings.MERCADOLIVRE_DEFAULT_CATEGORY,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def _get_headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    @staticmethod
    def _retry_after(response: httpx.Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            return float(value)
        except ValueError:
            return None

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        ctx: Optional[ConnectionContext] = None,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
        form: Optional[Dict] = None,
        files: Optional[Dict] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Make a request to the Mercado Livre API

        Raises:
            TransientMarketplaceError: timeout, network failure, 429 or 5xx after all attempts
            MarketplaceAuthError: 401/403
            PermanentMarketplaceError: any other 4xx
        """
        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        headers = self._get_headers(ctx.access_token if ctx else None)
        gate = self.rate_limits.gate(ctx.rate_limit_key if ctx else "oauth")
        last_error: Optional[TransientMarketplaceError] = None

        for attempt in range(1, self.max_attempts + 1):
            await gate.wait()
            logger.debug("Mercado Livre %s %s (attempt %s)", method, endpoint, attempt)
            try:
                async with httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport) as client:
                    response = await client.request(
                        method=method,
                        url=url,
                        headers=headers,
                        json=data,
                        params=params,
                        data=form,
                        files=files,
                    )
            except httpx.TimeoutException as e:
                gate.penalize()
                last_error = TransientMarketplaceError(f"Timeout calling {method} {endpoint}: {e}")
                logger.warning("Mercado Livre timeout on %s %s (attempt %s)", method, endpoint, attempt)
                continue
            except httpx.RequestError as e:
                gate.penalize()
                last_error = TransientMarketplaceError(f"Network error calling {method} {endpoint}: {e}")
                logger.warning("Mercado Livre network error on %s %s: %s", method, endpoint, e)
                continue

            status_code = response.status_code
            if status_code == 429 or status_code >= 500:
                delay = gate.penalize(self._retry_after(response))
                last_error = TransientMarketplaceError(
                    f"Mercado Livre returned {status_code} for {method} {endpoint}: {response.text[:200]}",
                    status_code=status_code,
                )
                logger.warning("Mercado Livre %s on %s %s, backing off %.1fs",
                               status_code, method, endpoint, delay)
                continue

            gate.reset()
            if status_code in (401, 403):
                raise MarketplaceAuthError(
                    f"Mercado Livre rejected credentials ({status_code}): {response.text[:200]}",
                    status_code=status_code,
                )
            if status_code >= 400:
                raise PermanentMarketplaceError(
                    f"Mercado Livre request failed ({status_code}): {response.text[:200]}",
                    status_code=status_code,
                )
            if status_code == 204 or not response.content:
                return {}
            return response.json()

        raise last_error

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------
    def authorization_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        return f"{self.auth_url}?{urlencode(params)}"

    def _grant_from_response(self, data: Dict[str, Any]) -> TokenGrant:
        if "access_token" not in data:
            raise PermanentMarketplaceError("Token response did not include an access_token")
        expires_in = int(data.get("expires_in") or 21600)
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=utc_now() + timedelta(seconds=expires_in),
            external_user_id=str(data["user_id"]) if data.get("user_id") is not None else None,
        )

    async def exchange_code(self, code: str) -> TokenGrant:
        form = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
        }
        data = await self._make_request("POST", "/oauth/token", form=form)
        return self._grant_from_response(data)

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        form = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
        }
        data = await self._make_request("POST", "/oauth/token", form=form)
        return self._grant_from_response(data)

    async def revoke(self, ctx: ConnectionContext) -> None:
        if not ctx.external_user_id:
            return
        await self._make_request(
            "DELETE", f"/users/{ctx.external_user_id}/applications/{self.client_id}", ctx=ctx
        )

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------
    @staticmethod
    def _seller_sku(data: Dict[str, Any]) -> Optional[str]:
        if data.get("seller_custom_field"):
            return data["seller_custom_field"]
        for attribute in data.get("attributes") or []:
            if attribute.get("id") == "SELLER_SKU" and attribute.get("value_name"):
                return attribute["value_name"]
        return None

    def _remote_variation(self, data: Dict[str, Any]) -> RemoteVariation:
        price = data.get("price")
        return RemoteVariation(
            variation_id=str(data["id"]),
            quantity=data.get("available_quantity"),
            price=Decimal(str(price)) if price is not None else None,
            sku=self._seller_sku(data),
            attributes={
                combination["id"]: combination.get("value_name") or ""
                for combination in data.get("attribute_combinations") or []
                if combination.get("id")
            },
        )

    def _remote_listing(self, data: Dict[str, Any], listing_id: Optional[str] = None) -> RemoteListing:
        price = data.get("price")
        return RemoteListing(
            listing_id=str(data.get("id") or listing_id),
            status=self.normalize_listing_status(data.get("status")),
            quantity=data.get("available_quantity"),
            price=Decimal(str(price)) if price is not None else None,
            title=data.get("title"),
            sku=self._seller_sku(data),
            thumbnail=data.get("thumbnail"),
            variations=[
                self._remote_variation(variation)
                for variation in data.get("variations") or []
                if variation.get("id") is not None
            ],
        )

    async def create_listing(self, ctx: ConnectionContext, draft: ListingDraft) -> RemoteListing:
        payload = {
            "title": draft.title[:60],
            "category_id": draft.category_id or self.default_category,
            "price": float(draft.price),
            "currency_id": self.currency_id,
            "available_quantity": draft.quantity,
            "buying_mode": "buy_it_now",
            "condition": "new",
            "listing_type_id": "gold_special",
            "pictures": [{"id": picture_id} for picture_id in draft.picture_ids],
        }
        if draft.sku:
            payload["seller_custom_field"] = draft.sku
        if draft.variations:
            # Item quantity is the sum of its variations
            del payload["available_quantity"]
            payload["variations"] = []
            for variation in draft.variations:
                entry = {
                    "price": float(variation.price),
                    "available_quantity": variation.quantity,
                    "attribute_combinations": [
                        {"id": name, "value_name": value} for name, value in variation.attributes.items()
                    ],
                    "picture_ids": variation.picture_ids or list(draft.picture_ids),
                }
                if variation.sku:
                    entry["seller_custom_field"] = variation.sku
                payload["variations"].append(entry)
        data = await self._make_request("POST", "/items", ctx=ctx, data=payload)
        logger.info("Created Mercado Livre listing %s for tenant %s", data.get("id"), ctx.tenant_id)
        return self._remote_listing(data)

    async def update_quantity(self, ctx, listing_id, quantity, variation_id=None) -> RemoteListing:
        if variation_id:
            payload = {"variations": [{"id": variation_id, "available_quantity": quantity}]}
        else:
            payload = {"available_quantity": quantity}
        data = await self._make_request("PUT", f"/items/{listing_id}", ctx=ctx, data=payload)
        return self._remote_listing(data, listing_id)

    async def update_price(self, ctx, listing_id, price, variation_id=None) -> RemoteListing:
        if variation_id:
            payload = {"variations": [{"id": variation_id, "price": float(price)}]}
        else:
            payload = {"price": float(price)}
        data = await self._make_request("PUT", f"/items/{listing_id}", ctx=ctx, data=payload)
        return self._remote_listing(data, listing_id)

    async def get_listing(self, ctx, listing_id) -> RemoteListing:
        data = await self._make_request("GET", f"/items/{listing_id}", ctx=ctx)
        return self._remote_listing(data, listing_id)

    async def list_seller_listings(self, ctx, status: str = "active") -> List[str]:
        if not ctx.external_user_id:
            raise PermanentMarketplaceError("Connection has no seller id to list items for")
        listing_ids: List[str] = []
        offset = 0
        for _ in range(self.MAX_ITEM_PAGES):
            params = {"status": status, "offset": offset, "limit": self.ITEM_PAGE_SIZE}
            data = await self._make_request("GET", f"/users/{ctx.external_user_id}/items/search",
                                            ctx=ctx, params=params)
            results = data.get("results", [])
            listing_ids.extend(str(listing_id) for listing_id in results)
            offset += self.ITEM_PAGE_SIZE
            if not results or offset >= data.get("paging", {}).get("total", 0):
                return listing_ids
        logger.warning("Item search for seller %s stopped at %s listings", ctx.external_user_id, len(listing_ids))
        return listing_ids

    async def upload_picture(self, ctx, content: bytes, filename: str = "picture.jpg") -> str:
        files = {"file": (filename, content, "application/octet-stream")}
        data = await self._make_request("POST", "/pictures/items/upload", ctx=ctx, files=files)
        return str(data["id"])

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    async def get_order(self, ctx, external_order_id) -> Dict[str, Any]:
        return await self._make_request("GET", f"/orders/{external_order_id}", ctx=ctx)

    @staticmethod
    def _parse_date(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None

    async def search_orders(self, ctx, since: datetime) -> OrderSearchResult:
        """
        Orders last updated since ``since``, oldest first, at most
        ``MAX_ORDER_PAGES`` pages. When the cap cuts the search short the
        result is marked truncated with the point the next search can resume from.
        """
        if not ctx.external_user_id:
            raise PermanentMarketplaceError("Connection has no seller id to search orders for")
        since_utc = since.astimezone(timezone.utc) if since.tzinfo else since.replace(tzinfo=timezone.utc)
        order_ids: List[str] = []
        last_created: Optional[datetime] = None
        offset = 0
        for _ in range(self.MAX_ORDER_PAGES):
            params = {
                "seller": ctx.external_user_id,
                "order.date_last_updated.from": since_utc.strftime("%Y-%m-%dT%H:%M:%S.000-00:00"),
                "sort": "date_asc",
                "offset": offset,
                "limit": self.ORDER_PAGE_SIZE,
            }
            data = await self._make_request("GET", "/orders/search", ctx=ctx, params=params)
            results = data.get("results", [])
            for order in results:
                if order.get("id") is None:
                    continue
                order_ids.append(str(order["id"]))
                last_created = self._parse_date(order.get("date_created")) or last_created
            total = data.get("paging", {}).get("total", 0)
            offset += self.ORDER_PAGE_SIZE
            if not results or offset >= total:
                return OrderSearchResult(order_ids=order_ids)

        logger.warning("Order search for seller %s stopped at %s orders; resuming from %s next run",
                       ctx.external_user_id, len(order_ids), last_created)
        return OrderSearchResult(order_ids=order_ids, truncated=True, resume_from=last_created)
