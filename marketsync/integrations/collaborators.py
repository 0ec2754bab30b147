"""
Contracts for the internal services the sync engine depends on.

Inventory, catalog and sales live outside this service. The engine only
talks to them through these narrow interfaces; ``HttpInventoryService``
and friends are the production implementations, tests use fakes.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from marketsync.core.exceptions import CollaboratorError, ProductNotFoundError

logger = logging.getLogger(__name__)


class ProductInfo(BaseModel):
    product_id: uuid.UUID
    category_id: Optional[uuid.UUID] = None
    sku: Optional[str] = None
    name: str
    price: Decimal
    cost: Optional[Decimal] = None


class VariantInfo(BaseModel):
    variant_id: uuid.UUID
    name: str
    sku: Optional[str] = None
    price: Optional[Decimal] = None
    attributes: Dict[str, str] = {}


class VariantImport(BaseModel):
    external_variation_id: str
    name: str
    sku: Optional[str] = None
    price: Optional[Decimal] = None
    attributes: Dict[str, str] = {}


class ProductImport(BaseModel):
    """A product to create from an existing marketplace listing."""
    name: str
    sku: str
    price: Optional[Decimal] = None
    variants: List[VariantImport] = []


class ImportedProduct(BaseModel):
    product_id: uuid.UUID
    variant_ids: Dict[str, uuid.UUID] = {}  # external variation id -> variant id


class BuyerInfo(BaseModel):
    external_id: Optional[str] = None
    name: Optional[str] = None
    nickname: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class OrderItemInfo(BaseModel):
    product_id: Optional[uuid.UUID] = None
    variant_id: Optional[uuid.UUID] = None
    listing_id: str
    variation_id: Optional[str] = None
    title: Optional[str] = None
    quantity: int
    unit_price: Decimal


class PaymentInfo(BaseModel):
    status: Optional[str] = None
    approved: bool = False
    total_amount: Optional[Decimal] = None


class ShippingInfo(BaseModel):
    status: Optional[str] = None
    substatus: Optional[str] = None


class InventoryProvider(ABC):
    @abstractmethod
    async def get_sellable_quantity(self, tenant_id: uuid.UUID, product_id: uuid.UUID,
                                    variant_id: Optional[uuid.UUID] = None) -> Decimal:
        """Available minus reserved"""
        pass


class CatalogProvider(ABC):
    @abstractmethod
    async def get_product(self, tenant_id: uuid.UUID, product_id: uuid.UUID) -> ProductInfo:
        pass

    @abstractmethod
    async def get_variants(self, tenant_id: uuid.UUID, product_id: uuid.UUID) -> List[VariantInfo]:
        """Variants of the product; empty for a product sold as a single item"""
        pass

    @abstractmethod
    async def import_product(self, tenant_id: uuid.UUID, product: ProductImport) -> ImportedProduct:
        """Create the product (or return the one already holding its SKU)"""
        pass


class OrderSink(ABC):
    @abstractmethod
    async def create_order_from_external(self, tenant_id: uuid.UUID, buyer: BuyerInfo,
                                         items: List[OrderItemInfo], payment: PaymentInfo,
                                         shipping: ShippingInfo) -> str:
        """Create the internal sales order and return its id"""
        pass

    @abstractmethod
    async def cancel_order_from_external(self, tenant_id: uuid.UUID, internal_order_id: str,
                                         reason: Optional[str] = None) -> None:
        pass


class _HttpCollaborator:
    """Shared request handling for the internal HTTP services."""

    service_name = "collaborator"

    def __init__(self, base_url: str, timeout: float = 10.0, transport: httpx.AsyncBaseTransport = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _make_request(self, method: str, endpoint: str, tenant_id: uuid.UUID,
                            data: Optional[Dict] = None, params: Optional[Dict] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {"Accept": "application/json", "X-Tenant-ID": str(tenant_id)}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=headers, json=data, params=params)
        except httpx.RequestError as e:
            logger.warning("%s request %s %s failed: %s", self.service_name, method, endpoint, e)
            raise CollaboratorError(f"{self.service_name} unavailable: {e}") from e

        if response.status_code == 404:
            raise ProductNotFoundError(f"{self.service_name}: {endpoint} not found")
        if response.status_code >= 400:
            raise CollaboratorError(
                f"{self.service_name} returned {response.status_code}: {response.text[:200]}"
            )
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()


class HttpInventoryService(_HttpCollaborator, InventoryProvider):
    service_name = "inventory"

    async def get_sellable_quantity(self, tenant_id, product_id, variant_id=None) -> Decimal:
        params = {"variant_id": str(variant_id)} if variant_id else None
        data = await self._make_request("GET", f"/api/inventory/{product_id}/sellable", tenant_id, params=params)
        return Decimal(str(data.get("quantity", 0)))


class HttpCatalogService(_HttpCollaborator, CatalogProvider):
    service_name = "catalog"

    async def get_product(self, tenant_id, product_id) -> ProductInfo:
        data = await self._make_request("GET", f"/api/products/{product_id}", tenant_id)
        return ProductInfo(
            product_id=data.get("id", product_id),
            category_id=data.get("categoryId"),
            sku=data.get("sku"),
            name=data["name"],
            price=Decimal(str(data["price"])),
            cost=Decimal(str(data["cost"])) if data.get("cost") is not None else None,
        )

    async def get_variants(self, tenant_id, product_id) -> List[VariantInfo]:
        data = await self._make_request("GET", f"/api/products/{product_id}/variants", tenant_id)
        return [
            VariantInfo(
                variant_id=variant["id"],
                name=variant.get("name") or "",
                sku=variant.get("sku"),
                price=Decimal(str(variant["price"])) if variant.get("price") is not None else None,
                attributes=variant.get("attributes") or {},
            )
            for variant in data.get("variants", [])
        ]

    async def import_product(self, tenant_id, product) -> ImportedProduct:
        data = await self._make_request("POST", "/api/products/import", tenant_id,
                                        data=product.model_dump(mode="json"))
        return ImportedProduct(
            product_id=data["id"],
            variant_ids={
                str(variant["externalVariationId"]): variant["id"]
                for variant in data.get("variants", [])
                if variant.get("externalVariationId") is not None
            },
        )


class HttpSalesService(_HttpCollaborator, OrderSink):
    service_name = "sales"

    async def create_order_from_external(self, tenant_id, buyer, items, payment, shipping) -> str:
        payload = {
            "buyer": buyer.model_dump(mode="json"),
            "items": [item.model_dump(mode="json") for item in items],
            "payment": payment.model_dump(mode="json"),
            "shipping": shipping.model_dump(mode="json"),
        }
        data = await self._make_request("POST", "/api/sales-orders/external", tenant_id, data=payload)
        return str(data["id"])

    async def cancel_order_from_external(self, tenant_id, internal_order_id, reason=None) -> None:
        await self._make_request(
            "POST", f"/api/sales-orders/{internal_order_id}/cancel", tenant_id,
            data={"reason": reason or "Cancelled on marketplace"},
        )
