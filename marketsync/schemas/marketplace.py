import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from marketsync.core.enums import (
    ConnectionStatus,
    ListingStatus,
    Marketplace,
    OrderStatus,
    RuleScope,
    SyncStatus,
    SyncType,
)
from marketsync.schemas.base import BaseSchema


class ConnectionRead(BaseSchema):
    tenant_id: uuid.UUID
    marketplace: Marketplace
    external_user_id: Optional[str] = None
    status: ConnectionStatus
    token_expires_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    error_message: Optional[str] = None


class AuthorizationStart(BaseModel):
    authorization_url: str


class ListingRead(BaseSchema):
    id: int
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    marketplace: Marketplace
    listing_id: str
    external_variation_id: Optional[str] = None
    title: Optional[str] = None
    price: Optional[Decimal] = None
    quantity: Optional[int] = None
    status: ListingStatus
    last_sync_at: Optional[datetime] = None


class PublishRequest(BaseModel):
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None


class RemoteListingPreview(BaseModel):
    listing_id: str
    title: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[Decimal] = None
    quantity: Optional[int] = None
    status: Optional[ListingStatus] = None
    thumbnail: Optional[str] = None
    has_variations: bool = False
    already_imported: bool = False


class ImportListingsRequest(BaseModel):
    listing_ids: List[str] = Field(min_length=1)


class ImportListingsResponse(BaseModel):
    imported: int = 0
    skipped: int = 0
    errors: List[str] = []


class MarketplaceOrderRead(BaseSchema):
    id: int
    marketplace: Marketplace
    external_order_id: str
    internal_order_id: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None
    total_amount: Optional[Decimal] = None
    status: OrderStatus
    payment_status: Optional[str] = None
    shipping_status: Optional[str] = None
    imported_at: datetime
    last_sync_at: Optional[datetime] = None


class ResyncRequest(BaseModel):
    product_id: uuid.UUID


class ResyncResponse(BaseModel):
    enqueued: int


class SyncQueueItemRead(BaseSchema):
    id: int
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    marketplace: Marketplace
    sync_type: SyncType
    priority: int
    status: SyncStatus
    retry_count: int
    max_retries: int
    last_error: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class QueueSummary(BaseModel):
    counts: Dict[str, int]


class SyncLogEntryRead(BaseSchema):
    id: int
    queue_item_id: Optional[int] = None
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    marketplace: Marketplace
    sync_type: SyncType
    listing_id: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    status: SyncStatus
    error_message: Optional[str] = None
    retry_count: int
    synced_at: datetime


class StockChangeRequest(BaseModel):
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None


class SafetyMarginRuleCreate(BaseModel):
    marketplace: Marketplace
    priority: RuleScope
    margin_percentage: Decimal = Field(ge=0, le=100)
    product_id: Optional[uuid.UUID] = None
    category_id: Optional[uuid.UUID] = None


class SafetyMarginRuleUpdate(BaseModel):
    margin_percentage: Decimal = Field(ge=0, le=100)


class SafetyMarginRuleRead(BaseSchema):
    id: int
    marketplace: Marketplace
    priority: int
    margin_percentage: Decimal
    product_id: Optional[uuid.UUID] = None
    category_id: Optional[uuid.UUID] = None
    created_at: datetime
    updated_at: datetime
