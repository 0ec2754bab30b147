"""
Order import from marketplaces.

Webhook notifications and the polling job both end up in
``OrderImporter.import_order``, which is idempotent per
(tenant, marketplace, external order id): the first import creates the
internal sales order, later ones only refresh payment/shipping status.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.config import get_settings
from marketsync.core.crypto import TokenCipher
from marketsync.core.enums import Marketplace, OrderStatus
from marketsync.core.exceptions import BaseServiceError, ValidationError
from marketsync.core.utils import ensure_utc, utc_now
from marketsync.integrations.base import MarketplaceAdapter
from marketsync.integrations.collaborators import (
    BuyerInfo,
    OrderItemInfo,
    OrderSink,
    PaymentInfo,
    ShippingInfo,
)
from marketsync.models.connection import MarketplaceConnection
from marketsync.models.marketplace_order import MarketplaceOrder
from marketsync.schemas.webhook import MarketplaceNotification
from marketsync.services import listing_registry
from marketsync.services.connection_store import ConnectionStore

logger = logging.getLogger(__name__)


def is_payment_approved(order: Dict[str, Any]) -> bool:
    """Approved only if at least one payment record says so."""
    return any(
        (payment or {}).get("status") == "approved"
        for payment in order.get("payments") or []
    )


def map_order_status(external_status: Optional[str], payment_approved: bool) -> OrderStatus:
    status = (external_status or "").lower()
    if status == "paid":
        return OrderStatus.PAID
    if status == "cancelled":
        return OrderStatus.CANCELLED
    if status == "confirmed":
        return OrderStatus.PAID if payment_approved else OrderStatus.PENDING
    return OrderStatus.PENDING


def map_buyer(order: Dict[str, Any]) -> BuyerInfo:
    buyer = order.get("buyer") or {}
    name = " ".join(part for part in (buyer.get("first_name"), buyer.get("last_name")) if part)
    phone = buyer.get("phone") or {}
    if isinstance(phone, dict):
        phone = "".join(str(part) for part in (phone.get("area_code"), phone.get("number")) if part)
    return BuyerInfo(
        external_id=str(buyer["id"]) if buyer.get("id") is not None else None,
        name=name or buyer.get("nickname"),
        nickname=buyer.get("nickname"),
        email=buyer.get("email"),
        phone=phone or None,
    )


def map_payment(order: Dict[str, Any]) -> PaymentInfo:
    payments = order.get("payments") or []
    approved = is_payment_approved(order)
    status = "approved" if approved else (payments[0].get("status") if payments else None)
    total = order.get("total_amount", order.get("paid_amount"))
    return PaymentInfo(
        status=status,
        approved=approved,
        total_amount=Decimal(str(total)) if total is not None else None,
    )


def map_shipping(order: Dict[str, Any]) -> ShippingInfo:
    shipping = order.get("shipping") or {}
    return ShippingInfo(status=shipping.get("status"), substatus=shipping.get("substatus"))


class OrderImporter:
    def __init__(
        self,
        db: AsyncSession,
        adapters: Dict[Marketplace, MarketplaceAdapter],
        order_sink: OrderSink,
        settings=None,
        cipher: Optional[TokenCipher] = None,
    ):
        self.db = db
        self.adapters = adapters
        self.order_sink = order_sink
        self.settings = settings or get_settings()
        self.connections = ConnectionStore(db, adapters, cipher=cipher, settings=self.settings)

    # ------------------------------------------------------------------
    # Webhook entry point
    # ------------------------------------------------------------------
    @staticmethod
    def order_id_from_notification(adapter: MarketplaceAdapter,
                                   notification: MarketplaceNotification) -> Optional[str]:
        """
        Order id carried by a notification, or None for topics we ignore.
        Raises ValidationError for an order topic with a malformed resource.
        """
        if not adapter.is_order_topic(notification.topic):
            return None
        order_id = adapter.order_id_from_resource(notification.resource)
        if order_id is None:
            raise ValidationError(f"Unrecognised order resource: {notification.resource!r}")
        return order_id

    async def handle_notification(self, marketplace: Marketplace,
                                  notification: MarketplaceNotification) -> Optional[MarketplaceOrder]:
        marketplace = Marketplace(marketplace)
        adapter = self.connections.adapter_for(marketplace)
        order_id = self.order_id_from_notification(adapter, notification)
        if order_id is None:
            logger.debug("Ignoring %s notification with topic %s", marketplace.value, notification.topic)
            return None

        connection = await self.connections.find_by_external_user(marketplace, str(notification.user_id))
        if connection is None:
            logger.warning("No %s connection for marketplace user %s; dropping order %s",
                           marketplace.value, notification.user_id, order_id)
            return None

        logger.info("Order notification for %s (attempt %s, tenant %s)",
                    order_id, notification.attempts, connection.tenant_id)
        return await self.import_order(connection.tenant_id, marketplace, order_id)

    # ------------------------------------------------------------------
    # Idempotent core
    # ------------------------------------------------------------------
    async def get_order(self, tenant_id: uuid.UUID, marketplace: Marketplace,
                        external_order_id: str) -> Optional[MarketplaceOrder]:
        stmt = select(MarketplaceOrder).where(
            MarketplaceOrder.tenant_id == tenant_id,
            MarketplaceOrder.marketplace == Marketplace(marketplace),
            MarketplaceOrder.external_order_id == str(external_order_id),
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def list_orders(self, tenant_id: uuid.UUID, marketplace: Marketplace,
                          status: Optional[OrderStatus] = None, limit: int = 100) -> List[MarketplaceOrder]:
        """Imported orders, newest first"""
        stmt = select(MarketplaceOrder).where(
            MarketplaceOrder.tenant_id == tenant_id,
            MarketplaceOrder.marketplace == Marketplace(marketplace),
        )
        if status is not None:
            stmt = stmt.where(MarketplaceOrder.status == status)
        stmt = stmt.order_by(MarketplaceOrder.imported_at.desc(), MarketplaceOrder.id.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def import_order(self, tenant_id: uuid.UUID, marketplace: Marketplace,
                           external_order_id: str) -> MarketplaceOrder:
        marketplace = Marketplace(marketplace)
        external_order_id = str(external_order_id)
        adapter = self.connections.adapter_for(marketplace)
        ctx = await self.connections.get_context(tenant_id, marketplace)
        order_data = await adapter.get_order(ctx, external_order_id)

        existing = await self.get_order(tenant_id, marketplace, external_order_id)
        if existing is not None:
            return await self._update_existing(existing, order_data)
        return await self._create(tenant_id, marketplace, external_order_id, order_data)

    async def _create(self, tenant_id, marketplace, external_order_id, order_data) -> MarketplaceOrder:
        approved = is_payment_approved(order_data)
        payment = map_payment(order_data)
        shipping = map_shipping(order_data)
        buyer = map_buyer(order_data)
        status = map_order_status(order_data.get("status"), approved)

        order = MarketplaceOrder(
            tenant_id=tenant_id,
            marketplace=marketplace,
            external_order_id=external_order_id,
            buyer_name=buyer.name,
            buyer_email=buyer.email,
            buyer_phone=buyer.phone,
            total_amount=payment.total_amount,
            status=status,
            external_status=order_data.get("status"),
            payment_status=payment.status,
            payment_approved=approved,
            shipping_status=shipping.status,
            shipping_substatus=shipping.substatus,
            raw_data=order_data,
            last_sync_at=utc_now(),
        )
        # Claim the external id first so a concurrent import cannot create a second sales order
        self.db.add(order)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.get_order(tenant_id, marketplace, external_order_id)
            if existing is None:
                raise
            return await self._update_existing(existing, order_data)

        try:
            items = await self._map_items(tenant_id, marketplace, order_data)
            internal_order_id = await asyncio.wait_for(
                self.order_sink.create_order_from_external(tenant_id, buyer, items, payment, shipping),
                timeout=self.settings.COLLABORATOR_TIMEOUT,
            )
        except Exception:
            await self.db.rollback()
            raise

        # Commit the link to the internal order before a cancellation can fail
        order.internal_order_id = str(internal_order_id)
        if status == OrderStatus.CANCELLED:
            order.status = OrderStatus.PENDING
        await self.db.commit()
        logger.info("Imported %s order %s as internal order %s (%s)",
                    marketplace.value, external_order_id, order.internal_order_id, status.value)

        if status == OrderStatus.CANCELLED:
            await self._apply_cancellation(order)
        return order

    async def _update_existing(self, order: MarketplaceOrder, order_data: Dict[str, Any]) -> MarketplaceOrder:
        """Already imported: refresh mutable status fields only."""
        approved = is_payment_approved(order_data)
        payment = map_payment(order_data)
        shipping = map_shipping(order_data)
        previous_status = order.status
        new_status = map_order_status(order_data.get("status"), approved)
        cancelling = new_status == OrderStatus.CANCELLED and previous_status != OrderStatus.CANCELLED

        order.external_status = order_data.get("status")
        order.payment_status = payment.status
        order.payment_approved = approved
        order.shipping_status = shipping.status
        order.shipping_substatus = shipping.substatus
        order.status = previous_status if cancelling else new_status
        order.raw_data = order_data
        order.last_sync_at = utc_now()
        await self.db.commit()

        logger.info("Order %s already imported; status %s -> %s",
                    order.external_order_id, previous_status.value, new_status.value)
        if cancelling:
            await self._apply_cancellation(order)
        return order

    async def _apply_cancellation(self, order: MarketplaceOrder) -> None:
        """
        Cancel the internal order, then record CANCELLED.

        If the sales module fails the order keeps its previous status, so the
        next notification or poll for it tries the cancellation again.
        """
        await self._cancel_internal(order)
        order.status = OrderStatus.CANCELLED
        await self.db.commit()

    async def _cancel_internal(self, order: MarketplaceOrder) -> None:
        if not order.internal_order_id:
            return
        await asyncio.wait_for(
            self.order_sink.cancel_order_from_external(
                order.tenant_id, order.internal_order_id,
                reason=f"Cancelled on {Marketplace(order.marketplace).value} ({order.external_order_id})",
            ),
            timeout=self.settings.COLLABORATOR_TIMEOUT,
        )
        logger.info("Cancelled internal order %s for marketplace order %s",
                    order.internal_order_id, order.external_order_id)

    async def _map_items(self, tenant_id, marketplace, order_data) -> List[OrderItemInfo]:
        items = []
        for line in order_data.get("order_items") or []:
            item = line.get("item") or {}
            listing_id = str(item.get("id"))
            variation_id = item.get("variation_id")
            listing = await listing_registry.find_by_external_id(
                self.db, tenant_id=tenant_id, marketplace=marketplace,
                listing_id=listing_id, variation_id=str(variation_id) if variation_id else None,
            )
            if listing is None:
                logger.warning("Order line references unknown listing %s", listing_id)
            items.append(OrderItemInfo(
                product_id=listing.product_id if listing else None,
                variant_id=listing.variant_id if listing else None,
                listing_id=listing_id,
                variation_id=str(variation_id) if variation_id else None,
                title=item.get("title"),
                quantity=int(line.get("quantity") or 0),
                unit_price=Decimal(str(line.get("unit_price") or 0)),
            ))
        return items

    # ------------------------------------------------------------------
    # Polling entry point
    # ------------------------------------------------------------------
    async def poll_connection(self, connection: MarketplaceConnection) -> Dict[str, int]:
        """Import every order changed since the connection's last sync."""
        stats = {"found": 0, "imported": 0, "failed": 0}
        marketplace = Marketplace(connection.marketplace)
        tenant_id = connection.tenant_id
        started_at = utc_now()
        since = ensure_utc(connection.last_sync_at) or (
            started_at - timedelta(hours=self.settings.ORDER_POLL_LOOKBACK_HOURS)
        )

        adapter = self.connections.adapter_for(marketplace)
        ctx = await self.connections.get_context(tenant_id, marketplace)
        search = await adapter.search_orders(ctx, since)
        stats["found"] = len(search.order_ids)

        for order_id in search.order_ids:
            try:
                await self.import_order(tenant_id, marketplace, order_id)
                stats["imported"] += 1
            except (BaseServiceError, asyncio.TimeoutError) as e:
                stats["failed"] += 1
                logger.error("Polling import of %s order %s failed: %s", marketplace.value, order_id, e)

        # A failed import keeps the watermark so the next run retries it
        if stats["failed"]:
            return stats
        watermark = search.resume_from if search.truncated else started_at
        if watermark is None:
            logger.warning("Order search for tenant %s was cut short without a resume point; "
                           "keeping last sync time", tenant_id)
            return stats
        connection = await self.connections.require(tenant_id, marketplace)
        await self.connections.touch_last_sync(connection, watermark)
        return stats


async def poll_all_connections(session_factory, adapters, order_sink, settings=None) -> Dict[str, int]:
    """Scheduler entry point: poll every CONNECTED connection in its own session."""
    totals = {"connections": 0, "found": 0, "imported": 0, "failed": 0}
    async with session_factory() as db:
        store = ConnectionStore(db, adapters, settings=settings)
        connections = [(c.tenant_id, c.marketplace) for c in await store.list_connected()
                       if Marketplace(c.marketplace) in adapters]

    for tenant_id, marketplace in connections:
        totals["connections"] += 1
        async with session_factory() as db:
            importer = OrderImporter(db, adapters, order_sink, settings=settings)
            try:
                connection = await importer.connections.require(tenant_id, marketplace)
                stats = await importer.poll_connection(connection)
            except (BaseServiceError, asyncio.TimeoutError) as e:
                totals["failed"] += 1
                logger.error("Order polling for tenant %s on %s failed: %s",
                             tenant_id, Marketplace(marketplace).value, e)
                continue
            for key in ("found", "imported", "failed"):
                totals[key] += stats[key]

    if totals["found"] or totals["failed"]:
        logger.info("Order polling run: %s", totals)
    return totals
