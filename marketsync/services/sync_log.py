"""Append-only audit trail of reconciliation attempts."""

import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.enums import Marketplace, SyncStatus
from marketsync.models.sync_log import SyncLogEntry
from marketsync.models.sync_queue import SyncQueueItem


def _as_text(value) -> Optional[str]:
    return None if value is None else str(value)


async def record_attempt(
    db: AsyncSession,
    item: SyncQueueItem,
    *,
    status: SyncStatus,
    old_value=None,
    new_value=None,
    error_message: Optional[str] = None,
    listing_id: Optional[str] = None,
) -> SyncLogEntry:
    entry = SyncLogEntry(
        tenant_id=item.tenant_id,
        queue_item_id=item.id,
        product_id=item.product_id,
        variant_id=item.variant_id,
        marketplace=item.marketplace,
        sync_type=item.sync_type,
        listing_id=listing_id,
        old_value=_as_text(old_value),
        new_value=_as_text(new_value),
        status=SyncStatus(status),
        error_message=error_message[:2000] if error_message else None,
        retry_count=item.retry_count or 0,
    )
    db.add(entry)
    await db.flush()
    return entry


async def history(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    product_id: Optional[uuid.UUID] = None,
    marketplace: Optional[Marketplace] = None,
    status: Optional[SyncStatus] = None,
    limit: int = 100,
) -> List[SyncLogEntry]:
    """Most recent entries first."""
    stmt = select(SyncLogEntry).where(SyncLogEntry.tenant_id == tenant_id)
    if product_id is not None:
        stmt = stmt.where(SyncLogEntry.product_id == product_id)
    if marketplace is not None:
        stmt = stmt.where(SyncLogEntry.marketplace == Marketplace(marketplace))
    if status is not None:
        stmt = stmt.where(SyncLogEntry.status == SyncStatus(status))
    stmt = stmt.order_by(SyncLogEntry.synced_at.desc(), SyncLogEntry.id.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
