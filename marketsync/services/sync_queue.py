"""Deduplicated, priority-ordered retry queue for stock/price reconciliation.

Functions take the caller's ``AsyncSession`` and only flush; the caller owns
the transaction (the worker commits right after ``claim_batch`` so other
workers see the claim).
"""

import logging
import random
import uuid
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import delete, func, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.enums import ConnectionStatus, Marketplace, SyncPriority, SyncStatus, SyncType
from marketsync.core.utils import utc_now
from marketsync.models.connection import MarketplaceConnection
from marketsync.models.sync_queue import ACTIVE_STATUS_CLAUSE, SyncQueueItem, build_dedup_key

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


def _insert_construct(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Sync queue needs ON CONFLICT support, got dialect {dialect}")
    return insert


async def _find_active(db: AsyncSession, dedup_key: str) -> Optional[SyncQueueItem]:
    stmt = (
        select(SyncQueueItem)
        .where(
            SyncQueueItem.dedup_key == dedup_key,
            SyncQueueItem.status.in_(SyncStatus.active()),
        )
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def connection_accepts_work(db: AsyncSession, tenant_id: uuid.UUID, marketplace: Marketplace) -> bool:
    stmt = select(MarketplaceConnection.status).where(
        MarketplaceConnection.tenant_id == tenant_id,
        MarketplaceConnection.marketplace == Marketplace(marketplace),
    )
    status = (await db.execute(stmt)).scalar_one_or_none()
    return status == ConnectionStatus.CONNECTED


async def enqueue(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    product_id: uuid.UUID,
    variant_id: Optional[uuid.UUID],
    marketplace: Marketplace,
    sync_type: SyncType,
    priority: int = SyncPriority.NORMAL,
    max_retries: int = DEFAULT_MAX_RETRIES,
    require_connection: bool = True,
) -> Optional[SyncQueueItem]:
    """
    Add a reconciliation task unless an active one already exists for the key.

    Returns the existing active item (promoted if ``priority`` is higher and it
    is still PENDING), the newly inserted item, or None when the tenant's
    connection is not CONNECTED and ``require_connection`` is set.
    """
    marketplace = Marketplace(marketplace)
    sync_type = SyncType(sync_type)
    priority = int(priority)

    if require_connection and not await connection_accepts_work(db, tenant_id, marketplace):
        logger.info("Skipping %s sync for product %s: %s connection for tenant %s is not connected",
                    sync_type.value, product_id, marketplace.value, tenant_id)
        return None

    dedup_key = build_dedup_key(tenant_id, product_id, variant_id, marketplace, sync_type)
    insert = _insert_construct(db)
    now = utc_now()

    # Two rounds: an active item seen by the conflict may finish before we select it
    for _ in range(2):
        stmt = (
            insert(SyncQueueItem)
            .values(
                tenant_id=tenant_id,
                product_id=product_id,
                variant_id=variant_id,
                marketplace=marketplace,
                sync_type=sync_type,
                priority=priority,
                status=SyncStatus.PENDING,
                retry_count=0,
                max_retries=max_retries,
                dedup_key=dedup_key,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=[SyncQueueItem.dedup_key],
                index_where=text(ACTIVE_STATUS_CLAUSE),
            )
            .returning(SyncQueueItem.id)
        )
        new_id = (await db.execute(stmt)).scalar_one_or_none()
        if new_id is not None:
            logger.info("Enqueued %s sync for product %s on %s (priority %s)",
                        sync_type.value, product_id, marketplace.value, priority)
            return await db.get(SyncQueueItem, new_id)

        existing = await _find_active(db, dedup_key)
        if existing is None:
            continue
        if existing.status == SyncStatus.PENDING and priority > existing.priority:
            logger.info("Promoting queue item %s to priority %s", existing.id, priority)
            existing.priority = priority
            await db.flush()
        return existing

    raise RuntimeError(f"Could not enqueue or find active queue item for {dedup_key}")


async def claim_batch(db: AsyncSession, limit: int) -> List[SyncQueueItem]:
    """
    Move up to ``limit`` claimable PENDING items to PROCESSING.

    The candidate select skips rows locked by other workers, and the update
    is guarded by ``status = 'PENDING'`` so an item is only ever claimed once.
    Rows are tagged with a claim token and re-read by that token.
    """
    now = utc_now()
    claim_token = uuid.uuid4().hex

    candidates = (
        select(SyncQueueItem.id)
        .where(
            SyncQueueItem.status == SyncStatus.PENDING,
            or_(SyncQueueItem.available_at.is_(None), SyncQueueItem.available_at <= now),
        )
        .order_by(SyncQueueItem.priority.desc(), SyncQueueItem.created_at.asc(), SyncQueueItem.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    ids = list((await db.execute(candidates)).scalars().all())
    if not ids:
        return []

    await db.execute(
        update(SyncQueueItem)
        .where(SyncQueueItem.id.in_(ids), SyncQueueItem.status == SyncStatus.PENDING)
        .values(
            status=SyncStatus.PROCESSING,
            claim_token=claim_token,
            claimed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    claimed = (
        select(SyncQueueItem)
        .where(SyncQueueItem.claim_token == claim_token)
        .order_by(SyncQueueItem.priority.desc(), SyncQueueItem.created_at.asc(), SyncQueueItem.id.asc())
        .execution_options(populate_existing=True)
    )
    items = list((await db.execute(claimed)).scalars().all())
    logger.debug("Claimed %s of %s candidate queue items", len(items), len(ids))
    return items


async def mark_success(db: AsyncSession, item: SyncQueueItem) -> None:
    now = utc_now()
    item.status = SyncStatus.SUCCESS
    item.processed_at = now
    item.last_error = None
    item.claim_token = None
    item.updated_at = now
    await db.flush()


def retry_backoff(retry_count: int, base_delay: float, max_delay: float) -> float:
    """Jittered exponential delay in seconds before retry ``retry_count`` may run."""
    if base_delay <= 0:
        return 0.0
    delay = min(max_delay, base_delay * (2 ** max(0, retry_count - 1)))
    return random.uniform(delay / 2, delay)


async def mark_failure(
    db: AsyncSession,
    item: SyncQueueItem,
    error: str,
    *,
    permanent: bool = False,
    retry_base_delay: float = 0.0,
    retry_max_delay: float = 900.0,
) -> SyncStatus:
    """
    Record a failed attempt.

    retry_count always goes up by one. The item is FAILED once retry_count
    reaches max_retries, or straight away for permanent errors; otherwise it
    returns to PENDING, claimable after the backoff delay (none by default).
    """
    now = utc_now()
    item.retry_count = (item.retry_count or 0) + 1
    item.last_error = (error or "")[:2000]
    item.claim_token = None
    item.updated_at = now

    if permanent or item.retry_count >= item.max_retries:
        item.status = SyncStatus.FAILED
        item.processed_at = now
        item.available_at = None
        logger.warning("Queue item %s failed permanently after %s attempt(s): %s",
                       item.id, item.retry_count, item.last_error)
    else:
        item.status = SyncStatus.PENDING
        item.claimed_at = None
        delay = retry_backoff(item.retry_count, retry_base_delay, retry_max_delay)
        item.available_at = now + timedelta(seconds=delay) if delay else None
        logger.info("Queue item %s will be retried (%s/%s) in %.0fs",
                    item.id, item.retry_count, item.max_retries, delay)

    await db.flush()
    return item.status


async def reap_stale_claims(db: AsyncSession, *, older_than_minutes: int) -> int:
    """Reset PROCESSING items whose claim is older than the window back to PENDING."""
    now = utc_now()
    cutoff = now - timedelta(minutes=older_than_minutes)
    result = await db.execute(
        update(SyncQueueItem)
        .where(SyncQueueItem.status == SyncStatus.PROCESSING, SyncQueueItem.claimed_at < cutoff)
        .values(
            status=SyncStatus.PENDING,
            claim_token=None,
            claimed_at=None,
            available_at=None,
            last_error=f"Claim abandoned for more than {older_than_minutes} minutes",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.warning("Reaper reset %s abandoned queue item(s) to PENDING", result.rowcount)
    return result.rowcount or 0


async def purge_terminal(db: AsyncSession, *, older_than_days: int) -> int:
    """Delete SUCCESS/FAILED items processed more than ``older_than_days`` ago."""
    cutoff = utc_now() - timedelta(days=older_than_days)
    result = await db.execute(
        delete(SyncQueueItem)
        .where(SyncQueueItem.status.in_(SyncStatus.terminal()), SyncQueueItem.processed_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("Purged %s terminal queue item(s) older than %s days", result.rowcount, older_than_days)
    return result.rowcount or 0


async def list_items(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    status: Optional[SyncStatus] = None,
    marketplace: Optional[Marketplace] = None,
    limit: int = 100,
) -> List[SyncQueueItem]:
    stmt = select(SyncQueueItem).where(SyncQueueItem.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(SyncQueueItem.status == SyncStatus(status))
    if marketplace is not None:
        stmt = stmt.where(SyncQueueItem.marketplace == Marketplace(marketplace))
    stmt = stmt.order_by(SyncQueueItem.created_at.desc(), SyncQueueItem.id.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_by_status(db: AsyncSession, *, tenant_id: uuid.UUID) -> Dict[str, int]:
    stmt = (
        select(SyncQueueItem.status, func.count(SyncQueueItem.id))
        .where(SyncQueueItem.tenant_id == tenant_id)
        .group_by(SyncQueueItem.status)
    )
    rows = (await db.execute(stmt)).all()
    counts = {status.value: 0 for status in SyncStatus}
    for status, count in rows:
        counts[SyncStatus(status).value] = count
    return counts
