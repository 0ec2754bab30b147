import uuid
from datetime import timedelta

import pytest

from marketsync import scheduler as scheduler_module
from marketsync.core.enums import Marketplace, SyncPriority, SyncStatus, SyncType
from marketsync.core.utils import utc_now
from marketsync.models.sync_queue import SyncQueueItem
from marketsync.scheduler import (
    create_scheduler,
    get_scheduler_status,
    poll_orders_task,
    purge_queue_task,
    reap_stale_claims_task,
    refresh_tokens_task,
    start_scheduler,
    stop_scheduler,
)
from marketsync.services import sync_queue


@pytest.fixture(autouse=True)
def reset_scheduler():
    scheduler_module.scheduler = None
    yield
    scheduler_module.scheduler = None


def test_create_scheduler_registers_jobs(adapters, sales, settings):
    scheduler = create_scheduler(adapters, sales, settings)

    job_ids = {job.id for job in scheduler.get_jobs()}
    assert job_ids == {"refresh_tokens", "poll_orders", "reap_stale_claims", "purge_sync_queue"}
    assert create_scheduler(adapters, sales, settings) is scheduler


@pytest.mark.asyncio
async def test_status_before_initialisation():
    assert await get_scheduler_status() == {"status": "not_initialized", "jobs": []}


@pytest.mark.asyncio
async def test_reaper_task(session_factory, db_session, settings, tenant_id, make_connection):
    await make_connection(tenant_id)
    item = await sync_queue.enqueue(
        db_session, tenant_id=tenant_id, product_id=uuid.uuid4(), variant_id=None,
        marketplace=Marketplace.MERCADO_LIVRE, sync_type=SyncType.STOCK, priority=SyncPriority.NORMAL,
    )
    await db_session.commit()
    await sync_queue.claim_batch(db_session, 10)
    item.claimed_at = utc_now() - timedelta(minutes=settings.SYNC_PROCESSING_TIMEOUT_MINUTES + 5)
    await db_session.commit()

    assert await reap_stale_claims_task(settings, session_factory=session_factory) == 1

    async with session_factory() as db:
        assert (await db.get(SyncQueueItem, item.id)).status == SyncStatus.PENDING


@pytest.mark.asyncio
async def test_purge_task_with_nothing_to_delete(session_factory, settings):
    assert await purge_queue_task(settings, session_factory=session_factory) == 0


@pytest.mark.asyncio
async def test_refresh_task_reports_stats(session_factory, adapters, settings, tenant_id, make_connection,
                                          mock_marketplace):
    await make_connection(tenant_id, expires_in=timedelta(minutes=10))

    stats = await refresh_tokens_task(adapters, settings, session_factory=session_factory)

    assert stats == {"checked": 1, "refreshed": 1, "skipped": 0, "failed": 0}
    assert mock_marketplace.refresh_calls == ["refresh-0"]


@pytest.mark.asyncio
async def test_task_failures_are_logged_not_raised(adapters, sales, settings):
    def broken_factory():
        raise RuntimeError("database unavailable")

    assert await poll_orders_task(adapters, sales, settings, session_factory=broken_factory) is None
    assert await reap_stale_claims_task(settings, session_factory=broken_factory) is None


@pytest.mark.asyncio
async def test_start_and_stop_scheduler(adapters, sales, settings, mocker):
    fake = mocker.MagicMock(running=False)
    fake.get_jobs.return_value = []
    create = mocker.patch.object(scheduler_module, "create_scheduler", return_value=fake)

    await start_scheduler(adapters, sales, settings)
    create.assert_called_once_with(adapters, sales, settings)
    fake.start.assert_called_once()

    fake.running = True
    await stop_scheduler()
    fake.shutdown.assert_called_once_with(wait=True)
    assert scheduler_module.scheduler is None
