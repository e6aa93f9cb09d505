"""
Sync scheduler
"""
import asyncio

import pytest

from oms.services.reconciliation import RefreshResult, SyncResult
from oms.workers.scheduler import SyncScheduler


class FakeEngine:
    passes = 0

    def __init__(self, storage, courier_cache=None, fail=False):
        self.storage = storage
        self.courier_cache = courier_cache
        self.fail = fail

    async def sync_all_clients(self):
        FakeEngine.passes += 1
        if self.fail:
            raise RuntimeError("database went away")
        return [SyncResult(client_id="ACME001", created=2), SyncResult(client_id="OTHER002", success=False, error="Shopify fetch failed")]

    async def refresh_all_statuses(self, client_id=None):
        return RefreshResult(total=3, updated=3)


@pytest.fixture(autouse=True)
def reset_passes():
    FakeEngine.passes = 0


class TestSyncScheduler:
    @pytest.mark.asyncio
    async def test_run_pass_summary(self, db_session):
        scheduler = SyncScheduler(session_factory=lambda: db_session, interval=3600, engine_factory=FakeEngine)

        summary = await scheduler.run_pass()

        assert summary["success"] is True
        assert summary["clients_failed"] == 1
        assert summary["tracking"]["updated"] == 3
        assert scheduler.get_status()["last_run"] is not None

    @pytest.mark.asyncio
    async def test_run_pass_never_raises(self, db_session):
        scheduler = SyncScheduler(
            session_factory=lambda: db_session,
            engine_factory=lambda storage, courier_cache=None: FakeEngine(storage, courier_cache, fail=True),
        )

        summary = await scheduler.run_pass()

        assert summary["success"] is False
        assert summary["error"] == "Sync pass failed (RuntimeError)"
        assert scheduler.pass_in_progress is False

    @pytest.mark.asyncio
    async def test_courier_sessions_shared_between_passes(self, db_session):
        scheduler = SyncScheduler(session_factory=lambda: db_session, engine_factory=FakeEngine)

        first = scheduler.engine_for(db_session)
        second = scheduler.engine_for(db_session)

        assert first.courier_cache is second.courier_cache

    @pytest.mark.asyncio
    async def test_first_pass_runs_immediately_then_waits(self, db_session):
        scheduler = SyncScheduler(session_factory=lambda: db_session, interval=3600, engine_factory=FakeEngine)

        scheduler.start()
        await asyncio.sleep(0.05)

        assert FakeEngine.passes == 1
        assert scheduler.get_status()["running"] is True
        assert scheduler.get_status()["next_run"] is not None

        await scheduler.shutdown(timeout=1)

        assert scheduler.get_status()["running"] is False
        assert FakeEngine.passes == 1

    @pytest.mark.asyncio
    async def test_short_interval_repeats(self, db_session):
        scheduler = SyncScheduler(session_factory=lambda: db_session, interval=0.01, engine_factory=FakeEngine)

        scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.shutdown(timeout=1)

        assert FakeEngine.passes >= 2

    @pytest.mark.asyncio
    async def test_start_twice_is_a_no_op(self, db_session):
        scheduler = SyncScheduler(session_factory=lambda: db_session, interval=3600, engine_factory=FakeEngine)

        scheduler.start()
        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.shutdown(timeout=1)

        assert FakeEngine.passes == 1
