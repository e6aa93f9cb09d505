"""
Periodic order sync

Runs one pass right after startup and then every SYNC_INTERVAL_SEC:
Shopify order sync for every active client, then Shiprocket status refresh.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from oms.config import settings
from oms.database import SessionLocal
from oms.services.reconciliation import ReconciliationEngine
from oms.services.storage import OrderStorage

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Interval trigger around ReconciliationEngine. No business logic of its own."""

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        interval: Optional[int] = None,
        engine_factory: Optional[Callable[..., ReconciliationEngine]] = None,
    ):
        self.session_factory = session_factory
        self.interval = interval if interval is not None else settings.SYNC_INTERVAL_SEC
        self.engine_factory = engine_factory or ReconciliationEngine
        # Courier sessions survive between passes so each pass does not log in again
        self._courier_cache: dict = {}
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._pass_lock = asyncio.Lock()
        self.running = False
        self.pass_in_progress = False
        self.last_run: Optional[datetime] = None
        self.next_run: Optional[datetime] = None
        self.last_summary: Optional[Dict[str, Any]] = None

    def engine_for(self, db) -> ReconciliationEngine:
        """Engine bound to a DB session, sharing this scheduler's courier sessions."""
        return self.engine_factory(OrderStorage(db), courier_cache=self._courier_cache)

    async def run_pass(self) -> Dict[str, Any]:
        """
        One full pass with a fresh DB session. Never raises: failures are logged
        and reported in the returned summary.
        """
        async with self._pass_lock:
            self.pass_in_progress = True
            started = datetime.now(timezone.utc)
            summary: Dict[str, Any] = {"started_at": started.isoformat(), "success": True}
            db = None
            try:
                db = self.session_factory()
                engine = self.engine_for(db)
                logger.info("[SYNC_SCHEDULER] Starting order sync pass")
                results = await engine.sync_all_clients()
                summary["clients"] = [r.to_dict() for r in results]
                summary["clients_failed"] = sum(1 for r in results if not r.success)
                refresh = await engine.refresh_all_statuses()
                summary["tracking"] = refresh.to_dict()
                logger.info(
                    "[SYNC_SCHEDULER] ✅ Pass done: %s clients (%s failed), %s AWBs refreshed (%s failed)",
                    len(results), summary["clients_failed"], refresh.updated, refresh.failed,
                )
            except Exception as e:
                logger.exception("[SYNC_SCHEDULER] Sync pass failed: %s", e)
                summary["success"] = False
                summary["error"] = f"Sync pass failed ({type(e).__name__})"
            finally:
                if db is not None:
                    db.close()
                finished = datetime.now(timezone.utc)
                summary["finished_at"] = finished.isoformat()
                self.last_run = finished
                self.last_summary = summary
                self.pass_in_progress = False
            return summary

    async def _loop(self) -> None:
        while self._stop_event is not None and not self._stop_event.is_set():
            await self.run_pass()
            if self._stop_event.is_set():
                break
            self.next_run = datetime.now(timezone.utc) + timedelta(seconds=self.interval)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        """Schedule the first pass now and the next ones every interval. Must be called inside a running loop."""
        if self.running:
            logger.debug("[SYNC_SCHEDULER] Already running")
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        self.running = True
        self.next_run = datetime.now(timezone.utc)
        logger.info("[SYNC_SCHEDULER] 🚀 Started (interval=%ss)", self.interval)

    def stop(self) -> None:
        """Stop scheduling further passes; a pass already in progress finishes."""
        if not self.running:
            return
        self.running = False
        self.next_run = None
        if self._stop_event is not None:
            self._stop_event.set()
        logger.info("[SYNC_SCHEDULER] ⏹️ Stopped")

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop and wait for the in-flight pass (if any) to complete."""
        self.stop()
        task, self._task = self._task, None
        if task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("[SYNC_SCHEDULER] Pass still running after %ss; cancelling", timeout)
            task.cancel()

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "pass_in_progress": self.pass_in_progress,
            "interval_seconds": self.interval,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_summary": self.last_summary,
        }


# Global scheduler instance
scheduler = SyncScheduler()


def start_background_workers() -> None:
    if not settings.SCHEDULER_ENABLED:
        logger.info("[SYNC_SCHEDULER] Disabled (SCHEDULER_ENABLED=false)")
        return
    scheduler.start()


async def stop_background_workers() -> None:
    await scheduler.shutdown(timeout=settings.HTTP_TIMEOUT_SEC * 2)
