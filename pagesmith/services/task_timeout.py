# pagesmith/services/task_timeout.py
"""
Stuck-task sweeps.

- every TASK_SWEEP_INTERVAL_SEC: fail ``generating_images`` tasks untouched
  for TASK_TIMEOUT_MINUTES, and (when TASK_RETENTION_DAYS > 0) purge old
  finished tasks
- at startup: fail every task the previous process left mid-generation and
  refund images it had debited but never finished
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pagesmith.models import Image, ImageStatus, Task, TaskStatus, utcnow
from pagesmith.services.billing import ConsumeType, CreditLedger
from pagesmith.services.tasks import delete_task_rows
from pagesmith.settings.config import settings

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Generation timed out; please retry"
INTERRUPTED_MESSAGE = "Generation was interrupted by a service restart; please retry"


class TaskTimeoutService:
    def __init__(self, session_maker: Callable[[], AsyncSession], ledger: CreditLedger,
                 timeout_minutes: Optional[int] = None, retention_days: Optional[int] = None):
        self._session_maker = session_maker
        self._ledger = ledger
        self.timeout_minutes = timeout_minutes or settings.TASK_TIMEOUT_MINUTES
        self.retention_days = settings.TASK_RETENTION_DAYS if retention_days is None else retention_days
        self.scheduler: Optional[AsyncIOScheduler] = None

    async def sweep_timeouts(self) -> int:
        threshold = utcnow() - timedelta(minutes=self.timeout_minutes)
        async with self._session_maker() as db:
            stale = (
                await db.execute(
                    select(Task).where(Task.status == TaskStatus.generating_images, Task.updated_at < threshold)
                )
            ).scalars().all()
            for task in stale:
                task.status = TaskStatus.failed
                task.error_message = TIMEOUT_MESSAGE
            await db.commit()
        if stale:
            logger.warning("Timed out %d task(s): %s", len(stale), ", ".join(t.id for t in stale))
        return len(stale)

    async def recover_interrupted_tasks(self) -> int:
        """Run once at startup, before any new generation can begin."""
        async with self._session_maker() as db:
            orphaned = (
                await db.execute(
                    select(Task).where(Task.status.in_([TaskStatus.generating_outline, TaskStatus.generating_images]))
                )
            ).scalars().all()
            for task in orphaned:
                task.status = TaskStatus.failed
                task.error_message = INTERRUPTED_MESSAGE
            await db.commit()
        if orphaned:
            logger.warning("Marked %d interrupted task(s) failed", len(orphaned))

        refunded = await self._refund_unfinished_images()
        if refunded:
            logger.warning("Refunded %d unfinished image debit(s)", refunded)
        return len(orphaned)

    async def _refund_unfinished_images(self) -> int:
        async with self._session_maker() as db:
            rows = (
                await db.execute(
                    select(Image.id, Image.task_id, Image.page_type, Image.power_amount, Task.user_id)
                    .join(Task, Task.id == Image.task_id)
                    .where(
                        Image.power_deducted.is_(True),
                        Image.status.in_([ImageStatus.pending, ImageStatus.generating, ImageStatus.failed]),
                    )
                )
            ).all()

        refunded = 0
        for image_id, task_id, page_type, amount, user_id in rows:
            try:
                await self._ledger.rollback_power(user_id, amount or 0, ConsumeType.image, page_type, image_id)
            except Exception:  # noqa: BLE001
                # flag stays set; the next startup tries again
                logger.exception("Startup refund for image %s (task %s) failed", image_id, task_id)
                continue
            async with self._session_maker() as db:
                image = await db.get(Image, image_id)
                image.power_deducted = False
                image.power_amount = 0
                image.billing_account_no = None
                if image.status != ImageStatus.failed:
                    image.status = ImageStatus.failed
                    image.error_message = INTERRUPTED_MESSAGE
                await db.commit()
            refunded += 1
        return refunded

    async def cleanup_retention(self) -> int:
        if self.retention_days <= 0:
            return 0
        threshold = utcnow() - timedelta(days=self.retention_days)
        async with self._session_maker() as db:
            ids = (
                await db.execute(
                    select(Task.id).where(
                        Task.status.in_([TaskStatus.completed, TaskStatus.failed]),
                        Task.updated_at < threshold,
                    )
                )
            ).scalars().all()
            await delete_task_rows(db, ids)
            await db.commit()
        if ids:
            logger.info("Retention cleanup removed %d task(s) older than %d day(s)", len(ids), self.retention_days)
        return len(ids)

    async def run_sweep(self) -> None:
        await self.sweep_timeouts()
        await self.cleanup_retention()

    # ---------- scheduler ----------

    def start_scheduler(self) -> None:
        if self.scheduler:
            return
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.scheduler.add_job(
            self.run_sweep,
            IntervalTrigger(seconds=settings.TASK_SWEEP_INTERVAL_SEC),
            id="task-timeout-sweep",
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("Task sweep scheduled every %ss", settings.TASK_SWEEP_INTERVAL_SEC)

    def stop(self) -> None:
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None


__all__ = ["TaskTimeoutService", "TIMEOUT_MESSAGE", "INTERRUPTED_MESSAGE"]
