# pagesmith/services/tasks.py
from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pagesmith.errors import CreatorError, ValidationFailed
from pagesmith.models import Image, ImageVersion, Task, TaskStatus
from pagesmith.services.orchestrator import load_owned_task
from pagesmith.services.outline import build_outline_text, normalize_pages

logger = logging.getLogger(__name__)

_BUSY = (TaskStatus.generating_outline, TaskStatus.generating_images)


async def delete_task_rows(db: AsyncSession, task_ids: Sequence[str]) -> None:
    """Remove tasks with their images and version history. Caller commits.

    Children go first so this works whether or not the database enforces
    ON DELETE CASCADE.
    """
    if not task_ids:
        return
    ids = list(task_ids)
    await db.execute(delete(ImageVersion).where(ImageVersion.task_id.in_(ids)))
    await db.execute(delete(Image).where(Image.task_id.in_(ids)))
    await db.execute(delete(Task).where(Task.id.in_(ids)))


class TaskService:
    def __init__(self, session_maker: Callable[[], AsyncSession]):
        self._session_maker = session_maker

    async def list_tasks(self, user_id: str, page: int = 1, page_size: int = 12,
                         status: Optional[TaskStatus] = None,
                         keyword: Optional[str] = None) -> Tuple[List[Task], int]:
        filters: List[Any] = [Task.user_id == user_id]
        if status is not None:
            filters.append(Task.status == status)
        if keyword:
            filters.append(Task.topic.ilike(f"%{keyword}%"))

        async with self._session_maker() as db:
            total = (await db.execute(select(func.count(Task.id)).where(*filters))).scalar() or 0
            rows = (
                await db.execute(
                    select(Task)
                    .where(*filters)
                    .order_by(Task.created_at.desc())
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
            ).scalars().all()
        return list(rows), total

    async def ensure_owner(self, user_id: str, task_id: str) -> Task:
        async with self._session_maker() as db:
            return await load_owned_task(db, task_id, user_id)

    async def get_task(self, user_id: str, task_id: str) -> Task:
        async with self._session_maker() as db:
            task = (
                await db.execute(select(Task).options(selectinload(Task.images)).where(Task.id == task_id))
            ).scalars().first()
            if task is None:
                raise CreatorError.task_not_found(task_id)
            if task.user_id != user_id:
                raise CreatorError.forbidden(task_id)
        return task

    async def update_outline(self, user_id: str, task_id: str, pages: Sequence[Any]) -> Task:
        """Save edited pages without regenerating anything."""
        normalized = normalize_pages(pages)
        if not normalized:
            raise ValidationFailed("pages must not be empty")
        async with self._session_maker() as db:
            task = await load_owned_task(db, task_id, user_id)
            if task.status in _BUSY:
                raise CreatorError.invalid_status(task_id, task.status.value, "edit the outline")
            task.pages = normalized
            task.total_pages = len(normalized)
            task.outline = build_outline_text(normalized)
            await db.commit()
            await db.refresh(task)
        logger.info("Task %s outline saved with %d page(s)", task_id, len(normalized))
        return task

    async def delete_task(self, user_id: str, task_id: str) -> None:
        async with self._session_maker() as db:
            task = await load_owned_task(db, task_id, user_id)
            if task.status in _BUSY:
                raise CreatorError.invalid_status(task_id, task.status.value, "delete")
            await delete_task_rows(db, [task_id])
            await db.commit()
        logger.info("Task %s deleted by %s", task_id, user_id)


__all__ = ["TaskService", "delete_task_rows"]
