# pagesmith/services/versions.py
"""
Append-only version history per image.

Exactly one ImageVersion per image has ``is_current=True``. Writers flip the
old pointer off and the new one on inside a single transaction, and the
Image row's denormalised ``image_url``/``current_version`` move with it.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pagesmith.errors import CreatorError
from pagesmith.models import GeneratedBy, Image, ImageStatus, ImageVersion

logger = logging.getLogger(__name__)


async def _find_image(db: AsyncSession, task_id: str, page_index: int) -> Image:
    image = (
        await db.execute(select(Image).where(Image.task_id == task_id, Image.page_index == page_index))
    ).scalars().first()
    if image is None:
        raise CreatorError.image_not_found(task_id, page_index)
    return image


async def save_version(
    db: AsyncSession,
    image: Image,
    image_url: str,
    prompt: Optional[str],
    generated_by: GeneratedBy,
    power_amount: int,
    version: int,
) -> ImageVersion:
    """Add ``version`` as the image's current version. Caller commits.

    If that number is already taken (a regenerate racing a restore, or a
    reset row whose history starts above 1) the next free number is used.
    """
    taken = (
        await db.execute(
            select(func.max(ImageVersion.version)).where(ImageVersion.image_id == image.id)
        )
    ).scalar()
    if taken is not None:
        exists = (
            await db.execute(
                select(ImageVersion.id).where(ImageVersion.image_id == image.id, ImageVersion.version == version)
            )
        ).first()
        if exists is not None:
            version = taken + 1

    await db.execute(
        update(ImageVersion)
        .where(ImageVersion.image_id == image.id, ImageVersion.is_current.is_(True))
        .values(is_current=False)
        .execution_options(synchronize_session=False)
    )
    row = ImageVersion(
        image_id=image.id,
        task_id=image.task_id,
        page_index=image.page_index,
        version=version,
        image_url=image_url,
        prompt=prompt,
        generated_by=generated_by,
        power_amount=power_amount,
        is_current=True,
    )
    db.add(row)
    image.current_version = version
    image.image_url = image_url
    logger.debug("Image %s now at v%d (%s)", image.id, version, generated_by.value)
    return row


class VersionService:
    def __init__(self, session_maker: Callable[[], AsyncSession]):
        self._session_maker = session_maker

    async def get_versions(self, task_id: str, page_index: int) -> List[ImageVersion]:
        """Newest first."""
        async with self._session_maker() as db:
            image = await _find_image(db, task_id, page_index)
            rows = (
                await db.execute(
                    select(ImageVersion)
                    .where(ImageVersion.image_id == image.id)
                    .order_by(ImageVersion.version.desc())
                )
            ).scalars().all()
        return list(rows)

    async def get_version(self, task_id: str, page_index: int, version: int) -> ImageVersion:
        async with self._session_maker() as db:
            image = await _find_image(db, task_id, page_index)
            row = (
                await db.execute(
                    select(ImageVersion).where(ImageVersion.image_id == image.id, ImageVersion.version == version)
                )
            ).scalars().first()
        if row is None:
            raise CreatorError.version_not_found(task_id, page_index, version)
        return row

    async def restore_version(self, task_id: str, page_index: int, version: int) -> ImageVersion:
        """Point the image back at an existing version. Writes no history, charges nothing."""
        async with self._session_maker() as db:
            image = await _find_image(db, task_id, page_index)
            target = (
                await db.execute(
                    select(ImageVersion).where(ImageVersion.image_id == image.id, ImageVersion.version == version)
                )
            ).scalars().first()
            if target is None:
                raise CreatorError.version_not_found(task_id, page_index, version)

            await db.execute(
                update(ImageVersion)
                .where(ImageVersion.image_id == image.id, ImageVersion.id != target.id)
                .values(is_current=False)
                .execution_options(synchronize_session=False)
            )
            target.is_current = True
            image.image_url = target.image_url
            image.current_version = target.version
            image.status = ImageStatus.completed
            image.error_message = None
            await db.commit()

        logger.info("Restored task %s page %d to v%d", task_id, page_index, version)
        return target


__all__ = ["VersionService", "save_version"]
