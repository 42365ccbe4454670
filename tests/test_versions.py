"""
Tests for pagesmith/services/versions.py: append-only history and restore.
"""
import pytest
from sqlalchemy import select

from pagesmith.errors import CreatorError, ErrorCode
from pagesmith.models import GeneratedBy, Image, ImageStatus, ImageVersion, PageType
from pagesmith.services.versions import save_version


async def _image_with_history(session_maker, task_id, urls):
    async with session_maker() as db:
        image = Image(task_id=task_id, page_index=1, page_type=PageType.content, prompt="p")
        db.add(image)
        await db.flush()
        for n, url in enumerate(urls, start=1):
            await save_version(db, image, url, f"prompt {n}", GeneratedBy.initial if n == 1 else
                               GeneratedBy.single_regenerate, 40, n)
            await db.flush()
        image.status = ImageStatus.completed
        await db.commit()
        return image.id


async def _versions(session_maker, image_id):
    async with session_maker() as db:
        return (
            await db.execute(select(ImageVersion).where(ImageVersion.image_id == image_id)
                             .order_by(ImageVersion.version))
        ).scalars().all()


class TestSaveVersion:
    async def test_exactly_one_current(self, session_maker, make_task):
        task_id = await make_task()
        image_id = await _image_with_history(session_maker, task_id, ["u1", "u2", "u3"])

        rows = await _versions(session_maker, image_id)
        assert [r.version for r in rows] == [1, 2, 3]
        assert [r.is_current for r in rows] == [False, False, True]

        async with session_maker() as db:
            image = await db.get(Image, image_id)
        assert image.current_version == 3
        assert image.image_url == "u3"

    async def test_taken_number_moves_to_next_free(self, session_maker, make_task):
        task_id = await make_task()
        image_id = await _image_with_history(session_maker, task_id, ["u1", "u2"])

        async with session_maker() as db:
            image = await db.get(Image, image_id)
            row = await save_version(db, image, "u-again", None, GeneratedBy.batch_regenerate, 0, 1)
            await db.commit()

        assert row.version == 3
        rows = await _versions(session_maker, image_id)
        assert [r.image_url for r in rows] == ["u1", "u2", "u-again"]
        assert sum(r.is_current for r in rows) == 1


class TestVersionService:
    async def test_list_newest_first(self, services, session_maker, make_task):
        task_id = await make_task()
        await _image_with_history(session_maker, task_id, ["u1", "u2"])

        rows = await services.versions.get_versions(task_id, 1)
        assert [r.version for r in rows] == [2, 1]
        assert rows[1].generated_by == GeneratedBy.initial

    async def test_get_single_version(self, services, session_maker, make_task):
        task_id = await make_task()
        await _image_with_history(session_maker, task_id, ["u1", "u2"])

        row = await services.versions.get_version(task_id, 1, 1)
        assert row.image_url == "u1"
        assert row.prompt == "prompt 1"

    async def test_missing_version(self, services, session_maker, make_task):
        task_id = await make_task()
        await _image_with_history(session_maker, task_id, ["u1"])

        with pytest.raises(CreatorError) as exc:
            await services.versions.get_version(task_id, 1, 7)
        assert exc.value.code == ErrorCode.IMAGE_VERSION_NOT_FOUND

    async def test_missing_image(self, services, make_task):
        task_id = await make_task()
        with pytest.raises(CreatorError) as exc:
            await services.versions.get_versions(task_id, 4)
        assert exc.value.code == ErrorCode.IMAGE_NOT_FOUND

    async def test_restore_moves_pointer_without_new_history(self, services, session_maker, make_task, wallet):
        task_id = await make_task()
        image_id = await _image_with_history(session_maker, task_id, ["u1", "u2", "u3"])

        restored = await services.versions.restore_version(task_id, 1, 1)

        assert restored.version == 1
        rows = await _versions(session_maker, image_id)
        assert len(rows) == 3
        assert [r.is_current for r in rows] == [True, False, False]
        async with session_maker() as db:
            image = await db.get(Image, image_id)
        assert image.image_url == "u1"
        assert image.current_version == 1
        assert wallet.debits == []

    async def test_restore_unknown_version_changes_nothing(self, services, session_maker, make_task):
        task_id = await make_task()
        image_id = await _image_with_history(session_maker, task_id, ["u1", "u2"])

        with pytest.raises(CreatorError):
            await services.versions.restore_version(task_id, 1, 9)

        rows = await _versions(session_maker, image_id)
        assert [r.is_current for r in rows] == [False, True]
