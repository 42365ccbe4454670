"""
Tests for pagesmith/services/orchestrator.py: image batches, regeneration,
cancel and progress.
"""
import asyncio

import pytest
from sqlalchemy import select

from conftest import PAGES, USER
from pagesmith.errors import CreatorError, ErrorCode
from pagesmith.models import GeneratedBy, ImageStatus, ImageVersion, Task, TaskStatus
from pagesmith.services.events import EventChannel
from pagesmith.services.orchestrator import CANCELLED_MESSAGE
from pagesmith.services.outline import normalize_pages


async def run_batch(services, task_id, pages=PAGES, is_regenerate=False, user_id=USER):
    channel = EventChannel()
    await services.orchestrator.run_image_batch(
        user_id, task_id, normalize_pages(pages), "full outline", is_regenerate, channel
    )
    return [e async for e in channel]


def of_type(events, kind):
    return [e for e in events if e.type == kind]


# ---------------------------------------------------------------------------
# Sequential batch
# ---------------------------------------------------------------------------

class TestSequentialBatch:
    async def test_all_pages_complete(self, services, make_task, load_task, load_images, wallet, generator):
        task_id = await make_task()
        events = await run_batch(services, task_id)

        assert [e.page_index for e in of_type(events, "complete")] == [0, 1, 2]
        assert of_type(events, "error") == []
        assert events[-1].type == "finish"
        assert events[0].type == "progress" and events[0].stage == "cover"

        task = await load_task(task_id)
        assert task.status == TaskStatus.completed
        assert task.generated_pages == 3
        assert task.cover_image_url == "https://img.test/1.png"

        images = await load_images(task_id)
        assert all(i.status == ImageStatus.completed for i in images.values())
        assert images[0].power_amount == 80 and images[0].power_deducted
        assert images[1].power_amount == 40
        assert [d[1] for d in wallet.debits] == [80, 40, 40]
        assert wallet.balances[USER] == 840

    async def test_cover_is_reference_for_content(self, services, make_task, generator):
        task_id = await make_task(user_images=["https://ref.test/u.png"])
        await run_batch(services, task_id)

        assert generator.calls[0]["refs"] == ["https://ref.test/u.png"]
        assert generator.calls[1]["refs"] == ["https://img.test/1.png"]
        assert generator.calls[2]["refs"] == ["https://img.test/1.png"]
        assert generator.calls[1]["prompt"] == "内容|page one about packing"

    async def test_versions_start_at_one(self, services, make_task, session_maker):
        task_id = await make_task()
        await run_batch(services, task_id)

        async with session_maker() as db:
            rows = (await db.execute(select(ImageVersion).where(ImageVersion.task_id == task_id))).scalars().all()
        assert sorted(r.page_index for r in rows) == [0, 1, 2]
        assert all(r.version == 1 and r.is_current for r in rows)
        assert all(r.generated_by == GeneratedBy.initial for r in rows)

    async def test_partial_failure_refunds_page_and_finishes(self, services, make_task, load_task, load_images,
                                                             wallet, generator):
        generator.fail_on = {"page one"}
        task_id = await make_task()
        events = await run_batch(services, task_id)

        errors = of_type(events, "error")
        assert [e.page_index for e in errors] == [1]
        assert errors[0].code == ErrorCode.AI_PROVIDER_ERROR.value
        assert [e.page_index for e in of_type(events, "complete")] == [0, 2]
        assert events[-1].type == "finish"

        task = await load_task(task_id)
        assert task.status == TaskStatus.completed
        assert task.generated_pages == 2

        images = await load_images(task_id)
        assert images[1].status == ImageStatus.failed
        assert images[1].power_deducted is False
        assert images[1].retry_count == 1
        assert [c[1] for c in wallet.credits] == [40]
        assert wallet.balances[USER] == 1000 - 80 - 40

    async def test_cover_failure_falls_back_to_user_images(self, services, make_task, generator):
        generator.fail_on = {"cover of"}
        task_id = await make_task(user_images=["https://ref.test/u.png"])
        events = await run_batch(services, task_id)

        assert [e.page_index for e in of_type(events, "error")] == [0]
        assert generator.calls[1]["refs"] == ["https://ref.test/u.png"]

    async def test_insufficient_balance_stops_before_any_call(self, services, make_task, load_task, wallet,
                                                              generator):
        wallet.balances[USER] = 100
        task_id = await make_task()
        events = await run_batch(services, task_id)

        assert [e.type for e in events] == ["error"]
        assert events[0].code == ErrorCode.INSUFFICIENT_BALANCE.value
        assert generator.calls == []
        assert wallet.debits == []
        task = await load_task(task_id)
        assert task.status == TaskStatus.failed

    async def test_free_units_then_paid_shortfall(self, services, make_task, load_images, wallet, generator):
        await services.config.update_config(free_usage_limit=2)
        wallet.balances[USER] = 0
        task_id = await make_task()
        events = await run_batch(services, task_id)

        assert [e.page_index for e in of_type(events, "complete")] == [0, 1]
        errors = of_type(events, "error")
        assert [(e.page_index, e.code) for e in errors] == [(2, ErrorCode.INSUFFICIENT_BALANCE.value)]
        assert len(generator.calls) == 2
        images = await load_images(task_id)
        assert images[2].status == ImageStatus.failed
        assert not images[0].power_deducted

    async def test_retry_skips_completed_pages(self, services, make_task, load_task, load_images, wallet,
                                               generator):
        generator.fail_on = {"page one"}
        task_id = await make_task()
        await run_batch(services, task_id)

        generator.fail_on = set()
        async with services.session_maker() as db:
            task = await db.get(Task, task_id)
            task.status = TaskStatus.failed
            await db.commit()

        events = await run_batch(services, task_id)

        assert sorted(e.page_index for e in of_type(events, "complete")) == [0, 1, 2]
        assert len(generator.calls) == 4
        assert [d[1] for d in wallet.debits] == [80, 40, 40, 40]
        images = await load_images(task_id)
        assert images[1].status == ImageStatus.completed
        assert images[1].current_version == 1
        assert (await load_task(task_id)).generated_pages == 3


# ---------------------------------------------------------------------------
# Parallel batch
# ---------------------------------------------------------------------------

class TestParallelBatch:
    PAGES = [{"index": 0, "type": "cover", "content": "cover"}] + [
        {"index": i, "type": "content", "content": f"content {i}"} for i in range(1, 7)
    ]

    async def test_all_pages_within_window(self, services, make_task, load_task, generator):
        await services.config.update_config(high_concurrency=True)
        generator.delay = 0.05
        task_id = await make_task(pages=self.PAGES)

        events = await run_batch(services, task_id, pages=self.PAGES)

        completed = of_type(events, "complete")
        assert completed[0].page_index == 0
        assert sorted(e.page_index for e in completed) == list(range(7))
        assert generator.max_active <= 3
        assert events[-1].type == "finish"
        task = await load_task(task_id)
        assert task.generated_pages == 7
        assert task.status == TaskStatus.completed

    async def test_failures_do_not_stop_other_workers(self, services, make_task, load_images, wallet, generator):
        await services.config.update_config(high_concurrency=True)
        generator.fail_on = {"content 2", "content 5"}
        task_id = await make_task(pages=self.PAGES)

        events = await run_batch(services, task_id, pages=self.PAGES)

        assert sorted(e.page_index for e in of_type(events, "error")) == [2, 5]
        assert sorted(e.page_index for e in of_type(events, "complete")) == [0, 1, 3, 4, 6]
        images = await load_images(task_id)
        assert {i for i, img in images.items() if img.status == ImageStatus.failed} == {2, 5}
        assert wallet.balances[USER] == 1000 - 80 - 4 * 40


# ---------------------------------------------------------------------------
# Start checks & cancel
# ---------------------------------------------------------------------------

class TestStartAndCancel:
    async def test_start_rejects_busy_task(self, services, make_task):
        task_id = await make_task(status=TaskStatus.generating_images)
        with pytest.raises(CreatorError) as exc:
            await services.orchestrator.start_image_batch(USER, task_id, PAGES, "")
        assert exc.value.code == ErrorCode.TASK_INVALID_STATUS

    async def test_completed_task_needs_regenerate_flag(self, services, make_task):
        task_id = await make_task(status=TaskStatus.completed)
        with pytest.raises(CreatorError):
            await services.orchestrator.start_image_batch(USER, task_id, PAGES, "")
        channel = await services.orchestrator.start_image_batch(USER, task_id, PAGES, "", is_regenerate=True)
        events = [e async for e in channel]
        assert events[-1].type == "finish"

    async def test_other_users_task(self, services, make_task):
        task_id = await make_task(user_id="someone-else")
        with pytest.raises(CreatorError) as exc:
            await services.orchestrator.start_image_batch(USER, task_id, PAGES, "")
        assert exc.value.code == ErrorCode.FORBIDDEN

    async def test_empty_pages(self, services, make_task):
        task_id = await make_task()
        with pytest.raises(CreatorError) as exc:
            await services.orchestrator.start_image_batch(USER, task_id, [], "")
        assert exc.value.code == ErrorCode.INVALID_REQUEST

    async def test_cancel_stops_dispatch(self, services, make_task, load_task, load_images, generator):
        task_id = await make_task()

        async def cancel_on_cover(n, prompt):
            if n == 1:
                await services.orchestrator.cancel_task(USER, task_id)

        generator.on_call = cancel_on_cover
        events = await run_batch(services, task_id)

        assert len(generator.calls) == 1
        finish = events[-1]
        assert finish.type == "finish"
        assert finish.code == ErrorCode.TASK_CANCELLED.value
        task = await load_task(task_id)
        assert task.status == TaskStatus.failed
        assert task.error_message == CANCELLED_MESSAGE
        images = await load_images(task_id)
        assert images[0].status == ImageStatus.completed
        assert images[1].status == ImageStatus.pending

    async def test_restart_after_cancel_leaves_old_run_stopped(self, services, make_task, load_task, wallet,
                                                              generator):
        orchestrator = services.orchestrator
        generator.delay = 0.05
        task_id = await make_task()

        first = await orchestrator.start_image_batch(USER, task_id, PAGES, "")
        for _ in range(200):
            if generator.calls:
                break
            await asyncio.sleep(0.005)
        await orchestrator.cancel_task(USER, task_id)
        second = await orchestrator.start_image_batch(USER, task_id, PAGES, "")

        old_events = [e async for e in first]
        new_events = [e async for e in second]
        await services.supervisor.join()

        assert [e.page_index for e in of_type(old_events, "complete")] == [0]
        assert old_events[-1].type == "finish"
        assert old_events[-1].code == ErrorCode.TASK_CANCELLED.value
        assert new_events[-1].type == "finish"
        assert new_events[-1].code is None
        prompts = [c["prompt"] for c in generator.calls]
        assert sum("page one about packing" in p for p in prompts) == 1
        assert sum("page two wrapping up" in p for p in prompts) == 1
        assert len(wallet.debits) == len(generator.calls)
        assert (await load_task(task_id)).status == TaskStatus.completed

    async def test_cancel_idle_task_rejected(self, services, make_task):
        task_id = await make_task()
        with pytest.raises(CreatorError) as exc:
            await services.orchestrator.cancel_task(USER, task_id)
        assert exc.value.code == ErrorCode.TASK_INVALID_STATUS


# ---------------------------------------------------------------------------
# Regeneration
# ---------------------------------------------------------------------------

class TestRegenerate:
    async def test_single_regenerate_adds_version(self, services, make_task, load_images, session_maker, wallet,
                                                  generator):
        task_id = await make_task()
        await run_batch(services, task_id)

        url, version = await services.orchestrator.regenerate_image(USER, task_id, 1)

        assert version == 2
        assert url == "https://img.test/4.png"
        assert generator.calls[-1]["refs"] == ["https://img.test/1.png"]
        images = await load_images(task_id)
        assert images[1].image_url == url
        assert images[1].current_version == 2
        assert images[1].power_amount == 40
        async with session_maker() as db:
            rows = (
                await db.execute(select(ImageVersion).where(ImageVersion.image_id == images[1].id)
                                 .order_by(ImageVersion.version))
            ).scalars().all()
        assert [(r.version, r.is_current) for r in rows] == [(1, False), (2, True)]
        assert rows[1].generated_by == GeneratedBy.single_regenerate
        assert [d[1] for d in wallet.debits] == [80, 40, 40, 40]

    async def test_concurrent_regenerates_are_each_billed(self, services, make_task, load_images, wallet,
                                                          generator):
        task_id = await make_task()
        await run_batch(services, task_id)
        generator.delay = 0.02

        results = await asyncio.gather(
            services.orchestrator.regenerate_image(USER, task_id, 1),
            services.orchestrator.regenerate_image(USER, task_id, 1),
        )

        assert sorted(version for _, version in results) == [2, 3]
        assert [d[1] for d in wallet.debits] == [80, 40, 40, 40, 40]
        assert wallet.balances[USER] == 1000 - 240
        images = await load_images(task_id)
        assert images[1].current_version == 3
        assert images[1].power_deducted is True
        assert services.orchestrator._locks == {}

    async def test_custom_prompt_overrides_page_text(self, services, make_task, load_images, generator):
        task_id = await make_task()
        await run_batch(services, task_id)

        await services.orchestrator.regenerate_image(USER, task_id, 2, prompt="  a red kite  ")

        assert generator.calls[-1]["prompt"] == "a red kite"
        images = await load_images(task_id)
        assert images[2].prompt == "a red kite"

    async def test_failed_regenerate_keeps_history(self, services, make_task, load_images, wallet, generator):
        task_id = await make_task()
        await run_batch(services, task_id)
        generator.fail_on = {"boom"}

        with pytest.raises(CreatorError):
            await services.orchestrator.regenerate_image(USER, task_id, 1, prompt="boom")

        images = await load_images(task_id)
        assert images[1].status == ImageStatus.failed
        assert images[1].current_version == 1
        assert images[1].image_url == "https://img.test/2.png"
        assert wallet.balances[USER] == 1000 - 160

    async def test_run_regenerate_events(self, services, make_task):
        task_id = await make_task()
        await run_batch(services, task_id)

        channel = EventChannel()
        await services.orchestrator.run_regenerate(USER, task_id, 0, None, channel)
        events = [e async for e in channel]

        assert [e.type for e in events] == ["start", "complete", "finish"]
        assert events[1].version == 2

    async def test_batch_regenerate_bumps_versions(self, services, make_task, session_maker):
        task_id = await make_task()
        await run_batch(services, task_id)
        await run_batch(services, task_id, is_regenerate=True)

        async with session_maker() as db:
            rows = (
                await db.execute(select(ImageVersion).where(ImageVersion.task_id == task_id,
                                                            ImageVersion.is_current.is_(True)))
            ).scalars().all()
        assert sorted(r.version for r in rows) == [2, 2, 2]
        assert all(r.generated_by == GeneratedBy.batch_regenerate for r in rows)

    async def test_regenerate_unknown_page(self, services, make_task):
        task_id = await make_task()
        with pytest.raises(CreatorError) as exc:
            await services.orchestrator.start_regenerate(USER, task_id, 9)
        assert exc.value.code == ErrorCode.IMAGE_NOT_FOUND


# ---------------------------------------------------------------------------
# Progress snapshot
# ---------------------------------------------------------------------------

class TestProgress:
    async def test_snapshot_after_partial_failure(self, services, make_task, generator):
        generator.fail_on = {"page two"}
        task_id = await make_task()
        await run_batch(services, task_id)

        snapshot = await services.orchestrator.get_progress(USER, task_id)

        progress = snapshot["progress"]
        assert progress["status"] == "completed"
        assert progress["completedCount"] == 2
        assert progress["failedCount"] == 1
        assert progress["pendingCount"] == 0
        assert progress["totalPages"] == 3
        assert [i["status"] for i in snapshot["images"]] == ["completed", "completed", "failed"]
