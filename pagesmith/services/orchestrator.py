# pagesmith/services/orchestrator.py
"""
Generation orchestrator: owns the task state machine.

    pending -> generating_outline -> outline_ready -> generating_images -> completed
    (any) -> failed

Outline generation runs inside the request. Image batches and single-page
regenerations run as supervised background tasks that publish to an
EventChannel; the client may drop the channel at any time and the run goes on.
Per page the flow is: bill (free unit or debit) -> call the adapter through
the circuit breaker -> write image + version in one transaction. A page
failure refunds that page, emits an ``error`` event and the batch moves on.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pagesmith.background import TaskSupervisor
from pagesmith.errors import (
    BalanceError, CreatorError, ErrorCode, ProviderError, ValidationFailed, as_creator_error,
)
from pagesmith.generators.base import BaseGenerator
from pagesmith.models import GeneratedBy, Image, ImageStatus, PageType, Task, TaskStatus, utcnow
from pagesmith.services.billing import ConsumeType, CreditLedger
from pagesmith.services.circuit_breaker import CircuitBreaker
from pagesmith.services.config_service import ConfigService
from pagesmith.services.events import EventChannel, ProgressEvent
from pagesmith.services.generator_resolver import GeneratorResolver
from pagesmith.services.image_prompt import build_image_prompt, extract_short_prompt
from pagesmith.services.outline import OutlineService, Page, normalize_pages
from pagesmith.services.versions import save_version
from pagesmith.settings.config import settings

logger = logging.getLogger(__name__)

TEXT_SERVICE = "text-generation"
CANCELLED_MESSAGE = "Generation cancelled by user"


async def load_owned_task(db: AsyncSession, task_id: str, user_id: Optional[str]) -> Task:
    task = await db.get(Task, task_id)
    if task is None:
        raise CreatorError.task_not_found(task_id)
    if user_id is not None and task.user_id != user_id:
        raise CreatorError.forbidden(task_id)
    return task


@dataclass
class _BatchContext:
    task_id: str
    user_id: str
    topic: str
    full_outline: str
    generator: BaseGenerator
    image_template: Optional[str]
    is_regenerate: bool
    channel: EventChannel
    cancel_token: asyncio.Event
    reference_images: List[str] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.is_set()


@dataclass
class _PageLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class GenerationOrchestrator:
    def __init__(
        self,
        session_maker: Callable[[], AsyncSession],
        ledger: CreditLedger,
        config_service: ConfigService,
        resolver: GeneratorResolver,
        outline_service: OutlineService,
        breaker: CircuitBreaker,
        supervisor: TaskSupervisor,
        concurrency: Optional[int] = None,
    ):
        self._session_maker = session_maker
        self._ledger = ledger
        self._config = config_service
        self._resolver = resolver
        self._outline = outline_service
        self._breaker = breaker
        self._supervisor = supervisor
        self.concurrency = concurrency or settings.IMAGE_CONCURRENCY
        self._locks: Dict[Tuple[str, int], _PageLock] = {}
        # task id -> cancel token of the batch currently running for it
        self._runs: Dict[str, asyncio.Event] = {}

    @asynccontextmanager
    async def _page_lock(self, task_id: str, page_index: int) -> AsyncIterator[None]:
        """Serialise billed generation of one page; the entry goes away with its last user."""
        key = (task_id, page_index)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _PageLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    def _register_run(self, task_id: str) -> asyncio.Event:
        token = asyncio.Event()
        self._runs[task_id] = token
        return token

    # ========== outline ==========

    async def generate_outline(self, user_id: str, topic: str, user_images: Optional[Sequence[str]] = None,
                               task_id: Optional[str] = None) -> Dict[str, Any]:
        """Charge one outline unit, generate and parse; refund if anything fails."""
        topic = (topic or "").strip()
        if not topic:
            raise ValidationFailed("topic must not be empty")
        images = list(user_images or [])

        if task_id:
            async with self._session_maker() as db:
                task = await load_owned_task(db, task_id, user_id)
                if task.status not in (TaskStatus.pending, TaskStatus.failed):
                    raise CreatorError.invalid_status(task_id, task.status.value, "regenerate its outline")

        power = await self._ledger.get_power_config()
        if not await self._ledger.has_sufficient_balance(user_id, power.outline_power):
            raise BalanceError.insufficient(power.outline_power)
        billing = await self._ledger.consume(user_id, ConsumeType.outline)

        async with self._session_maker() as db:
            if task_id:
                task = await load_owned_task(db, task_id, user_id)
                task.topic = topic
                task.user_images = images
                task.error_message = None
            else:
                task = Task(user_id=user_id, topic=topic, user_images=images, total_pages=0, generated_pages=0)
                db.add(task)
            task.status = TaskStatus.generating_outline
            await db.commit()
            task_id = task.id

        try:
            text, pages = await self._breaker.execute(
                TEXT_SERVICE, lambda: self._outline.generate_outline(topic, images)
            )
        except Exception as exc:
            err = as_creator_error(exc)
            if not isinstance(exc, CreatorError):
                logger.exception("Outline generation for task %s crashed", task_id)
                err = CreatorError(err.message, ErrorCode.TASK_GENERATION_FAILED)
            else:
                logger.warning("Outline generation for task %s failed: %s", task_id, err.message)
            try:
                await self._ledger.rollback_power(user_id, billing.power_deducted, ConsumeType.outline, None, task_id)
            except Exception:  # noqa: BLE001
                logger.exception("Outline refund for task %s failed", task_id)
            await self._fail_task(task_id, err.message)
            err.details.setdefault("taskId", task_id)
            if err is exc:
                raise
            raise err from exc

        async with self._session_maker() as db:
            task = await db.get(Task, task_id)
            task.outline = text
            task.pages = pages
            task.total_pages = len(pages)
            task.status = TaskStatus.outline_ready
            await db.commit()

        return {
            "taskId": task_id,
            "outline": text,
            "pages": pages,
            "billing": {"isFree": billing.is_free, "powerDeducted": billing.power_deducted},
        }

    # ========== image batch ==========

    async def start_image_batch(self, user_id: str, task_id: str, pages: Sequence[Any], full_outline: str,
                                is_regenerate: bool = False) -> EventChannel:
        """Validate synchronously, then run the batch in the background."""
        normalized = normalize_pages(pages)
        if not normalized:
            raise ValidationFailed("pages must not be empty")

        async with self._session_maker() as db:
            task = await load_owned_task(db, task_id, user_id)
            allowed = task.status in (TaskStatus.outline_ready, TaskStatus.failed) or (
                is_regenerate and task.status == TaskStatus.completed
            )
            if not allowed:
                raise CreatorError.invalid_status(task_id, task.status.value, "generate images")

        # a cancelled run still finishing keeps its own token; it never sees this one
        token = self._register_run(task_id)
        channel = EventChannel()
        self._supervisor.spawn(
            self.run_image_batch(user_id, task_id, normalized, full_outline, is_regenerate, channel, token),
            name=f"batch:{task_id}",
        )
        return channel

    async def run_image_batch(self, user_id: str, task_id: str, pages: List[Page], full_outline: str,
                              is_regenerate: bool, channel: EventChannel,
                              cancel_token: Optional[asyncio.Event] = None) -> None:
        token = cancel_token if cancel_token is not None else self._register_run(task_id)
        try:
            await self._run_batch(user_id, task_id, pages, full_outline, is_regenerate, channel, token)
        except Exception as exc:
            err = as_creator_error(exc)
            if isinstance(exc, CreatorError):
                logger.warning("Batch for task %s aborted: %s", task_id, err.message)
            else:
                logger.exception("Batch for task %s crashed", task_id)
            await self._fail_task(task_id, err.message)
            channel.publish(ProgressEvent(type="error", code=err.code.value, message=err.message, task_id=task_id))
        finally:
            if self._runs.get(task_id) is token:
                del self._runs[task_id]
            channel.close()

    async def _run_batch(self, user_id: str, task_id: str, pages: List[Page], full_outline: str,
                         is_regenerate: bool, channel: EventChannel, token: asyncio.Event) -> None:
        total_power = await self._ledger.calculate_total_power(pages)
        if not await self._ledger.has_sufficient_balance(user_id, total_power):
            err = BalanceError.insufficient(total_power)
            await self._fail_task(task_id, err.message)
            channel.publish(ProgressEvent(type="error", code=err.code.value, message=err.message, task_id=task_id))
            logger.warning("Task %s: balance below %d credits, batch not started", task_id, total_power)
            return

        async with self._session_maker() as db:
            task = await db.get(Task, task_id)
            task.status = TaskStatus.generating_images
            task.error_message = None
            if not (is_regenerate and task.total_pages):
                task.total_pages = len(pages)
            topic, user_images, existing_cover = task.topic, list(task.user_images or []), task.cover_image_url
            await db.commit()

        config = await self._config.get_config()
        generator = await self._resolver.resolve_image_generator(config)
        done_urls = await self._prepare_images(task_id, pages, is_regenerate)

        ctx = _BatchContext(
            task_id=task_id, user_id=user_id, topic=topic, full_outline=full_outline or "",
            generator=generator, image_template=config.image_prompt,
            is_regenerate=is_regenerate, channel=channel, cancel_token=token,
            reference_images=user_images,
        )
        logger.info("Task %s: generating %d page(s) (regenerate=%s)", task_id, len(pages), is_regenerate)

        # cover first; it becomes the reference for every content page
        cover_page = next((p for p in pages if p["type"] == PageType.cover.value), None)
        cover_url: Optional[str] = None
        if cover_page is not None and not ctx.cancelled:
            channel.publish(ProgressEvent(type="progress", stage="cover", current=0, total=len(pages),
                                          message="Generating cover"))
            if cover_page["index"] in done_urls:
                cover_url = done_urls[cover_page["index"]]
                channel.publish(ProgressEvent(type="complete", page_index=cover_page["index"], image_url=cover_url))
            else:
                cover_url = await self._run_page(ctx, cover_page)

        cover_url = cover_url or existing_cover
        ctx.reference_images = [cover_url] if cover_url else user_images

        content_pages = [p for p in pages if p is not cover_page]
        pending: List[Page] = []
        for page in content_pages:
            if page["index"] in done_urls:
                channel.publish(ProgressEvent(type="complete", page_index=page["index"],
                                              image_url=done_urls[page["index"]]))
            else:
                pending.append(page)

        if await self._config.high_concurrency():
            await self._run_parallel(ctx, pending)
        else:
            await self._run_sequential(ctx, pending)

        if ctx.cancelled:
            channel.publish(ProgressEvent(type="finish", code=ErrorCode.TASK_CANCELLED.value,
                                          message=CANCELLED_MESSAGE, task_id=task_id))
            logger.info("Task %s: batch stopped after cancel", task_id)
            return

        async with self._session_maker() as db:
            task = await db.get(Task, task_id)
            task.status = TaskStatus.completed
            task.error_message = None
            await self._sync_generated_pages(db, task)
            await db.commit()

        channel.publish(ProgressEvent(type="finish", message="All pages attempted", task_id=task_id))

    async def _prepare_images(self, task_id: str, pages: List[Page], is_regenerate: bool) -> Dict[int, str]:
        """Create missing Image rows and reset the ones about to be regenerated.

        Returns ``{page_index: image_url}`` for pages that are already
        completed and will be skipped (plain retry of a failed batch).
        """
        done: Dict[int, str] = {}
        async with self._session_maker() as db:
            existing = {
                img.page_index: img
                for img in (await db.execute(select(Image).where(Image.task_id == task_id))).scalars().all()
            }
            for page in pages:
                image = existing.get(page["index"])
                short_prompt = extract_short_prompt(page["content"])
                if image is None:
                    db.add(Image(
                        task_id=task_id, page_index=page["index"], page_type=PageType(page["type"]),
                        prompt=short_prompt, status=ImageStatus.pending,
                    ))
                    continue
                if not is_regenerate and image.status == ImageStatus.completed and image.image_url:
                    done[page["index"]] = image.image_url
                    continue
                if image.status == ImageStatus.completed and image.power_deducted:
                    # the earlier debit paid for the image now being replaced
                    image.power_deducted = False
                    image.power_amount = 0
                    image.billing_account_no = None
                image.status = ImageStatus.pending
                image.error_message = None
                image.page_type = PageType(page["type"])
                image.prompt = short_prompt
            await db.commit()
        return done

    async def _run_sequential(self, ctx: _BatchContext, pages: List[Page]) -> None:
        for i, page in enumerate(pages):
            if ctx.cancelled:
                break
            ctx.channel.publish(ProgressEvent(type="progress", stage="content", current=i + 1, total=len(pages),
                                              message=f"Generating page {page['index'] + 1}"))
            await self._run_page(ctx, page)

    async def _run_parallel(self, ctx: _BatchContext, pages: List[Page]) -> None:
        """Fixed window of workers; the next page starts as soon as any one settles."""
        if not pages:
            return
        queue = deque(pages)
        settled = 0
        ctx.channel.publish(ProgressEvent(type="progress", stage="content", current=0, total=len(pages),
                                          message=f"Generating {len(pages)} page(s), {self.concurrency} at a time"))

        async def worker() -> None:
            nonlocal settled
            while queue and not ctx.cancelled:
                page = queue.popleft()
                await self._run_page(ctx, page)
                settled += 1
                ctx.channel.publish(ProgressEvent(type="progress", stage="content", current=settled,
                                                  total=len(pages)))

        await asyncio.gather(*(worker() for _ in range(min(self.concurrency, len(pages)))))

    async def _run_page(self, ctx: _BatchContext, page: Page) -> Optional[str]:
        """Generate one page and report it. Returns the URL, or None on failure; never raises."""
        try:
            url, _ = await self._generate_page(
                task_id=ctx.task_id,
                user_id=ctx.user_id,
                page_index=page["index"],
                page_type=page["type"],
                prompt=build_image_prompt(page["content"], page["type"], ctx.full_outline, ctx.topic,
                                          ctx.image_template),
                generator=ctx.generator,
                reference_images=ctx.reference_images,
                generated_by=GeneratedBy.batch_regenerate if ctx.is_regenerate else GeneratedBy.initial,
                bump_version=ctx.is_regenerate,
            )
        except Exception as exc:
            err = self._page_error(exc, ctx.task_id, page["index"])
            await self._mark_image_failed(ctx.task_id, page["index"], err.message)
            ctx.channel.publish(ProgressEvent(type="error", page_index=page["index"], code=err.code.value,
                                              message=err.message))
            return None
        ctx.channel.publish(ProgressEvent(type="complete", page_index=page["index"], image_url=url))
        return url

    @staticmethod
    def _page_error(exc: BaseException, task_id: str, page_index: int) -> CreatorError:
        if isinstance(exc, ProviderError):
            logger.warning("Task %s page %d: provider error: %s", task_id, page_index, exc)
            return exc
        if isinstance(exc, CreatorError):
            logger.warning("Task %s page %d failed: %s", task_id, page_index, exc)
            return exc
        logger.exception("Task %s page %d crashed", task_id, page_index)
        return CreatorError(str(exc) or exc.__class__.__name__, ErrorCode.IMAGE_GENERATION_FAILED)

    # ========== one page ==========

    async def _generate_page(
        self,
        *,
        task_id: str,
        user_id: str,
        page_index: int,
        page_type: str,
        prompt: str,
        generator: BaseGenerator,
        reference_images: Sequence[str],
        generated_by: GeneratedBy,
        bump_version: bool,
        stored_prompt: Optional[str] = None,
    ) -> Tuple[str, int]:
        """Billed generation of one page under its lock. Returns (url, version)."""
        async with self._page_lock(task_id, page_index):
            async with self._session_maker() as db:
                image = (
                    await db.execute(select(Image).where(Image.task_id == task_id, Image.page_index == page_index))
                ).scalars().first()
                if image is None:
                    raise CreatorError.image_not_found(task_id, page_index)
                image_id = image.id
                # a finished image's debit paid for that render; this attempt bills afresh
                if image.status == ImageStatus.completed and image.power_deducted:
                    image.power_deducted = False
                    image.power_amount = 0
                    image.billing_account_no = None
                    await db.commit()
                current = image.current_version or 0
            next_version = current + 1 if bump_version or current > 1 else 1
            service = f"image:{generator.name}"

            async def operation() -> Tuple[str, int]:
                url = await self._breaker.execute(
                    service,
                    lambda: generator.generate_image(
                        prompt,
                        reference_images=list(reference_images or []),
                        size=settings.DEFAULT_IMAGE_SIZE,
                        quality=settings.DEFAULT_IMAGE_QUALITY,
                    ),
                )
                async with self._session_maker() as db:
                    img = await db.get(Image, image_id)
                    img.status = ImageStatus.completed
                    img.error_message = None
                    if stored_prompt is not None:
                        img.prompt = stored_prompt
                    if bump_version:
                        img.retry_count = (img.retry_count or 0) + 1
                    row = await save_version(db, img, url, prompt, generated_by, img.power_amount or 0, next_version)
                    task = await db.get(Task, task_id)
                    if img.page_type == PageType.cover:
                        task.cover_image_url = url
                    await db.flush()
                    await self._sync_generated_pages(db, task)
                    version = row.version
                    await db.commit()
                return url, version

            (url, version), power = await self._ledger.execute_with_billing(user_id, image_id, page_type, operation)
            logger.debug("Task %s page %d -> v%d (%s, %d credits)", task_id, page_index, version,
                         generated_by.value, power)
            return url, version

    async def _sync_generated_pages(self, db: AsyncSession, task: Task) -> None:
        completed = (
            await db.execute(
                select(func.count(Image.id)).where(Image.task_id == task.id, Image.status == ImageStatus.completed)
            )
        ).scalar() or 0
        task.generated_pages = max(task.generated_pages or 0, completed)
        task.updated_at = utcnow()

    async def _mark_image_failed(self, task_id: str, page_index: int, message: str) -> None:
        async with self._session_maker() as db:
            await db.execute(
                update(Image)
                .where(
                    Image.task_id == task_id,
                    Image.page_index == page_index,
                    Image.status.in_([ImageStatus.pending, ImageStatus.generating]),
                )
                .values(status=ImageStatus.failed, error_message=message, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def _fail_task(self, task_id: str, message: str) -> None:
        async with self._session_maker() as db:
            task = await db.get(Task, task_id)
            if task is not None:
                task.status = TaskStatus.failed
                task.error_message = message
                await db.commit()

    # ========== single regenerate ==========

    async def start_regenerate(self, user_id: str, task_id: str, page_index: int,
                               prompt: Optional[str] = None) -> EventChannel:
        async with self._session_maker() as db:
            task = await load_owned_task(db, task_id, user_id)
            if task.status in (TaskStatus.pending, TaskStatus.generating_outline):
                raise CreatorError.invalid_status(task_id, task.status.value, "regenerate an image")
            image = (
                await db.execute(select(Image).where(Image.task_id == task_id, Image.page_index == page_index))
            ).scalars().first()
            if image is None:
                raise CreatorError.image_not_found(task_id, page_index)

        channel = EventChannel()
        self._supervisor.spawn(
            self.run_regenerate(user_id, task_id, page_index, prompt, channel),
            name=f"regenerate:{task_id}:{page_index}",
        )
        return channel

    async def run_regenerate(self, user_id: str, task_id: str, page_index: int, prompt: Optional[str],
                             channel: EventChannel) -> None:
        channel.publish(ProgressEvent(type="start", page_index=page_index, message="Regenerating image"))
        try:
            url, version = await self.regenerate_image(user_id, task_id, page_index, prompt)
        except Exception as exc:
            err = self._page_error(exc, task_id, page_index)
            await self._mark_image_failed(task_id, page_index, err.message)
            channel.publish(ProgressEvent(type="error", page_index=page_index, code=err.code.value,
                                          message=err.message))
        else:
            channel.publish(ProgressEvent(type="complete", page_index=page_index, image_url=url, version=version,
                                          message="Image regenerated"))
            channel.publish(ProgressEvent(type="finish", message="Regeneration finished", task_id=task_id))
        finally:
            channel.close()

    async def regenerate_image(self, user_id: str, task_id: str, page_index: int,
                               prompt: Optional[str] = None) -> Tuple[str, int]:
        """Regenerate one page as a new version; ``prompt`` overrides the page text."""
        async with self._session_maker() as db:
            task = await load_owned_task(db, task_id, user_id)
            image = (
                await db.execute(select(Image).where(Image.task_id == task_id, Image.page_index == page_index))
            ).scalars().first()
            if image is None:
                raise CreatorError.image_not_found(task_id, page_index)
            page_type = image.page_type
            page_text = next(
                (p.get("content") for p in (task.pages or []) if p.get("index") == page_index), None
            ) or image.prompt or ""
            topic, outline = task.topic, task.outline or ""
            cover_url, user_images = task.cover_image_url, list(task.user_images or [])

        config = await self._config.get_config()
        generator = await self._resolver.resolve_image_generator(config)
        if prompt and prompt.strip():
            full_prompt = prompt.strip()
        else:
            full_prompt = build_image_prompt(page_text, page_type, outline, topic, config.image_prompt)
        refs = [cover_url] if cover_url and page_type != PageType.cover else user_images

        return await self._generate_page(
            task_id=task_id,
            user_id=user_id,
            page_index=page_index,
            page_type=page_type.value,
            prompt=full_prompt,
            generator=generator,
            reference_images=refs,
            generated_by=GeneratedBy.single_regenerate,
            bump_version=True,
            stored_prompt=extract_short_prompt(full_prompt),
        )

    # ========== cancel & progress ==========

    async def cancel_task(self, user_id: str, task_id: str) -> Task:
        """Best effort: stops new page dispatch; calls already in flight finish."""
        async with self._session_maker() as db:
            task = await load_owned_task(db, task_id, user_id)
            if task.status not in (TaskStatus.generating_outline, TaskStatus.generating_images):
                raise CreatorError.invalid_status(task_id, task.status.value, "cancel")
            task.status = TaskStatus.failed
            task.error_message = CANCELLED_MESSAGE
            await db.commit()
            await db.refresh(task)
        token = self._runs.get(task_id)
        if token is not None:
            token.set()
        logger.info("Task %s cancelled by %s", task_id, user_id)
        return task

    async def get_progress(self, user_id: str, task_id: str) -> Dict[str, Any]:
        async with self._session_maker() as db:
            task = await load_owned_task(db, task_id, user_id)
            images = (
                await db.execute(select(Image).where(Image.task_id == task_id).order_by(Image.page_index.asc()))
            ).scalars().all()

        completed = sum(1 for i in images if i.status == ImageStatus.completed)
        failed = sum(1 for i in images if i.status == ImageStatus.failed)
        return {
            "progress": {
                "taskId": task.id,
                "status": task.status.value,
                "totalPages": task.total_pages,
                "generatedPages": task.generated_pages,
                "completedCount": completed,
                "failedCount": failed,
                "pendingCount": len(images) - completed - failed,
                "coverImageUrl": task.cover_image_url,
                "errorMessage": task.error_message,
            },
            "images": [
                {
                    "pageIndex": i.page_index,
                    "pageType": i.page_type.value,
                    "status": i.status.value,
                    "imageUrl": i.image_url,
                    "errorMessage": i.error_message,
                    "currentVersion": i.current_version,
                }
                for i in images
            ],
        }


__all__ = ["GenerationOrchestrator", "load_owned_task", "CANCELLED_MESSAGE"]
