# pagesmith/services/billing.py
"""
Credit ledger.

Free usage is tracked locally per user and always spent first; once the
user's counter reaches the configured limit, paid credits are debited from
the external wallet. Image debits are tied to the owning Image row through
``power_deducted`` / ``power_amount`` so a billed operation debits at most
once and is compensated exactly once when it fails.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Tuple, TypeVar, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pagesmith.errors import CreatorError, ErrorCode
from pagesmith.models import BillingConfig, Image, ImageStatus, PageType, UserUsage, utcnow
from pagesmith.services.config_service import ConfigService
from pagesmith.services.wallet import WalletClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConsumeType(str, enum.Enum):
    outline = "outline"
    image = "image"


@dataclass(slots=True)
class ConsumeResult:
    is_free: bool
    power_deducted: int
    account_no: Optional[str] = None


@dataclass(slots=True)
class PowerConfig:
    outline_power: int
    cover_image_power: int
    content_image_power: int
    free_usage_limit: int

    @classmethod
    def from_row(cls, row: BillingConfig) -> "PowerConfig":
        return cls(
            outline_power=row.outline_power,
            cover_image_power=row.cover_image_power,
            content_image_power=row.content_image_power,
            free_usage_limit=row.free_usage_limit,
        )

    def for_page(self, page_type: Union[PageType, str, None]) -> int:
        return self.cover_image_power if _page_type(page_type) == PageType.cover else self.content_image_power


def _page_type(value: Union[PageType, str, None]) -> PageType:
    if isinstance(value, PageType):
        return value
    try:
        return PageType(value or "content")
    except ValueError:
        return PageType.content


def _remark(kind: ConsumeType, page_type: Union[PageType, str, None], rollback: bool = False) -> str:
    if kind == ConsumeType.outline:
        base = "outline generation"
    else:
        base = f"{_page_type(page_type).value} image generation"
    return f"{base} refund" if rollback else base


class CreditLedger:
    def __init__(self, session_maker: Callable[[], AsyncSession], config_service: ConfigService,
                 wallet: WalletClient):
        self._session_maker = session_maker
        self._config = config_service
        self._wallet = wallet

    # ========== usage records ==========

    async def _ensure_usage(self, db: AsyncSession, user_id: str) -> UserUsage:
        usage = (await db.execute(select(UserUsage).where(UserUsage.user_id == user_id))).scalars().first()
        if usage:
            return usage
        usage = UserUsage(user_id=user_id, free_usage_count=0)
        db.add(usage)
        try:
            await db.flush()
        except IntegrityError:
            # another request created it first
            await db.rollback()
            usage = (await db.execute(select(UserUsage).where(UserUsage.user_id == user_id))).scalars().one()
        return usage

    async def _take_free_unit(self, db: AsyncSession, user_id: str, limit: int) -> bool:
        """Spend one free unit if the user is still under ``limit``. Caller commits."""
        await self._ensure_usage(db, user_id)
        res = await db.execute(
            update(UserUsage)
            .where(UserUsage.user_id == user_id, UserUsage.free_usage_count < limit)
            .values(free_usage_count=UserUsage.free_usage_count + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    # ========== config & balance ==========

    async def get_power_config(self) -> PowerConfig:
        return PowerConfig.from_row(await self._config.get_config())

    async def has_free_usage(self, user_id: str) -> bool:
        config = await self.get_power_config()
        async with self._session_maker() as db:
            usage = await self._ensure_usage(db, user_id)
            count = usage.free_usage_count
            await db.commit()
        return count < config.free_usage_limit

    async def get_user_usage(self, user_id: str) -> Dict[str, int]:
        config = await self.get_power_config()
        async with self._session_maker() as db:
            usage = await self._ensure_usage(db, user_id)
            count = usage.free_usage_count
            await db.commit()
        return {
            "freeUsageCount": count,
            "freeUsageLimit": config.free_usage_limit,
            "remainingFreeCount": max(0, config.free_usage_limit - count),
        }

    async def get_balance(self, user_id: str) -> int:
        return await self._wallet.get_balance(user_id)

    async def has_sufficient_balance(self, user_id: str, required_power: int) -> bool:
        # free usage covers the whole operation; only paid users need the wallet check
        if await self.has_free_usage(user_id):
            return True
        return await self._wallet.get_balance(user_id) >= required_power

    async def get_power_for_page(self, page_type: Union[PageType, str]) -> int:
        return (await self.get_power_config()).for_page(page_type)

    async def calculate_total_power(self, pages: Iterable[Union[Mapping[str, Any], Any]]) -> int:
        config = await self.get_power_config()
        total = 0
        for page in pages:
            ptype = page.get("type") if isinstance(page, Mapping) else getattr(page, "type", None)
            total += config.for_page(ptype)
        return total

    # ========== consume & rollback ==========

    async def consume(self, user_id: str, kind: ConsumeType,
                      page_type: Union[PageType, str, None] = None,
                      association_no: Optional[str] = None) -> ConsumeResult:
        """Spend a free unit if one is left, otherwise debit the wallet."""
        config = await self.get_power_config()
        amount = config.outline_power if kind == ConsumeType.outline else config.for_page(page_type)

        async with self._session_maker() as db:
            free = await self._take_free_unit(db, user_id, config.free_usage_limit)
            await db.commit()
        if free:
            logger.info("User %s used a free unit (%s)", user_id, kind.value)
            return ConsumeResult(is_free=True, power_deducted=0)

        if amount <= 0:
            return ConsumeResult(is_free=False, power_deducted=0)

        account_no = await self._wallet.debit(user_id, amount, {
            "type": kind.value,
            "pageType": _page_type(page_type).value if page_type else None,
            "associationNo": association_no or "",
            "remark": _remark(kind, page_type),
        })
        logger.info("User %s debited %d credits (%s)", user_id, amount, kind.value)
        return ConsumeResult(is_free=False, power_deducted=amount, account_no=account_no)

    async def rollback_power(self, user_id: str, amount: int, kind: ConsumeType,
                             page_type: Union[PageType, str, None] = None,
                             association_no: Optional[str] = None) -> None:
        """Credit back a failed operation's debit. Free units are never returned."""
        if amount <= 0:
            return
        await self._wallet.credit(user_id, amount, {
            "type": kind.value,
            "pageType": _page_type(page_type).value if page_type else None,
            "associationNo": association_no or "",
            "remark": _remark(kind, page_type, rollback=True),
        })
        logger.info("User %s refunded %d credits (%s)", user_id, amount, kind.value)

    # ========== image billing ==========

    async def deduct_image_power(self, user_id: str, image_id: str,
                                 page_type: Union[PageType, str]) -> int:
        """Charge one image and move it to ``generating``. Returns the credits taken."""
        config = await self.get_power_config()

        async with self._session_maker() as db:
            free = await self._take_free_unit(db, user_id, config.free_usage_limit)
            image = await db.get(Image, image_id)
            if image is None:
                await db.rollback()
                raise CreatorError(f"Image not found: {image_id}", ErrorCode.IMAGE_NOT_FOUND)
            if free or config.for_page(page_type) <= 0:
                image.status = ImageStatus.generating
                image.power_deducted = False
                image.power_amount = 0
                image.billing_account_no = None
                await db.commit()
                logger.debug("Image %s billed as free", image_id)
                return 0
            await db.rollback()

        amount = config.for_page(page_type)
        account_no = await self._wallet.debit(user_id, amount, {
            "type": ConsumeType.image.value,
            "pageType": _page_type(page_type).value,
            "associationNo": image_id,
            "remark": _remark(ConsumeType.image, page_type),
        })

        try:
            async with self._session_maker() as db:
                image = await db.get(Image, image_id)
                image.status = ImageStatus.generating
                image.power_deducted = True
                image.power_amount = amount
                image.billing_account_no = account_no
                await db.commit()
        except Exception:
            # the flag never landed, so nothing else will refund this debit
            logger.exception("Recording debit on image %s failed; refunding", image_id)
            await self.rollback_power(user_id, amount, ConsumeType.image, page_type, image_id)
            raise

        logger.info("Image %s debited %d credits for user %s", image_id, amount, user_id)
        return amount

    async def rollback_image_power(self, user_id: str, image_id: str, amount: int,
                                   page_type: Union[PageType, str], error_message: str) -> None:
        """Mark the image failed and refund its debit (if any).

        When the refund itself fails the image keeps ``power_deducted=True`` so
        startup reconciliation can retry it, and BILLING_ROLLBACK_FAILED is raised.
        """
        refund_error: Optional[BaseException] = None
        if amount > 0:
            try:
                await self.rollback_power(user_id, amount, ConsumeType.image, page_type, image_id)
            except Exception as exc:  # noqa: BLE001
                refund_error = exc
                logger.exception("Refund of %d credits for image %s failed", amount, image_id)

        async with self._session_maker() as db:
            image = await db.get(Image, image_id)
            if image is not None:
                image.status = ImageStatus.failed
                image.error_message = error_message
                image.retry_count = (image.retry_count or 0) + 1
                if refund_error is None:
                    image.power_deducted = False
                    image.power_amount = 0
                    image.billing_account_no = None
                await db.commit()

        if refund_error is not None:
            raise CreatorError(
                f"Refund for image {image_id} failed: {refund_error}",
                ErrorCode.BILLING_ROLLBACK_FAILED,
                {"imageId": image_id, "amount": amount},
            ) from refund_error

    async def execute_with_billing(self, user_id: str, image_id: str,
                                   page_type: Union[PageType, str],
                                   operation: Callable[[], Awaitable[T]]) -> Tuple[T, int]:
        """Run ``operation`` with the image's charge attached.

        Debits only when the image carries no debit yet; a second call on an
        image with ``power_deducted=True`` reuses the existing charge. On
        failure the charge is refunded, the image marked failed and the
        original exception re-raised.
        """
        async with self._session_maker() as db:
            image = await db.get(Image, image_id)
            if image is None:
                raise CreatorError(f"Image not found: {image_id}", ErrorCode.IMAGE_NOT_FOUND)
            already, amount = image.power_deducted, image.power_amount

        if already:
            logger.warning("Image %s already carries a %d credit debit; not charging again", image_id, amount)
        else:
            amount = await self.deduct_image_power(user_id, image_id, page_type)

        try:
            result = await operation()
        except Exception as exc:
            try:
                await self.rollback_image_power(user_id, image_id, amount, page_type, str(exc) or exc.__class__.__name__)
            except Exception:  # noqa: BLE001
                logger.exception("Rollback after failed generation of image %s failed", image_id)
            raise
        return result, amount


__all__ = ["CreditLedger", "ConsumeType", "ConsumeResult", "PowerConfig"]
