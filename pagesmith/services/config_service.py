# pagesmith/services/config_service.py
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pagesmith.errors import ConfigError, ErrorCode
from pagesmith.models import BillingConfig, EndpointType
from pagesmith.settings.config import settings

logger = logging.getLogger(__name__)

_EDITABLE = {
    "outline_power", "cover_image_power", "content_image_power", "free_usage_limit",
    "text_model_id", "text_model", "image_model_id", "image_model",
    "image_endpoint_type", "image_endpoint_url", "high_concurrency",
    "outline_prompt", "image_prompt",
}
_NON_NEGATIVE = {"outline_power", "cover_image_power", "content_image_power", "free_usage_limit"}


class ConfigService:
    """Latest BillingConfig row behind a short-lived in-process cache."""

    def __init__(self, session_maker: Callable[[], AsyncSession], ttl: Optional[float] = None):
        self._session_maker = session_maker
        self._ttl = settings.CONFIG_CACHE_TTL_SEC if ttl is None else ttl
        self._cached: Optional[BillingConfig] = None
        self._cached_at = 0.0

    async def get_config(self) -> BillingConfig:
        now = time.monotonic()
        if self._cached is not None and now - self._cached_at < self._ttl:
            return self._cached

        async with self._session_maker() as db:
            config = (
                await db.execute(select(BillingConfig).order_by(BillingConfig.id.desc()).limit(1))
            ).scalars().first()
            if config is None:
                config = BillingConfig()
                db.add(config)
                await db.commit()
                await db.refresh(config)
                logger.info("Created default billing config")

        self._cached = config
        self._cached_at = now
        return config

    def invalidate_cache(self) -> None:
        self._cached = None
        self._cached_at = 0.0
        logger.debug("Billing config cache invalidated")

    async def update_config(self, **changes: Any) -> BillingConfig:
        unknown = set(changes) - _EDITABLE
        if unknown:
            raise ConfigError(f"Unknown config fields: {', '.join(sorted(unknown))}", ErrorCode.CONFIG_INVALID)
        for key in _NON_NEGATIVE & set(changes):
            if changes[key] is not None and int(changes[key]) < 0:
                raise ConfigError(f"{key} must be >= 0", ErrorCode.CONFIG_INVALID)
        if "image_endpoint_type" in changes and changes["image_endpoint_type"] is not None:
            changes["image_endpoint_type"] = EndpointType(changes["image_endpoint_type"])

        current = await self.get_config()
        async with self._session_maker() as db:
            config = await db.get(BillingConfig, current.id)
            for key, value in changes.items():
                if key in _NON_NEGATIVE and value is None:
                    continue
                # blank strings clear optional ids/urls/templates
                if isinstance(value, str) and not value.strip() and key not in ("text_model", "image_model"):
                    value = None
                setattr(config, key, value)
            if config.image_endpoint_type == EndpointType.custom and not config.image_endpoint_url:
                raise ConfigError("Custom endpoint type requires image_endpoint_url", ErrorCode.CONFIG_INVALID)
            await db.commit()
            await db.refresh(config)

        self.invalidate_cache()
        logger.info("Billing config updated: %s", ", ".join(sorted(changes)))
        return config

    async def high_concurrency(self) -> bool:
        config = await self.get_config()
        return bool(settings.HIGH_CONCURRENCY or config.high_concurrency)


__all__ = ["ConfigService"]
