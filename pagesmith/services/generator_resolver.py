# pagesmith/services/generator_resolver.py
from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

import httpx

from pagesmith.errors import ConfigError, ErrorCode
from pagesmith.generators.base import BaseGenerator
from pagesmith.generators.chat_completions import ChatCompletionsGenerator
from pagesmith.generators.custom_endpoint import CustomEndpointGenerator
from pagesmith.generators.images_api import ImagesApiGenerator
from pagesmith.models import BillingConfig, EndpointType
from pagesmith.services.config_service import ConfigService
from pagesmith.services.registry import ModelRegistry

logger = logging.getLogger(__name__)

_IMAGE_ADAPTERS: Dict[EndpointType, Callable[..., BaseGenerator]] = {
    EndpointType.images: ImagesApiGenerator,
    EndpointType.chat: ChatCompletionsGenerator,
    EndpointType.custom: CustomEndpointGenerator,
}


class GeneratorResolver:
    """Builds the configured adapter from BillingConfig plus registry secrets."""

    def __init__(self, config_service: ConfigService, registry: ModelRegistry,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._config = config_service
        self._registry = registry
        self._transport = transport

    async def _credentials(self, model_id: str, fallback_model: Optional[str], default_model: str):
        info = await self._registry.get_model_info(model_id)
        secret = await self._registry.get_provider_secret(model_id)
        if not secret.get("apiKey"):
            raise ConfigError(f"No API key configured for model {model_id}", ErrorCode.CONFIG_MISSING,
                              {"modelId": model_id})
        model = info.model or fallback_model or default_model
        return secret["apiKey"], secret.get("baseUrl"), model

    async def resolve_image_generator(self, config: Optional[BillingConfig] = None) -> BaseGenerator:
        config = config or await self._config.get_config()
        if not config.image_model_id:
            raise ConfigError("No image model configured", ErrorCode.CONFIG_MISSING)

        api_key, base_url, model = await self._credentials(config.image_model_id, config.image_model, "gpt-image-1")
        endpoint_type = EndpointType(config.image_endpoint_type or EndpointType.images)
        factory = _IMAGE_ADAPTERS[endpoint_type]

        kwargs = {"base_url": base_url, "model": model, "transport": self._transport}
        if endpoint_type == EndpointType.custom:
            if not config.image_endpoint_url:
                raise ConfigError("Custom endpoint type requires image_endpoint_url", ErrorCode.CONFIG_MISSING)
            kwargs["endpoint_url"] = config.image_endpoint_url

        logger.debug("Resolved %s image adapter for model %s", endpoint_type.value, model)
        return factory(api_key, **kwargs)

    async def resolve_text_generator(self, config: Optional[BillingConfig] = None) -> BaseGenerator:
        config = config or await self._config.get_config()
        if not config.text_model_id:
            raise ConfigError("No text model configured", ErrorCode.CONFIG_MISSING)

        api_key, base_url, model = await self._credentials(config.text_model_id, config.text_model, "gpt-4o-mini")
        logger.debug("Resolved text adapter for model %s", model)
        return ChatCompletionsGenerator(api_key, base_url=base_url, model=model, transport=self._transport)


__all__ = ["GeneratorResolver"]
