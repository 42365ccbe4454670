# pagesmith/services/registry.py
"""Model/provider registry: which model an id names and which secrets unlock it."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from pagesmith.errors import ConfigError, ErrorCode
from pagesmith.settings.config import settings


@dataclass(slots=True)
class ModelInfo:
    model_id: str
    model: str
    provider: str


class ModelRegistry(Protocol):
    async def get_model_info(self, model_id: str) -> ModelInfo: ...

    async def get_provider_secret(self, model_id: str) -> Dict[str, Optional[str]]:
        """Returns at least ``apiKey`` and ``baseUrl`` (either may be None)."""
        ...


class StaticModelRegistry:
    """Registry backed by a dict, normally parsed from MODEL_REGISTRY_JSON."""

    def __init__(self, entries: Optional[Dict[str, Dict[str, Any]]] = None):
        if entries is None:
            try:
                entries = json.loads(settings.MODEL_REGISTRY_JSON or "{}")
            except json.JSONDecodeError as e:
                raise ConfigError(f"MODEL_REGISTRY_JSON is not valid JSON: {e}", ErrorCode.CONFIG_INVALID) from e
        self._entries = entries

    def _entry(self, model_id: str) -> Dict[str, Any]:
        entry = self._entries.get(model_id)
        if entry is None:
            raise ConfigError(f"Unknown model id: {model_id}", ErrorCode.CONFIG_MISSING, {"modelId": model_id})
        return entry

    async def get_model_info(self, model_id: str) -> ModelInfo:
        e = self._entry(model_id)
        return ModelInfo(model_id=model_id, model=e.get("model") or "", provider=e.get("provider") or "openai")

    async def get_provider_secret(self, model_id: str) -> Dict[str, Optional[str]]:
        e = self._entry(model_id)
        return {"apiKey": e.get("apiKey"), "baseUrl": e.get("baseUrl")}


class HttpModelRegistry:
    """
    Registry over HTTP:
      GET /models/{id}         -> {"model": str, "provider": str}
      GET /models/{id}/secret  -> {"apiKey": str, "baseUrl": str|null}
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or settings.MODEL_REGISTRY_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.MODEL_REGISTRY_API_KEY
        self._transport = transport

    async def _get(self, path: str) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=15, headers=headers,
                                         transport=self._transport) as c:
                r = await c.get(path)
                if r.status_code == 404:
                    raise ConfigError(f"Model registry has no entry at {path}", ErrorCode.CONFIG_MISSING)
                r.raise_for_status()
                return r.json() or {}
        except httpx.HTTPError as e:
            raise ConfigError(f"Model registry request failed: {e}", ErrorCode.CONFIG_MISSING) from e

    async def get_model_info(self, model_id: str) -> ModelInfo:
        data = await self._get(f"/models/{model_id}")
        return ModelInfo(model_id=model_id, model=data.get("model") or "", provider=data.get("provider") or "openai")

    async def get_provider_secret(self, model_id: str) -> Dict[str, Optional[str]]:
        data = await self._get(f"/models/{model_id}/secret")
        return {"apiKey": data.get("apiKey"), "baseUrl": data.get("baseUrl")}


def registry_from_settings() -> ModelRegistry:
    if settings.MODEL_REGISTRY_BACKEND == "http":
        return HttpModelRegistry()
    return StaticModelRegistry()


__all__ = ["ModelInfo", "ModelRegistry", "StaticModelRegistry", "HttpModelRegistry", "registry_from_settings"]
