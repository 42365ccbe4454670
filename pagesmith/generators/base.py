# pagesmith/generators/base.py
"""Uniform text/image generation contract shared by every provider wire format."""
from __future__ import annotations

import abc
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from pagesmith.errors import ErrorCode, ProviderError
from pagesmith.settings.config import settings

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"


def is_unsupported_model(message: str) -> bool:
    low = (message or "").lower()
    return "not supported" in low or "unsupported" in low


class BaseGenerator(abc.ABC):
    """One adapter per wire protocol; the resolver decides which."""

    name = "generator"

    def __init__(self, api_key: str, base_url: Optional[str] = None, model: Optional[str] = None,
                 config: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/") if base_url else None
        self.model = model
        self.config = dict(config or {})
        self.timeout = timeout or settings.PROVIDER_HTTP_TIMEOUT_SEC
        self._transport = transport

    @abc.abstractmethod
    async def generate_text(self, prompt: str, **options: Any) -> str: ...

    @abc.abstractmethod
    async def generate_image(self, prompt: str, *, reference_images: Optional[Sequence[str]] = None,
                             size: Optional[str] = None, quality: Optional[str] = None) -> str:
        """Returns an http(s) URL or a ``data:image/...;base64,`` URI."""

    # ---------- shared HTTP plumbing ----------

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, headers=self._headers(), transport=self._transport)

    def _fail(self, message: str) -> ProviderError:
        code = ErrorCode.AI_UNSUPPORTED_MODEL if is_unsupported_model(message) else ErrorCode.AI_PROVIDER_ERROR
        if code == ErrorCode.AI_UNSUPPORTED_MODEL:
            message = f'Model "{self.model}" does not support this operation: {message}'
        return ProviderError(message, code, {"provider": self.name, "model": self.model})

    async def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self._client() as c:
                r = await c.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise ProviderError.timeout(self.name, self.timeout) from e
        except httpx.HTTPError as e:
            raise self._fail(f"{self.name} request failed: {e}") from e
        if r.status_code >= 400:
            raise self._fail(f"{self.name} HTTP {r.status_code}: {r.text[:300]}")
        try:
            return r.json() or {}
        except ValueError as e:
            raise self._fail(f"{self.name} returned non-JSON body: {r.text[:200]}") from e

    async def _chat_text(self, url: str, prompt: str, default_model: str, **options: Any) -> str:
        payload = {
            "model": self.model or default_model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.get("temperature", 0.7),
            "max_tokens": options.get("max_tokens", 4000),
        }
        data = await self._post_json(url, payload)
        choices: List[Dict[str, Any]] = data.get("choices") or []
        if not choices:
            return ""
        return ((choices[0].get("message") or {}).get("content")) or ""


__all__ = ["BaseGenerator", "OPENAI_BASE_URL", "is_unsupported_model"]
