# pagesmith/generators/chat_completions.py
"""
Image generation through ``/chat/completions``.

Multimodal chat models answer with free text that contains the picture
somewhere: a markdown image, a bare link, a data URI or a JSON blob. The
streamed request is tried first because several gateways only render images
in stream mode; the plain request is the fallback when the stream ends
without anything that looks like an image.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import httpx

from pagesmith.errors import ProviderError
from pagesmith.generators.base import OPENAI_BASE_URL, BaseGenerator

logger = logging.getLogger(__name__)

_MARKDOWN_IMAGE = re.compile(r"!\[.*?\]\((https?://[^)]+)\)")
_BARE_URL = re.compile(r"https?://[^\s)\]}\"',]+")
_TRAILING_PUNCT = re.compile(r"[)\]}\"',.;]+$")
_LOOKS_LIKE_URL = re.compile(r"^https?://.+\..+")
_DATA_URI = re.compile(r"data:image/[^;]+;base64,[^\s]+")


def extract_image_url(content: Optional[str]) -> Optional[str]:
    """markdown image > bare URL > base64 data URI > JSON field; first match wins."""
    if not content:
        return None

    m = _MARKDOWN_IMAGE.search(content)
    if m:
        return m.group(1).strip()

    m = _BARE_URL.search(content)
    if m:
        url = _TRAILING_PUNCT.sub("", m.group(0))
        if _LOOKS_LIKE_URL.match(url):
            return url

    m = _DATA_URI.search(content)
    if m:
        return m.group(0)

    try:
        data = json.loads(content)
    except ValueError:
        return None
    if isinstance(data, dict):
        return data.get("imageUrl") or data.get("url") or data.get("image_url") or None
    return None


def chat_completions_url(base_url: Optional[str]) -> str:
    if not base_url:
        return f"{OPENAI_BASE_URL}/chat/completions"
    base = base_url.rstrip("/")
    if base.endswith("/chat/completions"):
        return base
    if base.endswith("/v1"):
        return f"{base}/chat/completions"
    if "/v1/" in base:
        return f"{base[:base.index('/v1/')]}/v1/chat/completions"
    return f"{base}/chat/completions"


class _StreamWithoutImage(Exception):
    pass


class ChatCompletionsGenerator(BaseGenerator):
    name = "chat-completions"

    @property
    def endpoint(self) -> str:
        return chat_completions_url(self.base_url)

    async def generate_text(self, prompt: str, **options: Any) -> str:
        return await self._chat_text(self.endpoint, prompt, "gpt-4o-mini", **options)

    def _message(self, prompt: str, reference_images: Optional[Sequence[str]]) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = [{"type": "text", "text": f"请根据以下描述生成一张图片：{prompt}"}]
        for ref in reference_images or ():
            # query strings on signed URLs confuse some gateways
            clean = ref.split("?")[0].split("#")[0]
            content.append({"type": "image_url", "image_url": {"url": clean}})
        return [{"role": "user", "content": content}]

    async def generate_image(self, prompt: str, *, reference_images: Optional[Sequence[str]] = None,
                             size: Optional[str] = None, quality: Optional[str] = None) -> str:
        payload = {
            "model": self.model or "gpt-4o",
            "messages": self._message(prompt, reference_images),
            "max_tokens": 1000,
        }
        try:
            return await self._generate_streamed(payload)
        except _StreamWithoutImage as e:
            logger.info("%s: stream gave no image (%s); retrying without stream", self.name, e)
        return await self._generate_plain(payload)

    async def _generate_streamed(self, payload: Dict[str, Any]) -> str:
        collected: List[str] = []
        try:
            async with self._client() as c:
                async with c.stream("POST", self.endpoint, json={**payload, "stream": True}) as r:
                    if r.status_code >= 400:
                        body = (await r.aread()).decode("utf-8", "replace")
                        raise self._fail(f"{self.name} stream HTTP {r.status_code}: {body[:300]}")
                    async for line in r.aiter_lines():
                        line = line.strip()
                        if not line.startswith("data:"):
                            continue
                        raw = line[5:].strip()
                        if not raw or raw == "[DONE]":
                            continue
                        try:
                            event = json.loads(raw)
                        except ValueError:
                            continue
                        piece = _stream_piece(event)
                        if not piece:
                            continue
                        collected.append(piece)
                        # a markdown link is only matched once its closing paren arrives
                        m = _MARKDOWN_IMAGE.search("".join(collected))
                        if m:
                            return m.group(1).strip()
        except httpx.TimeoutException as e:
            raise ProviderError.timeout(self.name, self.timeout) from e
        except httpx.TransportError as e:
            raise _StreamWithoutImage(f"stream error: {e}") from e

        text = "".join(collected)
        url = extract_image_url(text)
        if url:
            return url
        raise _StreamWithoutImage(f"no image in {len(text)} streamed chars")

    async def _generate_plain(self, payload: Dict[str, Any]) -> str:
        data = await self._post_json(self.endpoint, {**payload, "stream": False})
        choices = data.get("choices") or []
        content = ((choices[0].get("message") or {}).get("content")) if choices else None
        if not content:
            raise self._fail(f"{self.name}: model returned no image information")
        url = extract_image_url(content)
        if url:
            return url
        if "流式模式" in content or "stream" in content.lower():
            raise self._fail(f"{self.name}: endpoint requires stream mode: {content[:200]}")
        raise self._fail(f"{self.name}: could not find an image URL in the reply: {content[:300]}")


def _stream_piece(event: Dict[str, Any]) -> str:
    if event.get("type") == "chunk" and event.get("data"):
        return str(event["data"])
    choices = event.get("choices") or []
    if choices:
        return ((choices[0].get("delta") or {}).get("content")) or ""
    return ""


__all__ = ["ChatCompletionsGenerator", "extract_image_url", "chat_completions_url"]
