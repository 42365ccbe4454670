# pagesmith/generators/images_api.py
from __future__ import annotations

from typing import Any, Optional, Sequence

from pagesmith.generators.base import OPENAI_BASE_URL, BaseGenerator
from pagesmith.settings.config import settings


class ImagesApiGenerator(BaseGenerator):
    """OpenAI-style ``/images/generations``; text goes through ``/chat/completions``."""

    name = "images-api"

    @property
    def api_base(self) -> str:
        return self.base_url or OPENAI_BASE_URL

    async def generate_text(self, prompt: str, **options: Any) -> str:
        return await self._chat_text(f"{self.api_base}/chat/completions", prompt, "gpt-4o-mini", **options)

    async def generate_image(self, prompt: str, *, reference_images: Optional[Sequence[str]] = None,
                             size: Optional[str] = None, quality: Optional[str] = None) -> str:
        # this protocol has no reference-image input; references are ignored
        data = await self._post_json(f"{self.api_base}/images/generations", {
            "model": self.model or "gpt-image-1",
            "prompt": prompt,
            "size": size or settings.DEFAULT_IMAGE_SIZE,
            "quality": quality or settings.DEFAULT_IMAGE_QUALITY,
            "n": 1,
        })
        items = data.get("data") or []
        first = items[0] if items else {}
        if first.get("url"):
            return first["url"]
        if first.get("b64_json"):
            return f"data:image/png;base64,{first['b64_json']}"
        raise self._fail(f"{self.name} response carried no image: {str(data)[:200]}")


__all__ = ["ImagesApiGenerator"]
