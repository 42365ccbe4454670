# pagesmith/generators/custom_endpoint.py
from __future__ import annotations

import json
from typing import Any, Dict, Optional, Sequence

from pagesmith.errors import ConfigError, ErrorCode
from pagesmith.generators.base import BaseGenerator


def _first(items: Any) -> Any:
    return items[0] if isinstance(items, list) and items else None


def extract_custom_image(data: Dict[str, Any]) -> Optional[str]:
    """Pick the image out of the common response shapes, first hit wins."""
    result = data.get("result") if isinstance(data.get("result"), dict) else {}
    first_data = _first(data.get("data")) or {}
    if not isinstance(first_data, dict):
        first_data = {}

    for candidate in (
        data.get("imageUrl"),
        data.get("url"),
        data.get("image_url"),
        first_data.get("url"),
        _first(data.get("images")),
        result.get("imageUrl"),
        result.get("url"),
    ):
        if candidate:
            return candidate
    if data.get("imageBase64"):
        return f"data:image/png;base64,{data['imageBase64']}"
    if first_data.get("b64_json"):
        return f"data:image/png;base64,{first_data['b64_json']}"
    return None


class CustomEndpointGenerator(BaseGenerator):
    """Arbitrary JSON endpoint; extra config keys are merged into every image request."""

    name = "custom-endpoint"

    def __init__(self, api_key: str, endpoint_url: Optional[str] = None, **kwargs: Any):
        super().__init__(api_key, **kwargs)
        if not endpoint_url:
            raise ConfigError("Custom endpoint URL is required", ErrorCode.CONFIG_MISSING)
        self.endpoint_url = endpoint_url

    async def generate_text(self, prompt: str, **options: Any) -> str:
        data = await self._post_json(self.endpoint_url, {"prompt": prompt, "model": self.model, **options})
        return data.get("text") or data.get("content") or data.get("response") or json.dumps(data, ensure_ascii=False)

    async def generate_image(self, prompt: str, *, reference_images: Optional[Sequence[str]] = None,
                             size: Optional[str] = None, quality: Optional[str] = None) -> str:
        body: Dict[str, Any] = {"prompt": prompt, "model": self.model}
        if size:
            body["size"] = size
        if quality:
            body["quality"] = quality
        if reference_images:
            body["reference_images"] = list(reference_images)
        body.update(self.config)

        data = await self._post_json(self.endpoint_url, body)
        url = extract_custom_image(data)
        if not url:
            raise self._fail(
                f"Could not find an image in the custom endpoint response: "
                f"{json.dumps(data, ensure_ascii=False)[:200]} (endpoint {self.endpoint_url})"
            )
        return url


__all__ = ["CustomEndpointGenerator", "extract_custom_image"]
