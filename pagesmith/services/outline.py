# pagesmith/services/outline.py
"""
Outline prompt building and parsing.

The model is asked for ``<page>``-delimited pages, but older templates and
hand-edited outlines use ``---`` separators or ``【第N页 - 类型】`` headings,
so parsing tries those three formats in that order.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pagesmith.errors import CreatorError, ErrorCode
from pagesmith.models import PAGE_TYPE_LABELS, PageType
from pagesmith.services.config_service import ConfigService
from pagesmith.services.generator_resolver import GeneratorResolver
from pagesmith.services.image_prompt import load_prompt

logger = logging.getLogger(__name__)

Page = Dict[str, Any]  # {"index": int, "type": "cover"|"content"|"summary", "content": str}

_PAGE_SPLIT = re.compile(r"<page>", re.IGNORECASE)
_PAGE_CLOSE = re.compile(r"</page>", re.IGNORECASE)
_TYPE_MARKER = re.compile(r"^\[(\S+)\]", re.MULTILINE)
_LEGACY_PAGE = re.compile(r"【第(\d+)页\s*-\s*(封面|内容|总结)】\s*([\s\S]*?)(?=【第\d+页|$)")
_LABEL_TO_TYPE = {label: ptype for ptype, label in PAGE_TYPE_LABELS.items()}


def _type_from_label(label: Optional[str]) -> PageType:
    return _LABEL_TO_TYPE.get(label or "", PageType.content)


def _parse_blocks(blocks: Sequence[str]) -> List[Page]:
    pages: List[Page] = []
    for block in blocks:
        content = _PAGE_CLOSE.sub("", block).strip()
        if not content:
            continue
        m = _TYPE_MARKER.search(content)
        ptype = _type_from_label(m.group(1)) if m else PageType.content
        pages.append({"index": len(pages), "type": ptype.value, "content": content})
    return pages


def _parse_legacy(text: str) -> List[Page]:
    pages = [
        {"index": int(num) - 1, "type": _type_from_label(label).value, "content": body.strip()}
        for num, label, body in _LEGACY_PAGE.findall(text)
    ]
    return sorted(pages, key=lambda p: p["index"])


def parse_outline(text: Optional[str]) -> List[Page]:
    """Split model output into pages, sorted by index.

    ``<page>`` markers win over ``---`` separators, which win over the
    legacy ``【第N页 - 类型】`` headings.
    """
    text = text or ""
    if "<page>" in text.lower():
        pages = _parse_blocks(_PAGE_SPLIT.split(text))
    elif "---" in text:
        pages = _parse_blocks(text.split("---"))
    else:
        pages = _parse_legacy(text)
    return sorted(pages, key=lambda p: p["index"])


def build_outline_text(pages: Sequence[Page]) -> str:
    """Render pages back into the heading form used when the user edits an outline."""
    parts = []
    for i, page in enumerate(sorted(pages, key=lambda p: p.get("index", 0))):
        try:
            label = PAGE_TYPE_LABELS[PageType(page.get("type") or "content")]
        except ValueError:
            label = PAGE_TYPE_LABELS[PageType.content]
        parts.append(f"【第{i + 1}页 - {label}】\n{(page.get('content') or '').strip()}")
    return "\n\n".join(parts)


def normalize_pages(pages: Sequence[Any]) -> List[Page]:
    """Accept dicts or pydantic models; coerce unknown types to content."""
    out: List[Page] = []
    for i, page in enumerate(pages):
        data = page if isinstance(page, dict) else page.model_dump()
        raw_type = data.get("type") or "content"
        try:
            ptype = PageType(raw_type).value
        except ValueError:
            ptype = PageType.content.value
        index = data.get("index")
        out.append({"index": i if index is None else int(index), "type": ptype, "content": data.get("content") or ""})
    return sorted(out, key=lambda p: p["index"])


class OutlineService:
    def __init__(self, config_service: ConfigService, resolver: GeneratorResolver):
        self._config = config_service
        self._resolver = resolver

    async def build_outline_prompt(self, topic: str, user_images: Optional[Sequence[str]] = None) -> str:
        config = await self._config.get_config()
        template = config.outline_prompt or load_prompt("outline_prompt.txt")
        prompt = template.replace("{topic}", topic)
        if user_images:
            prompt += (
                f"\n\n注意：用户提供了 {len(user_images)} 张参考图片，请在生成大纲时考虑这些图片的内容和风格，"
                "使生成的内容与图片相关联。"
            )
        return prompt

    async def generate_outline(self, topic: str,
                               user_images: Optional[Sequence[str]] = None) -> Tuple[str, List[Page]]:
        prompt = await self.build_outline_prompt(topic, user_images)
        generator = await self._resolver.resolve_text_generator()
        text = await generator.generate_text(prompt)
        pages = parse_outline(text)
        if not pages:
            raise CreatorError(
                "The model returned an outline with no recognisable pages",
                ErrorCode.TASK_GENERATION_FAILED,
                {"preview": (text or "")[:200]},
            )
        logger.info("Outline for %r parsed into %d page(s)", topic[:40], len(pages))
        return text, pages


__all__ = ["OutlineService", "parse_outline", "build_outline_text", "normalize_pages", "Page"]
