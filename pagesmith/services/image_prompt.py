# pagesmith/services/image_prompt.py
from __future__ import annotations

import logging
import pathlib
import re
from functools import lru_cache
from typing import Optional, Union

from pagesmith.models import PAGE_TYPE_LABELS, PageType

logger = logging.getLogger(__name__)

PROMPTS_DIR = pathlib.Path(__file__).resolve().parents[1] / "prompts"
_FALLBACK_TEMPLATE = "生成小红书风格图片，页面类型：{page_type}，内容：{page_content}"
_DESCRIPTION = re.compile(r"图片描述[：:]\s*(.+?)(?:\n|$)")
OUTLINE_CONTEXT_CHARS = 1500


@lru_cache(maxsize=None)
def load_prompt(name: str) -> str:
    return (PROMPTS_DIR / name).read_text(encoding="utf-8")


def default_image_template() -> str:
    try:
        return load_prompt("image_prompt.txt")
    except OSError:
        logger.error("image_prompt.txt missing under %s; using the one-line fallback", PROMPTS_DIR)
        return _FALLBACK_TEMPLATE


def build_image_prompt(
    page_content: str,
    page_type: Union[PageType, str],
    full_outline: Optional[str] = None,
    user_topic: Optional[str] = None,
    custom_template: Optional[str] = None,
) -> str:
    try:
        label = PAGE_TYPE_LABELS[PageType(page_type)]
    except ValueError:
        label = PAGE_TYPE_LABELS[PageType.content]

    template = custom_template or default_image_template()
    return (
        template.replace("{page_content}", page_content or "")
        .replace("{page_type}", label)
        .replace("{full_outline}", (full_outline or "")[:OUTLINE_CONTEXT_CHARS])
        .replace("{user_topic}", user_topic or "未提供")
    )


def extract_short_prompt(content: str) -> str:
    """The ``图片描述：`` line if the page has one, otherwise the whole page."""
    m = _DESCRIPTION.search(content or "")
    return m.group(1).strip() if m else (content or "")


__all__ = ["build_image_prompt", "extract_short_prompt", "load_prompt", "PROMPTS_DIR"]
