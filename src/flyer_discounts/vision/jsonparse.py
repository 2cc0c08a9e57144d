"""Helpers for pulling JSON out of chatty model responses."""

from __future__ import annotations

import re

_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")
_TRAILING_COMMA = re.compile(r",(\s*[\]}])")


def clean_json_text(text: str) -> str:
    """Strip fences, surrounding prose, control characters and trailing commas."""
    cleaned = re.sub(r"```json\n?", "", text or "")
    cleaned = re.sub(r"```\n?", "", cleaned)
    cleaned = re.sub(r"^[^\[{]*", "", cleaned)
    cleaned = re.sub(r"[^\]}]*$", "", cleaned)
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    cleaned = _TRAILING_COMMA.sub(r"\1", cleaned)
    return cleaned.strip()
