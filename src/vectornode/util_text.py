from __future__ import annotations

import re

_WHITESPACE_RE = re.compile(r"\s+")
_FENCE_OPEN_RE = re.compile(r"^```(?:json|JSON)?")


def normalize_whitespace(text: str | None) -> str:
    """Collapse every whitespace run to one space and trim."""
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", text).strip()


def is_blank(text: str | None) -> bool:
    return not text or not text.strip()


def strip_code_fences(text: str | None) -> str:
    """Remove a leading ```json / ``` fence and a trailing ``` fence, if present."""
    if text is None:
        return ""
    s = text.strip()
    s = _FENCE_OPEN_RE.sub("", s, count=1)
    if s.endswith("```"):
        s = s[:-3]
    return s.strip()
