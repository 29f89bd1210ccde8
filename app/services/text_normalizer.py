from __future__ import annotations

import re
from html import unescape

_STYLE_BLOCK_PATTERN = re.compile(r"<style\b[\s\S]*?</style>", re.IGNORECASE)
_SCRIPT_BLOCK_PATTERN = re.compile(r"<script\b[\s\S]*?</script>", re.IGNORECASE)
_BLOCK_BREAK_PATTERN = re.compile(
    r"<\s*(?:br|/p|/div|/tr|/li|/h[1-6])\b[^>]*>",
    re.IGNORECASE,
)
_TAG_PATTERN = re.compile(r"<[^>]+>")
_COACH_PREFIX_PATTERN = re.compile(r"^coach\s*")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_INLINE_SPACE_PATTERN = re.compile(r"[^\S\n]+")


def strip_html(html: object) -> str:
    if not isinstance(html, str):
        return ""

    text = _STYLE_BLOCK_PATTERN.sub("", html)
    text = _SCRIPT_BLOCK_PATTERN.sub("", text)
    text = _BLOCK_BREAK_PATTERN.sub("\n", text)
    text = _TAG_PATTERN.sub(" ", text)
    text = unescape(text)

    lines = [_INLINE_SPACE_PATTERN.sub(" ", line).strip() for line in text.split("\n")]
    return "\n".join(line for line in lines if line)


def canon(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE_PATTERN.sub(" ", value.strip().lower())


def canon_alias(value: str | None) -> str:
    return _COACH_PREFIX_PATTERN.sub("", canon(value)).strip()


def collapse_whitespace(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE_PATTERN.sub(" ", value).strip()
