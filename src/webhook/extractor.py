"""Response normalization for untyped webhook replies.

Workflow engines answer with whatever shape their last node produced: plain
strings, JSON objects, arrays of objects, JSON encoded inside a string, or
an HTML error page. ``extract_response`` turns any of these into a
``NormalizedResponse`` with displayable text and an optional source label.

Precedence:
1. list   -> first element only
2. str    -> blank / embedded JSON / HTML / plain text
3. dict   -> ``source`` plus the first usable candidate field
4. other  -> nothing

The functions here are pure and never raise.
"""

from __future__ import annotations

import json
import re
from typing import Any

from src.models import NormalizedResponse

# Checked in order; generic names last.
CANDIDATE_FIELDS = ("output", "message", "content", "text", "response", "data", "result")

_MAX_DEPTH = 32

_HTML_ROOT_RE = re.compile(r"<(html|head|body|!DOCTYPE)[^>]*>", re.IGNORECASE)
_HTML_PAIR_RE = re.compile(r"<([a-zA-Z][a-zA-Z0-9]*)\s*[^>]*>(.*?)</\1>", re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>")

# Decoded in this order, so "&amp;lt;" becomes "&lt;" and not "<".
_ENTITIES = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&amp;", "&"),
    ("&quot;", '"'),
    ("&#x27;", "'"),
)

_EMPTY = NormalizedResponse()


def looks_like_html(text: str) -> bool:
    """True for genuine markup, not for strings with stray angle brackets."""
    trimmed = text.strip()
    if trimmed.startswith(("{", "[")):
        return False
    return bool(_HTML_ROOT_RE.search(trimmed) or _HTML_PAIR_RE.search(trimmed))


def strip_html(text: str) -> str:
    """Remove tags and decode the basic entities."""
    result = _TAG_RE.sub("", text)
    for entity, char in _ENTITIES:
        result = result.replace(entity, char)
    return result.strip()


def _text_from_html(text: str) -> str | None:
    sanitized = strip_html(text)
    if sanitized and not looks_like_html(sanitized):
        return sanitized
    return None


def extract_response(body: Any) -> NormalizedResponse:
    """Extract ``{content, source}`` from an arbitrary webhook reply."""
    return _extract(body, 0)


def _extract(body: Any, depth: int) -> NormalizedResponse:
    if depth > _MAX_DEPTH:
        return _EMPTY
    if isinstance(body, list):
        return _extract(body[0], depth + 1) if body else _EMPTY
    if isinstance(body, str):
        return _from_string(body, depth)
    if isinstance(body, dict):
        return _from_object(body)
    return _EMPTY


def _from_string(value: str, depth: int) -> NormalizedResponse:
    trimmed = value.strip()
    if not trimmed:
        return _EMPTY

    if trimmed.startswith(("{", "[")):
        try:
            parsed = json.loads(trimmed)
        except (ValueError, RecursionError):
            parsed = None
        else:
            if isinstance(parsed, dict):
                return _from_object(parsed)
            if isinstance(parsed, list):
                if parsed and isinstance(parsed[0], str):
                    return NormalizedResponse(content=parsed[0].strip() or None)
                return _extract(parsed, depth + 1)

    if looks_like_html(trimmed):
        return NormalizedResponse(content=_text_from_html(trimmed))

    return NormalizedResponse(content=trimmed)


def _from_object(obj: dict[str, Any]) -> NormalizedResponse:
    raw_source = obj.get("source")
    source = None
    if isinstance(raw_source, str) and raw_source.strip():
        source = raw_source.strip()

    for field in CANDIDATE_FIELDS:
        value = obj.get(field)
        if not isinstance(value, str) or not value.strip():
            continue
        candidate = value.strip()
        if looks_like_html(candidate):
            text = _text_from_html(candidate)
            if text is None:
                continue
            candidate = text
        return NormalizedResponse(content=candidate, source=source)

    return NormalizedResponse(source=source)
