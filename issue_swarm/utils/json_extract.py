"""JSON extraction from free-form AI executor output."""

from __future__ import annotations

import json
import re
from typing import Any, Optional

_JSON_FENCE = re.compile(r"```json\s*\n?(.*?)\n?```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE = re.compile(r"```[a-zA-Z]*\s*\n?(.*?)\n?```", re.DOTALL)


def _try_parse(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


def _bounded(text: str, open_char: str, close_char: str) -> Optional[Any]:
    start = text.find(open_char)
    end = text.rfind(close_char)
    if start == -1 or end <= start:
        return None
    return _try_parse(text[start : end + 1])


def extract_json(text: str, expect: Optional[type] = None) -> Optional[Any]:
    """
    Extract a JSON value from an LLM response.

    Tries, in order: the whole text, a ```json fence, any fence, then the
    outermost {...} and [...] spans. When ``expect`` is ``list`` the array
    span is tried before the object span. Candidates whose type does not
    match ``expect`` are skipped.

    Returns:
        The parsed value, or None when nothing parses.
    """
    if not text:
        return None

    spans = [("[", "]"), ("{", "}")] if expect is list else [("{", "}"), ("[", "]")]
    candidates = [lambda: _try_parse(text.strip())]
    for pattern in (_JSON_FENCE, _ANY_FENCE):
        match = pattern.search(text)
        if match:
            candidates.append(lambda m=match: _try_parse(m.group(1).strip()))
    for open_char, close_char in spans:
        candidates.append(lambda o=open_char, c=close_char: _bounded(text, o, c))

    for candidate in candidates:
        value = candidate()
        if value is None:
            continue
        if expect is not None and not isinstance(value, expect):
            continue
        return value
    return None
