"""Tolerant JSON extraction for auxiliary model replies."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)


def _strip_fences(message: str) -> str:
    sanitized = message.strip()
    if sanitized.startswith("```"):
        sanitized = sanitized[3:]
        if sanitized.lower().startswith("json"):
            sanitized = sanitized[4:]
        sanitized = sanitized.lstrip("\n")
        if sanitized.endswith("```"):
            sanitized = sanitized[:-3]
    elif sanitized.lower().startswith("json"):
        sanitized = sanitized[4:].lstrip(": ")
    return sanitized.strip()


def _first_balanced_object(text: str) -> Optional[str]:
    start = None
    depth = 0
    in_string = False
    escape = False
    for idx, char in enumerate(text):
        if start is None:
            if char == "{":
                start = idx
                depth = 1
            continue
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    return None


def extract_json(message: Optional[str]) -> Optional[Mapping[str, Any]]:
    """Return the JSON object embedded in ``message`` or ``None``.

    Code fences and a leading ``json`` marker are stripped first.  When the
    remainder is not a JSON document, the first balanced ``{...}`` block is
    parsed instead, so replies wrapped in prose are still accepted.  Anything
    that does not decode to an object yields ``None``.
    """

    if not message or not message.strip():
        return None
    sanitized = _strip_fences(message)

    try:
        parsed = json.loads(sanitized)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    blob = _first_balanced_object(sanitized)
    if blob is None:
        return None
    try:
        parsed = json.loads(blob)
    except json.JSONDecodeError:
        logger.debug("Balanced block is not valid JSON: %s", blob)
        return None
    return parsed if isinstance(parsed, dict) else None


__all__ = ["extract_json"]
