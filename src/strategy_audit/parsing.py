"""
Defensive extraction of structured output from free-form model text.

The reasoning provider may answer with prose, fenced JSON, partial JSON or
malformed JSON. Every call site that wants structure goes through
parse_with_fallback so a bad response degrades to a neutral default instead
of failing the request.
"""
from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from pydantic import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json|JSON)?")


def _balanced_objects(text: str):
    """Yield each top-level {...} span, tracking strings and escapes."""
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            if depth > 0:
                in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start:i + 1]


def extract_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Find the first well-formed JSON object anywhere in text.

    Tries, in order: the whole (fence-stripped) text, each balanced
    top-level {...} block, then the greedy span from the first '{' to the
    last '}'.

    Returns:
        The parsed dict, or None if nothing parses.
    """
    if not text:
        return None

    cleaned = _FENCE_RE.sub("", text).strip()

    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    for candidate in _balanced_objects(cleaned):
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    first, last = cleaned.find("{"), cleaned.rfind("}")
    if first != -1 and last > first:
        try:
            parsed = json.loads(cleaned[first:last + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    return None


def parse_with_fallback(
    text: Optional[str],
    default: Union[T, Callable[[], T]],
    validator: Callable[[Dict[str, Any]], T],
    label: str = "response",
) -> T:
    """Parse model text into T, or fall back to a default.

    Args:
        text: Raw provider output
        default: Fallback value, or a zero-argument factory producing one
        validator: Turns the extracted dict into T; raises ValueError,
            TypeError, KeyError or ValidationError to reject it
        label: Name used in log lines

    Returns:
        The validated value, or the default
    """
    obj = extract_json_object(text)
    if obj is not None:
        try:
            return validator(obj)
        except (ValueError, TypeError, KeyError, ValidationError) as e:
            logger.warning(f"{label}: structured output rejected by validator: {e}")
    else:
        logger.warning(f"{label}: no JSON object found in provider output ({len(text or '')} chars)")

    return default() if callable(default) else default


def clamp_score(value: Any, default: int = 0, upper: int = 100) -> int:
    """Coerce a number-like value into an int between 0 and upper."""
    if isinstance(value, bool):
        return default
    if isinstance(value, str):
        match = re.search(r"-?\d+(?:\.\d+)?", value)
        if not match:
            return default
        value = match.group()
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return max(0, min(upper, int(round(number))))
