"""
Robust JSON extraction for generator answers.

Every stage parses its answer through :func:`parse_json_response` and then
reads fields with the ``as_*`` helpers, so that each field has a documented
fallback and malformed values never leak into stored state.
"""
import json
import logging
import re
from enum import Enum
from typing import Any, List, Optional, Type, TypeVar

from narrative_tracker.errors import ExtractionParseError

logger = logging.getLogger("tracker.json_extractor")

E = TypeVar("E", bound=Enum)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_UNQUOTED_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")

_DELIMITERS = {"object": ("{", "}"), "array": ("[", "]")}


def parse_json_response(text: str, shape: str = "auto", stage: str = "generator") -> Any:
    """
    Parse the JSON payload out of a free-text generator answer.

    Strategy:
        1. Strip a fenced ``\\`\\`\\`json ... \\`\\`\\``` block if present.
        2. Take the first balanced block of the expected *shape*
           (``object``, ``array`` or ``auto``: whichever opens first).
        3. Parse as-is, then retry once with unquoted keys repaired.

    Raises :class:`ExtractionParseError` when nothing parses.
    """
    candidate = _strip_code_fence(text.strip())
    raw = _extract_by_shape(candidate, shape) or candidate

    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass

    repaired = _repair_json(raw)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError as exc:
        logger.warning(
            "json_extract_failed | stage=%s | error=%s | raw_head=%.300s",
            stage, exc, raw[:300],
        )
        raise ExtractionParseError(stage, "answer is not valid JSON") from exc


# ---------------------------------------------------------------------------
# Extraction strategies
# ---------------------------------------------------------------------------

def _strip_code_fence(text: str) -> str:
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text


def _extract_by_shape(text: str, shape: str) -> Optional[str]:
    if shape == "auto":
        starts = [(text.find(open_ch), kind) for kind, (open_ch, _) in _DELIMITERS.items()]
        starts = [(idx, kind) for idx, kind in starts if idx != -1]
        if not starts:
            return None
        shape = min(starts)[1]

    open_ch, close_ch = _DELIMITERS[shape]
    start = text.find(open_ch)
    if start == -1:
        return None
    end = _find_matching_close(text, start, open_ch, close_ch)
    if end is None:
        # Unbalanced: hand the remainder to the parser and let it fail loudly.
        return text[start:]
    return text[start:end + 1]


def _find_matching_close(text: str, start: int, open_ch: str, close_ch: str) -> Optional[int]:
    """
    Return the index of the delimiter that balances the one at *start*,
    respecting JSON string literals so embedded braces don't confuse the count.
    """
    depth = 0
    in_string = False
    escape = False

    for i in range(start, len(text)):
        ch = text[i]

        if escape:
            escape = False
            continue

        if ch == "\\":
            if in_string:
                escape = True
            continue

        if ch == '"':
            in_string = not in_string
            continue

        if in_string:
            continue

        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return i

    return None


def _repair_json(text: str) -> str:
    """Quote bare keys: ``{ footwear: null }`` becomes ``{ "footwear": null }``."""
    return _UNQUOTED_KEY_RE.sub(r'\1"\2"\3', text)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def is_object(value: Any) -> bool:
    return isinstance(value, dict)


def as_string(value: Any, fallback: str) -> str:
    return value if isinstance(value, str) else fallback


def as_optional_string(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def as_number(value: Any, fallback: float) -> float:
    # bool is an int subclass; a JSON true is not a number here
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return fallback


def as_int(value: Any, fallback: int) -> int:
    number = as_number(value, fallback)
    return int(number)


def as_bool(value: Any, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def as_string_array(value: Any, max_items: Optional[int] = None) -> List[str]:
    if not isinstance(value, list):
        return []
    strings = [v for v in value if isinstance(v, str)]
    return strings[:max_items] if max_items else strings


def as_enum(enum_cls: Type[E], value: Any, fallback: E) -> E:
    """Coerce *value* into *enum_cls*; invalid members become *fallback*."""
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            pass
    return fallback
