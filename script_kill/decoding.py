"""Lenient decoding of provider output.

Model replies are JSON "by convention" only: they arrive wrapped in markdown
fences, preceded by chatty prose, or with trailing commas. decode_object()
turns such text into a dict or a ParseError, and never raises into business
logic. Callers branch on the result type:

    result = decode_object(text, required=("title",))
    if isinstance(result, ParseError):
        ...fallback...
    data = result.value
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_LIST_MARKER_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)、])\s*")


@dataclass(frozen=True)
class Ok:
    value: dict[str, Any]


@dataclass(frozen=True)
class ParseError:
    reason: str
    raw: str


Decoded = Ok | ParseError


def _strip_fences(text: str) -> str:
    cleaned = text.strip().lstrip("\ufeff").strip()
    return _FENCE_RE.sub("", cleaned).strip()


def _outer_object(text: str) -> str | None:
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return None
    return text[first:last + 1]


def _loads(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        return json.loads(_TRAILING_COMMA_RE.sub(r"\1", candidate))


def decode_object(text: str | None, required: tuple[str, ...] = ()) -> Decoded:
    """Extract a JSON object from noisy model output.

    Steps: strip BOM and markdown fences, slice the outermost {...}, parse,
    retry without trailing commas, then check the required keys.
    """
    raw = text or ""
    if not raw.strip():
        return ParseError("empty response", raw)

    candidate = _outer_object(_strip_fences(raw))
    if candidate is None:
        return ParseError("no JSON object found", raw)

    try:
        data = _loads(candidate)
    except json.JSONDecodeError as e:
        return ParseError(f"invalid JSON: {e}", raw)

    if not isinstance(data, dict):
        return ParseError(f"expected a JSON object, got {type(data).__name__}", raw)

    missing = [key for key in required if key not in data]
    if missing:
        return ParseError(f"missing keys: {', '.join(missing)}", raw)
    return Ok(data)


def parse_labeled_lines(text: str, labels: dict[str, tuple[str, ...]]) -> dict[str, str]:
    """Pull `Label: text` fields out of a semi-structured reply.

    `labels` maps a field name to the label spellings that introduce it.
    The first matching line wins; fields with no match are absent from the
    result so callers can substitute their own defaults.
    """
    found: dict[str, str] = {}
    for line in text.splitlines():
        stripped = _LIST_MARKER_RE.sub("", line.strip()).replace("**", "")
        if not stripped:
            continue
        for field, spellings in labels.items():
            if field in found:
                continue
            for label in spellings:
                match = re.match(rf"{re.escape(label)}\s*[:：]\s*(.*)$", stripped, re.IGNORECASE)
                if match and match.group(1).strip():
                    found[field] = match.group(1).strip()
                    break
            if field in found:
                break
    return found
