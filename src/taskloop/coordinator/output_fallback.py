"""Best-effort JSON object recovery from free-form model output."""

from __future__ import annotations

import json
import re
from collections.abc import Iterable

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_TAGGED_FENCE = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_OPEN_BRACE = re.compile(r"\{")
LOOSE_SCAN_TAIL_CHARS = 64_000


def parse_json_object(text: str) -> dict[str, object] | None:
    """Recover one JSON object: whole text, then a fenced block, then the outer braces."""

    stripped = text.strip()
    if not stripped:
        return None

    direct = _try_load_dict(stripped)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(stripped)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(stripped[start : end + 1])


def parse_trailing_json_block(text: str, *, expected_keys: Iterable[str]) -> dict[str, object]:
    """Recover the structured block an agent appends to its output.

    Prefers the last ```json fence. Falls back to the last decodable ``{...}``
    object in the last ``LOOSE_SCAN_TAIL_CHARS`` characters that carries one
    of ``expected_keys``.
    Returns an empty dict when nothing parses.
    """

    blocks = _TAGGED_FENCE.findall(text)
    if blocks:
        payload = _try_load_dict(blocks[-1])
        if payload is not None:
            return payload

    keys = tuple(expected_keys)
    decoder = json.JSONDecoder()
    tail = text[-LOOSE_SCAN_TAIL_CHARS:]
    starts = [match.start() for match in _OPEN_BRACE.finditer(tail)]
    for start in reversed(starts):
        try:
            parsed, _ = decoder.raw_decode(tail, start)
        except (json.JSONDecodeError, RecursionError):
            continue
        if isinstance(parsed, dict) and any(key in parsed for key in keys):
            return parsed
    return {}


def _try_load_dict(raw: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, RecursionError):
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
