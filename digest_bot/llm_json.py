"""Helpers for reading JSON out of free-form model output."""

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def extract_json_array(text: str) -> str:
    """Return the first bracket-balanced JSON array in `text`, or "".

    Fenced code blocks are unwrapped first. Brackets inside JSON strings are
    ignored while matching.
    """
    if not text:
        return ""

    fenced = _FENCE_RE.search(text)
    if fenced and "[" in fenced.group(1):
        text = fenced.group(1)

    start = text.find("[")
    while start != -1:
        end = _match_bracket(text, start)
        if end != -1:
            candidate = text[start : end + 1]
            try:
                json.loads(candidate)
                return candidate.strip()
            except json.JSONDecodeError:
                pass
        start = text.find("[", start + 1)
    return ""


def _match_bracket(text: str, start: int) -> int:
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return i
    return -1


def parse_records(text: str) -> list[dict[str, Any]]:
    """Parse a list of JSON objects from model output.

    Raises:
        ValueError: If no JSON array can be found in the text
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        cleaned = extract_json_array(text or "")
        if not cleaned:
            raise ValueError(f"no JSON array in model response: {(text or '')[:200]!r}")
        data = json.loads(cleaned)

    if not isinstance(data, list):
        raise ValueError(f"expected a JSON array, got {type(data).__name__}")
    return [item for item in data if isinstance(item, dict) and "id" in item]
