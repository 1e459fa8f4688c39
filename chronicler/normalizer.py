"""LLM output normalizer: a documented pre-pass before JSON parsing.

Models asked for schema-constrained JSON still emit two recurring
malformations that break json.loads:

1. Markdown code fences around the document (```json ... ```).
2. Integers with leading zeros ("chapter": 05), which JSON forbids.

sanitize() fixes both; parse_json_payload() runs sanitize() and falls back
to the first balanced {...} object when the model wraps JSON in prose.
Values inside string literals are never rewritten.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

from .context import MalformedOutputError

_FENCE_OPEN_RE = re.compile(r"^\s*```[A-Za-z0-9_-]*[ \t]*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?[ \t]*```\s*$")
_FENCE_BLOCK_RE = re.compile(r"```[A-Za-z0-9_-]*\s*\n?(.*?)\n?```", re.DOTALL)
_STRING_RE = re.compile(r'"(?:\\.|[^"\\])*"')
_LEADING_ZERO_RE = re.compile(r"(?<=[:\[,])(\s*)(-?)0+(?=\d)")


def strip_code_fences(text: str) -> str:
    s = (text or "").strip()
    if s.startswith("```"):
        s = _FENCE_OPEN_RE.sub("", s, count=1)
        s = _FENCE_CLOSE_RE.sub("", s, count=1)
        return s.strip()
    m = _FENCE_BLOCK_RE.search(s)
    if m:
        return m.group(1).strip()
    return s


def fix_leading_zeros(text: str) -> str:
    """Rewrite 05 -> 5 in value positions; leaves 0, 0.5 and string contents alone."""
    out = []
    pos = 0
    for m in _STRING_RE.finditer(text):
        out.append(_LEADING_ZERO_RE.sub(r"\1\2", text[pos:m.start()]))
        out.append(m.group(0))
        pos = m.end()
    out.append(_LEADING_ZERO_RE.sub(r"\1\2", text[pos:]))
    return "".join(out)


def sanitize(text: str) -> str:
    if not text or not text.strip():
        return "{}"
    return fix_leading_zeros(strip_code_fences(text))


def find_balanced_object(text: str) -> Optional[str]:
    """Return the first balanced {...} span that parses as JSON, else None."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_str = False
        escaped = False
        for i in range(start, len(text)):
            c = text[i]
            if in_str:
                if escaped:
                    escaped = False
                elif c == "\\":
                    escaped = True
                elif c == '"':
                    in_str = False
                continue
            if c == '"':
                in_str = True
            elif c == "{":
                depth += 1
            elif c == "}":
                depth -= 1
                if depth == 0:
                    candidate = text[start:i + 1]
                    try:
                        json.loads(candidate)
                        return candidate
                    except json.JSONDecodeError:
                        break
        start = text.find("{", start + 1)
    return None


def parse_json_payload(text: str) -> Dict[str, Any]:
    clean = sanitize(text)
    try:
        data = json.loads(clean)
    except json.JSONDecodeError as e:
        candidate = find_balanced_object(clean)
        if candidate is None:
            raise MalformedOutputError(f"Response is not valid JSON: {e}")
        data = json.loads(candidate)
    if isinstance(data, list) and len(data) == 1 and isinstance(data[0], dict):
        data = data[0]
    if not isinstance(data, dict):
        raise MalformedOutputError(f"Expected a JSON object, got {type(data).__name__}")
    return data
