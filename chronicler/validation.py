"""Validation utilities for backend payloads."""
from __future__ import annotations
from typing import Any, Dict, Tuple

REQUIRED_FIELDS = ("title", "time_range", "narrative", "key_quotes")


def validate_chapter_payload(payload: Dict[str, Any]) -> Tuple[bool, str]:
    """Payload must carry every schema field with the right shape.

    We keep this permissive on content: an empty title or quote list is
    acceptable. Only a missing field, a non-string text field, or a blank
    narrative fail validation.
    """
    if not isinstance(payload, dict):
        return False, f"Expected an object, got {type(payload).__name__}"
    missing = [k for k in REQUIRED_FIELDS if k not in payload]
    if missing:
        return False, f"Missing fields: {', '.join(missing)}"
    for k in ("title", "time_range", "narrative"):
        if not isinstance(payload[k], str):
            return False, f"Field '{k}' must be a string"
    if payload["narrative"].strip() == "":
        return False, "Empty narrative not allowed"
    quotes = payload["key_quotes"]
    if isinstance(quotes, str):
        return True, "ok"
    if not isinstance(quotes, list) or not all(isinstance(q, str) for q in quotes):
        return False, "Field 'key_quotes' must be a list of strings"
    return True, "ok"
