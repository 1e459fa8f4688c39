"""Token counting helpers using tiktoken.

- count_text_tokens(text: str, model: str) -> int
- count_chat_tokens(messages: list[dict], model: str) -> int

Counts feed the request summary line in run.log; they are diagnostics and
never gate a call. If no encoding resolves for a model (offline cache miss,
unknown family) a chars-per-token estimate is used, controlled by
CHR_CHARS_PER_TOKEN (default 4).
"""
from __future__ import annotations

from functools import lru_cache
from typing import List, Dict
import os

import tiktoken


@lru_cache(maxsize=16)
def _encoding_for_model(model: str):
    try:
        return tiktoken.encoding_for_model(model)
    except Exception:
        # Fallbacks for newer families
        for name in ("o200k_base", "cl100k_base"):
            try:
                return tiktoken.get_encoding(name)
            except Exception:
                continue
        return None


def _chars_per_token() -> float:
    try:
        cpt = float(os.getenv("CHR_CHARS_PER_TOKEN", "4") or "4")
        return cpt if cpt > 0 else 4.0
    except Exception:
        return 4.0


def count_text_tokens(text: str, model: str) -> int:
    enc = _encoding_for_model(model)
    if enc is None:
        return int((len(text or "") / _chars_per_token()) + 0.5)
    return len(enc.encode(text or ""))


def count_chat_tokens(messages: List[Dict[str, str]], model: str) -> int:
    """Approximate tokens for chat messages according to ChatML-like rules.

    Each message carries an overhead; values vary by model snapshot. We use
    a conservative default of tokens_per_message = 3, tokens_per_name = 1,
    plus 3 for assistant priming.
    """
    enc = _encoding_for_model(model)
    if enc is None:
        total = 0
        for m in messages:
            total += count_text_tokens(str(m.get("role", "")), model)
            total += count_text_tokens(str(m.get("content", "")), model)
        return total + 6
    tokens_per_message = 3
    tokens_per_name = 1
    total = 0
    for m in messages:
        total += tokens_per_message
        total += len(enc.encode(str(m.get("role", ""))))
        total += len(enc.encode(str(m.get("content", ""))))
        if m.get("name"):
            total += tokens_per_name
            total += len(enc.encode(str(m.get("name"))))
    # Every reply is primed with <im_start>assistant
    total += 3
    return total
