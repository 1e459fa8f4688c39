"""Split an ordered message log into contiguous, numbered chunks.

Contract:
- unarchived_messages(messages, watermark) -> List[Message]
- chunk_messages(messages, max_per_unit, *, watermark, last_chapter_number, preview_chars) -> List[Chunk]

Display ids are assigned once here, over the full candidate set. Selection
changes later never renumber anything, so archives built across several
runs keep their chapter numbers.
"""
from __future__ import annotations

from typing import List, Optional, Sequence

from .context import ConfigError, EmptyInputError
from .logging import breadcrumb as _breadcrumb, log_warning as _log_warning
from .models import ARCHIVABLE_ROLES, Chunk, Message, Watermark
from .utils import truncate


def unarchived_messages(messages: Sequence[Message], watermark: Optional[Watermark] = None) -> List[Message]:
    candidates = [m for m in messages if m.role in ARCHIVABLE_ROLES]
    if watermark is None or not watermark.is_set:
        return candidates
    if watermark.timestamp is not None:
        return [m for m in candidates if m.epoch > watermark.timestamp]
    for pos, m in enumerate(candidates):
        if m.id == watermark.message_id:
            return candidates[pos + 1:]
    # The anchoring message was deleted; offer everything and let review skip.
    _log_warning(f"watermark message {watermark.message_id} not found; offering all {len(candidates)} messages")
    return candidates


def preview_for(messages: Sequence[Message], limit: int) -> str:
    for m in messages:
        text = (m.content or "").strip()
        if text:
            return truncate(text, limit)
    return ""


def chunk_messages(
    messages: Sequence[Message],
    max_per_unit: int,
    *,
    watermark: Optional[Watermark] = None,
    last_chapter_number: int = 0,
    preview_chars: int = 60,
) -> List[Chunk]:
    if max_per_unit < 1:
        raise ConfigError(f"max_per_unit must be >= 1 (got {max_per_unit})")
    candidates = unarchived_messages(messages, watermark)
    if not candidates:
        raise EmptyInputError("No new messages to archive.")
    start = int(last_chapter_number) + 1
    chunks: List[Chunk] = []
    for index, pos in enumerate(range(0, len(candidates), max_per_unit)):
        group = candidates[pos:pos + max_per_unit]
        chunks.append(Chunk(
            index=index,
            display_id=start + index,
            messages=group,
            preview_text=preview_for(group, preview_chars),
        ))
    _breadcrumb(f"chunker:done candidates={len(candidates)} chunks={len(chunks)} first_id={start}")
    return chunks
