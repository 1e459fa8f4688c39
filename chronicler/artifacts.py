"""Artifact I/O helpers for the archived story: Markdown export."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable

from .models import Chapter
from .utils import save_text

STORY_HEADER = "=== ARCHIVED STORY SUMMARY ==="
STORY_FOOTER = "=== END OF ARCHIVE ==="


def format_chapter(chapter: Chapter) -> str:
    lines = [
        f"## Chapter {chapter.chapter_number}: {chapter.title}",
        f"**Timeframe:** {chapter.time_range}",
        "",
        chapter.narrative,
    ]
    if chapter.key_quotes:
        lines.append("")
        lines.append("**Key Quotes:**")
        lines.extend(f'- "{q}"' for q in chapter.key_quotes)
    return "\n".join(lines)


def format_story(chapters: Iterable[Chapter]) -> str:
    """Render chapters in list order (the user's chosen reading order)."""
    body = [format_chapter(c) for c in chapters]
    parts = [STORY_HEADER, ""]
    for block in body:
        parts.append(block)
        parts.append("")
    parts.append(STORY_FOOTER)
    return "\n".join(parts) + "\n"


def write_story_markdown(path: str | Path, chapters: Iterable[Chapter]) -> Path:
    save_text(path, format_story(chapters))
    return Path(path)
