"""Archive store: the user-editable chapter list ("the story").

Every mutation is written through the checkpoint adapter before the
in-memory list changes, so a failed write leaves the store exactly as it was
and surfaces PersistenceError. There is no write-behind buffer.
"""
from __future__ import annotations

import threading
from typing import Any, Callable, List, Optional, Sequence

from .checkpoint import CheckpointStore
from .context import ChapterLockedError
from .logging import breadcrumb as _breadcrumb, log_run as _log_run
from .models import Chapter, Watermark

EDITABLE_FIELDS = ("chapter_number", "title", "time_range", "narrative", "key_quotes", "is_error")


class ArchiveStore:
    def __init__(
        self,
        session_id: str,
        adapter: CheckpointStore,
        *,
        chapters: Optional[Sequence[Chapter]] = None,
        watermark: Optional[Watermark] = None,
        lock: Optional[threading.RLock] = None,
        is_locked: Optional[Callable[[int], bool]] = None,
    ) -> None:
        self.session_id = session_id
        self.adapter = adapter
        self._chapters: List[Chapter] = [c.copy() for c in (chapters or [])]
        self.watermark = watermark or Watermark()
        self.lock = lock or threading.RLock()
        self._is_locked = is_locked or (lambda _num: False)

    # ------------------------------------------------------------------
    # Read side

    @property
    def chapters(self) -> List[Chapter]:
        with self.lock:
            return [c.copy() for c in self._chapters]

    def __len__(self) -> int:
        return len(self._chapters)

    def max_chapter_number(self) -> int:
        with self.lock:
            return max((c.chapter_number for c in self._chapters), default=0)

    def find(self, chapter_number: int) -> int:
        """Array position of the chapter with this number, or -1."""
        with self.lock:
            for pos, c in enumerate(self._chapters):
                if c.chapter_number == chapter_number:
                    return pos
            return -1

    def find_generated(self, chapter_number: int) -> int:
        """Position of the run-produced chapter with this number, or -1. Manual chapters are ignored."""
        with self.lock:
            for pos, c in enumerate(self._chapters):
                if c.chapter_number == chapter_number and not c.is_manual:
                    return pos
            return -1

    def error_chapters(self) -> List[Chapter]:
        with self.lock:
            return [c.copy() for c in self._chapters if c.is_error]

    # ------------------------------------------------------------------
    # Write side

    def _commit(self, new_list: List[Chapter], label: str) -> None:
        self.adapter.save_chapters(self.session_id, new_list)
        self._chapters = new_list
        _log_run(f"ARCHIVE {label} | session={self.session_id} chapters={len(new_list)}")

    def _check_index(self, index: int) -> Chapter:
        if index < 0 or index >= len(self._chapters):
            raise IndexError(f"No chapter at position {index} (have {len(self._chapters)})")
        return self._chapters[index]

    def _check_unlocked(self, chapter: Chapter) -> None:
        if not chapter.is_manual and self._is_locked(chapter.chapter_number):
            raise ChapterLockedError(f"Chapter {chapter.chapter_number} is being processed; try again when it finishes.")

    def append(self, chapter: Chapter) -> None:
        with self.lock:
            self._commit(self._chapters + [chapter.copy()], f"append #{chapter.chapter_number}")

    def replace(self, chapter_number: int, chapter: Chapter) -> int:
        """Replace the run-produced chapter with this number in place; insert in number order if absent.

        A manual chapter that happens to share the number is kept; the new
        chapter lands after it.

        Returns the array position the chapter ended up at.
        """
        with self.lock:
            new_chapter = chapter.copy(chapter_number=chapter_number, is_manual=False)
            new_list = list(self._chapters)
            pos = self.find_generated(chapter_number)
            if pos != -1:
                new_list[pos] = new_chapter
            else:
                pos = next((i for i, c in enumerate(new_list) if c.chapter_number > chapter_number), len(new_list))
                new_list.insert(pos, new_chapter)
            self._commit(new_list, f"replace #{chapter_number}")
            return pos

    def delete(self, index: int) -> Chapter:
        with self.lock:
            target = self._check_index(index)
            self._check_unlocked(target)
            new_list = list(self._chapters)
            removed = new_list.pop(index)
            self._commit(new_list, f"delete #{removed.chapter_number}")
            return removed.copy()

    def edit(self, index: int, **fields: Any) -> Chapter:
        with self.lock:
            target = self._check_index(index)
            self._check_unlocked(target)
            unknown = [k for k in fields if k not in EDITABLE_FIELDS]
            if unknown:
                raise ValueError(f"Unknown chapter fields: {', '.join(unknown)}")
            if "key_quotes" in fields:
                fields["key_quotes"] = [str(q) for q in (fields["key_quotes"] or [])]
            updated = target.copy(**fields)
            new_list = list(self._chapters)
            new_list[index] = updated
            self._commit(new_list, f"edit #{updated.chapter_number}")
            return updated.copy()

    def move(self, index: int, direction: str) -> int:
        """Swap with the neighbour above ("up") or below ("down"); edges are no-ops."""
        if direction not in ("up", "down"):
            raise ValueError(f"direction must be 'up' or 'down' (got {direction!r})")
        with self.lock:
            target = self._check_index(index)
            dest = index - 1 if direction == "up" else index + 1
            if dest < 0 or dest >= len(self._chapters):
                return index
            self._check_unlocked(target)
            self._check_unlocked(self._chapters[dest])
            new_list = list(self._chapters)
            new_list[index], new_list[dest] = new_list[dest], new_list[index]
            self._commit(new_list, f"move #{target.chapter_number} {direction}")
            return dest

    def reorder(self, chapters: Sequence[Chapter]) -> None:
        """Replace the whole ordering (drag-and-drop result)."""
        with self.lock:
            kept = {c.chapter_number for c in chapters}
            for c in self._chapters:
                if c.chapter_number not in kept:
                    self._check_unlocked(c)
            self._commit([c.copy() for c in chapters], "reorder")

    def insert_manual(self, chapter: Optional[Chapter] = None) -> Chapter:
        """Append a user-owned chapter; numbered len + 1 unless the caller chose one."""
        with self.lock:
            new_chapter = chapter.copy(is_manual=True) if chapter is not None else Chapter(
                chapter_number=len(self._chapters) + 1,
                title="New Chapter",
                time_range="Unknown",
                narrative="",
                key_quotes=[],
                is_manual=True,
            )
            self._commit(self._chapters + [new_chapter], f"manual #{new_chapter.chapter_number}")
            _breadcrumb(f"archive:manual-insert number={new_chapter.chapter_number}")
            return new_chapter.copy()

    def advance_watermark(self, watermark: Watermark) -> None:
        """Move the in-memory watermark; the executor persists it with the progress record."""
        with self.lock:
            self.watermark = watermark
