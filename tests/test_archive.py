import pytest

from chronicler.archive import ArchiveStore
from chronicler.artifacts import STORY_HEADER, format_story, write_story_markdown
from chronicler.checkpoint import MemoryCheckpointStore
from chronicler.context import ChapterLockedError, PersistenceError
from chronicler.models import Chapter


class BrokenStore(MemoryCheckpointStore):
    def __init__(self) -> None:
        super().__init__(retries=1, retry_delay=0.0)
        self.broken = False

    def _write_chapters(self, session_id, payload):
        if self.broken:
            raise OSError("disk full")
        super()._write_chapters(session_id, payload)


def _ch(n: int, title: str = "") -> Chapter:
    return Chapter(chapter_number=n, title=title or f"T{n}", time_range="r", narrative=f"n{n}", key_quotes=["q"])


def _titles(store: ArchiveStore):
    return [c.title for c in store.chapters]


def test_every_edit_is_written_through():
    adapter = MemoryCheckpointStore()
    store = ArchiveStore("s", adapter)
    store.append(_ch(1))
    store.append(_ch(2))
    store.edit(0, title="Opening")
    store.move(1, "up")
    persisted = [c["title"] for c in adapter.load_checkpoint("s").to_dict()["chapters"]]
    assert persisted == ["T2", "Opening"]
    assert _titles(store) == persisted


def test_replace_in_place_and_ordered_insert():
    store = ArchiveStore("s", MemoryCheckpointStore(), chapters=[_ch(1), _ch(3)])
    assert store.replace(3, _ch(3, "Redo")) == 1
    assert store.replace(2, _ch(99, "Middle")) == 1
    assert [c.chapter_number for c in store.chapters] == [1, 2, 3]
    assert _titles(store) == ["T1", "Middle", "Redo"]


def test_move_at_edges_is_noop():
    store = ArchiveStore("s", MemoryCheckpointStore(), chapters=[_ch(1), _ch(2)])
    assert store.move(0, "up") == 0
    assert store.move(1, "down") == 1
    assert _titles(store) == ["T1", "T2"]


def test_manual_insert_defaults():
    store = ArchiveStore("s", MemoryCheckpointStore(), chapters=[_ch(1), _ch(2)])
    ch = store.insert_manual()
    assert ch.chapter_number == 3
    assert ch.title == "New Chapter"
    assert ch.time_range == "Unknown"
    assert not ch.is_error


def test_delete_and_edit_validate_input():
    store = ArchiveStore("s", MemoryCheckpointStore(), chapters=[_ch(1)])
    with pytest.raises(IndexError):
        store.delete(5)
    with pytest.raises(ValueError):
        store.edit(0, colour="red")
    removed = store.delete(0)
    assert removed.chapter_number == 1
    assert len(store) == 0


def test_locked_chapter_rejects_edits():
    store = ArchiveStore("s", MemoryCheckpointStore(), chapters=[_ch(1), _ch(2)], is_locked=lambda n: n == 2)
    with pytest.raises(ChapterLockedError):
        store.delete(1)
    with pytest.raises(ChapterLockedError):
        store.edit(1, title="x")
    with pytest.raises(ChapterLockedError):
        store.move(0, "down")
    store.edit(0, title="fine")


def test_failed_write_leaves_store_unchanged():
    adapter = BrokenStore()
    store = ArchiveStore("s", adapter, chapters=[_ch(1)])
    adapter.broken = True
    with pytest.raises(PersistenceError):
        store.append(_ch(2))
    with pytest.raises(PersistenceError):
        store.edit(0, title="nope")
    assert _titles(store) == ["T1"]


def test_markdown_export(tmp_path):
    chapters = [_ch(1, "Dawn"), _ch(2, "Dusk")]
    text = format_story(chapters)
    assert text.startswith(STORY_HEADER)
    assert "## Chapter 1: Dawn" in text
    assert text.index("Dawn") < text.index("Dusk")
    assert '- "q"' in text
    out = write_story_markdown(tmp_path / "out" / "story.md", chapters)
    assert out.read_text(encoding="utf-8") == text


def test_reorder_and_error_listing():
    bad = Chapter(chapter_number=2, title="Processing Error (Skipped)", is_error=True)
    store = ArchiveStore("s", MemoryCheckpointStore(), chapters=[_ch(1), bad, _ch(3)])
    assert [c.chapter_number for c in store.error_chapters()] == [2]
    store.reorder([store.chapters[2], store.chapters[0]])
    assert [c.chapter_number for c in store.chapters] == [3, 1]

    locked = ArchiveStore("s", MemoryCheckpointStore(), chapters=[_ch(1), _ch(2)], is_locked=lambda n: n == 2)
    with pytest.raises(ChapterLockedError):
        locked.reorder([_ch(1)])


def test_replace_skips_manual_chapter_with_same_number():
    store = ArchiveStore("s", MemoryCheckpointStore(), chapters=[_ch(1)])
    notes = store.insert_manual(_ch(2, "Notes"))
    assert notes.is_manual
    assert store.replace(2, _ch(2, "Generated")) == 2
    assert store.replace(2, _ch(2, "Regenerated")) == 2
    assert _titles(store) == ["T1", "Notes", "Regenerated"]
    assert [c.is_manual for c in store.chapters] == [False, True, False]


def test_manual_chapter_is_never_locked():
    store = ArchiveStore("s", MemoryCheckpointStore(), chapters=[_ch(1)], is_locked=lambda n: n == 1)
    store.insert_manual(_ch(1, "Aside"))
    assert store.edit(1, title="Aside 2").title == "Aside 2"
    with pytest.raises(ChapterLockedError):
        store.edit(0, title="x")
