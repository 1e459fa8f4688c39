import pytest

from chronicler.checkpoint import JsonFileCheckpointStore, MemoryCheckpointStore, session_dir_name
from chronicler.context import CorruptCheckpointError, PersistenceError
from chronicler.models import Chapter, Checkpoint, RunRecord, Watermark, PAUSED
from chronicler.resume import resumable_sessions, scan_sessions


def _checkpoint() -> Checkpoint:
    run = RunRecord(
        phase=PAUSED,
        anchor=Watermark(message_id="m2", timestamp=100.0),
        chunk_size=3,
        start_number=4,
        next_index=1,
        chunks=[{"index": 0, "displayId": 4, "selected": True, "status": "success", "msgCount": 3}],
    )
    return Checkpoint(
        next_index=1,
        watermark=Watermark(message_id="m5", timestamp=200.0),
        chapters=[Chapter(chapter_number=4, title="T", time_range="r", narrative="n", key_quotes=["q"])],
        run=run,
    )


def test_json_store_round_trips_document(tmp_path):
    store = JsonFileCheckpointStore(tmp_path)
    store.save_checkpoint("chat-1", _checkpoint())
    loaded = store.load_checkpoint("chat-1")
    assert loaded.to_dict() == _checkpoint().to_dict()
    assert (tmp_path / "chat-1" / "chapters.json").exists()
    assert not list((tmp_path / "chat-1").glob("*.tmp"))


def test_missing_session_loads_none(tmp_path):
    assert JsonFileCheckpointStore(tmp_path).load_checkpoint("nope") is None


def test_corrupt_file_is_reported(tmp_path):
    store = JsonFileCheckpointStore(tmp_path)
    store.save_checkpoint("s", _checkpoint())
    (tmp_path / "s" / "progress.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(CorruptCheckpointError):
        store.load_checkpoint("s")


def test_session_ids_are_sanitized(tmp_path):
    assert session_dir_name("../../etc") == "etc"
    with pytest.raises(PersistenceError):
        session_dir_name("///")
    store = JsonFileCheckpointStore(tmp_path)
    store.save_checkpoint("a/b c", _checkpoint())
    assert store.list_sessions() == ["a_b_c"]


def test_writes_retry_then_raise():
    class Flaky(MemoryCheckpointStore):
        def __init__(self, fail_times):
            super().__init__(retries=2, retry_delay=0.0)
            self.fail_times = fail_times
            self.attempts = 0

        def _write_chapters(self, session_id, payload):
            self.attempts += 1
            if self.attempts <= self.fail_times:
                raise OSError("busy")
            super()._write_chapters(session_id, payload)

    ok = Flaky(fail_times=2)
    ok.save_chapters("s", [])
    assert ok.attempts == 3

    bad = Flaky(fail_times=5)
    with pytest.raises(PersistenceError):
        bad.save_chapters("s", [])
    assert bad.attempts == 3


def test_scan_reports_resumable_sessions(tmp_path):
    store = JsonFileCheckpointStore(tmp_path)
    store.save_checkpoint("paused", _checkpoint())
    done = _checkpoint()
    done.run = RunRecord()
    store.save_checkpoint("done", done)
    info = scan_sessions(tmp_path)
    assert info["paused"]["resumable"] is True
    assert info["paused"]["chapters"] == 1
    assert info["done"]["resumable"] is False
    assert resumable_sessions(tmp_path) == ["paused"]
