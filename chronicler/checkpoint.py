"""Checkpoint/persistence adapters.

A checkpoint is the session-scoped document {nextIndex, watermark, chapters,
run}. The executor saves it after every chunk, so adapters expose partial
writes: save_chapters() and save_progress() touch only their half of the
document.

JsonFileCheckpointStore layout:

    <base>/<session_id>/chapters.json   # list of chapter dicts
    <base>/<session_id>/progress.json   # nextIndex, watermark, run

Both files are replaced atomically (temp file + os.replace).
"""
from __future__ import annotations

import copy
import json
import re
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .context import CorruptCheckpointError, PersistenceError
from .logging import breadcrumb as _breadcrumb, log_warning as _log_warning
from .models import Chapter, Checkpoint, RunRecord, Watermark
from .utils import atomic_write_text, to_text

CHAPTERS_FILE = "chapters.json"
PROGRESS_FILE = "progress.json"

_SAFE_ID_RE = re.compile(r"[^A-Za-z0-9_.\-]+")


def session_dir_name(session_id: str) -> str:
    name = _SAFE_ID_RE.sub("_", str(session_id)).strip("._")
    if not name:
        raise PersistenceError(f"Invalid session id: {session_id!r}")
    return name


class CheckpointStore:
    """Base adapter: retrying write wrappers around _write_* hooks."""

    def __init__(self, *, retries: int = 2, retry_delay: float = 0.05) -> None:
        self.retries = max(0, int(retries))
        self.retry_delay = float(retry_delay)

    def _with_retries(self, label: str, fn: Callable[[], None]) -> None:
        last_err: Optional[BaseException] = None
        for attempt in range(self.retries + 1):
            try:
                fn()
                return
            except PersistenceError:
                raise
            except Exception as e:
                last_err = e
                _log_warning(f"checkpoint {label} failed (attempt {attempt + 1}/{self.retries + 1}): {e}")
                if attempt < self.retries:
                    time.sleep(self.retry_delay * (2 ** attempt))
        raise PersistenceError(f"Checkpoint {label} failed: {last_err}")

    # Public contract

    def save_chapters(self, session_id: str, chapters: List[Chapter]) -> None:
        payload = [c.to_dict() for c in chapters]
        self._with_retries(f"chapters:{session_id}", lambda: self._write_chapters(session_id, payload))

    def save_progress(self, session_id: str, next_index: int, watermark: Watermark, run: RunRecord) -> None:
        payload = {
            "nextIndex": int(next_index),
            "watermark": watermark.to_dict(),
            "run": run.to_dict(),
        }
        self._with_retries(f"progress:{session_id}", lambda: self._write_progress(session_id, payload))

    def save_checkpoint(self, session_id: str, checkpoint: Checkpoint) -> None:
        self.save_progress(session_id, checkpoint.next_index, checkpoint.watermark, checkpoint.run)
        self.save_chapters(session_id, checkpoint.chapters)

    def load_checkpoint(self, session_id: str) -> Optional[Checkpoint]:
        chapters = self._read_chapters(session_id)
        progress = self._read_progress(session_id)
        if chapters is None and progress is None:
            return None
        data: Dict[str, Any] = dict(progress or {})
        data["chapters"] = chapters or []
        try:
            return Checkpoint.from_dict(data)
        except (TypeError, ValueError, AttributeError) as e:
            raise CorruptCheckpointError(f"Checkpoint for {session_id} is malformed: {e}")

    def delete(self, session_id: str) -> None:
        raise NotImplementedError

    def list_sessions(self) -> List[str]:
        raise NotImplementedError

    # Storage hooks

    def _write_chapters(self, session_id: str, payload: List[Dict[str, Any]]) -> None:
        raise NotImplementedError

    def _write_progress(self, session_id: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _read_chapters(self, session_id: str) -> Optional[List[Dict[str, Any]]]:
        raise NotImplementedError

    def _read_progress(self, session_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError


class MemoryCheckpointStore(CheckpointStore):
    """Process-local store; payloads are deep-copied on the way in and out."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._lock = threading.Lock()
        self._chapters: Dict[str, List[Dict[str, Any]]] = {}
        self._progress: Dict[str, Dict[str, Any]] = {}
        self.writes = 0

    def _write_chapters(self, session_id: str, payload: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._chapters[session_id] = copy.deepcopy(payload)
            self.writes += 1

    def _write_progress(self, session_id: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self._progress[session_id] = copy.deepcopy(payload)
            self.writes += 1

    def _read_chapters(self, session_id: str) -> Optional[List[Dict[str, Any]]]:
        with self._lock:
            data = self._chapters.get(session_id)
            return copy.deepcopy(data) if data is not None else None

    def _read_progress(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            data = self._progress.get(session_id)
            return copy.deepcopy(data) if data is not None else None

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._chapters.pop(session_id, None)
            self._progress.pop(session_id, None)

    def list_sessions(self) -> List[str]:
        with self._lock:
            return sorted(set(self._chapters) | set(self._progress))


class JsonFileCheckpointStore(CheckpointStore):
    def __init__(self, base_dir: str | Path, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.base_dir = Path(base_dir)

    def session_dir(self, session_id: str) -> Path:
        return self.base_dir / session_dir_name(session_id)

    def _write_chapters(self, session_id: str, payload: List[Dict[str, Any]]) -> None:
        path = self.session_dir(session_id) / CHAPTERS_FILE
        atomic_write_text(path, to_text(payload))
        _breadcrumb(f"checkpoint:chapters session={session_id} count={len(payload)}")

    def _write_progress(self, session_id: str, payload: Dict[str, Any]) -> None:
        path = self.session_dir(session_id) / PROGRESS_FILE
        atomic_write_text(path, to_text(payload))
        _breadcrumb(f"checkpoint:progress session={session_id} next_index={payload.get('nextIndex')}")

    def _read_json(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise CorruptCheckpointError(f"Unreadable checkpoint file {path}: {e}")
        except OSError as e:
            raise PersistenceError(f"Unable to read checkpoint file {path}: {e}")

    def _read_chapters(self, session_id: str) -> Optional[List[Dict[str, Any]]]:
        data = self._read_json(self.session_dir(session_id) / CHAPTERS_FILE)
        if data is not None and not isinstance(data, list):
            raise CorruptCheckpointError(f"{CHAPTERS_FILE} for {session_id} is not a list")
        return data

    def _read_progress(self, session_id: str) -> Optional[Dict[str, Any]]:
        data = self._read_json(self.session_dir(session_id) / PROGRESS_FILE)
        if data is not None and not isinstance(data, dict):
            raise CorruptCheckpointError(f"{PROGRESS_FILE} for {session_id} is not an object")
        return data

    def delete(self, session_id: str) -> None:
        d = self.session_dir(session_id)
        for name in (CHAPTERS_FILE, PROGRESS_FILE):
            p = d / name
            if p.exists():
                p.unlink()
        if d.exists() and not any(d.iterdir()):
            d.rmdir()

    def list_sessions(self) -> List[str]:
        if not self.base_dir.exists():
            return []
        out: List[str] = []
        for p in sorted(self.base_dir.iterdir()):
            if p.is_dir() and ((p / CHAPTERS_FILE).exists() or (p / PROGRESS_FILE).exists()):
                out.append(p.name)
        return out
