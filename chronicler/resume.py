"""Checkpoint/resume helpers: find sessions with archives or interrupted runs."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List

from .checkpoint import JsonFileCheckpointStore
from .context import CorruptCheckpointError
from .logging import log_warning as _log_warning


def scan_sessions(base: Path) -> Dict[str, Dict[str, object]]:
    """Summarize every stored session under base (the sessions directory)."""
    found: Dict[str, Dict[str, object]] = {}
    store = JsonFileCheckpointStore(base)
    for name in store.list_sessions():
        try:
            cp = store.load_checkpoint(name)
        except CorruptCheckpointError as e:
            _log_warning(f"skipping unreadable session {name}: {e}")
            continue
        if cp is None:
            continue
        found[name] = {
            "phase": cp.run.phase,
            "next_index": cp.run.next_index,
            "chunks": len(cp.run.chunks),
            "chapters": len(cp.chapters),
            "errors": sum(1 for c in cp.chapters if c.is_error),
            "resumable": cp.run.is_incomplete,
            "watermark": cp.watermark.message_id,
        }
    return found


def resumable_sessions(base: Path) -> List[str]:
    return [name for name, info in scan_sessions(base).items() if info["resumable"]]
