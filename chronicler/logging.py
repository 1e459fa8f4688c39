"""Logging helpers: crash tracing breadcrumbs and run logs.

This module centralizes lightweight logging utilities used across the project.
Everything lands under the configured data directory (see env.get_data_dir).

Public API:
- crash_trace_file() -> Optional[str]
- rss_kb() -> Optional[int]
- breadcrumb(label: str) -> None
- log_warning(msg: str) -> None
- log_error_base(msg: str) -> None
- log_run(msg: str) -> None
- init_run_logs(max_lines: int) -> None
"""
from __future__ import annotations
from typing import Optional
import os
import sys
import time
import threading

try:  # POSIX resource usage for RSS
    import resource  # type: ignore
except Exception:  # pragma: no cover
    resource = None  # type: ignore

_WRITE_LOCK = threading.Lock()


def crash_trace_file() -> Optional[str]:
    return os.getenv("CHR_CRASH_TRACE_FILE")


def rss_kb() -> Optional[int]:
    try:
        if resource is None:
            return None
        usage = resource.getrusage(resource.RUSAGE_SELF)
        return int(getattr(usage, "ru_maxrss", 0))
    except Exception:
        return None


def _append(name: str, line: str) -> None:
    from .env import get_data_dir  # lazy import to avoid cycles
    base = get_data_dir()
    base.mkdir(parents=True, exist_ok=True)
    with _WRITE_LOCK:
        with (base / name).open("a", encoding="utf-8") as f:
            f.write(line)


def breadcrumb(label: str) -> None:
    path = crash_trace_file()
    try:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
        tid = threading.get_ident()
        mem = rss_kb()
        line = f"{ts} pid={os.getpid()} tid={tid} rss_kb={mem or 'na'} | {label}\n"
        if path:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
        log_run(f"BREADCRUMB | {label}")
        if os.getenv("CHR_VERBOSE", "0") == "1":
            sys.stderr.write(f"[crumb] {label}\n")
            sys.stderr.flush()
    except Exception:
        pass


def log_warning(msg: str) -> None:
    """Log a warning message to stderr and run.log."""
    try:
        text = f"WARNING: {msg}"
        sys.stderr.write(text + "\n")
        log_run(text)
    except Exception:
        pass


def log_error_base(msg: str) -> None:
    """Append an error message to run_error.log in the data directory."""
    try:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
        _append("run_error.log", f"[{ts}] {msg}\n")
        log_run(f"ERROR: {msg}")
    except Exception:
        pass
    try:
        sys.stderr.write(f"ERROR: {msg}\n")
    except Exception:
        pass


def log_run(msg: str) -> None:
    """Append a message to the unified run.log file."""
    try:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
        _append("run.log", f"[{ts}] {msg}\n")
    except Exception:
        pass


def init_run_logs(max_lines: int = 5000) -> None:
    """Trim run.log to its last max_lines lines so it does not grow unbounded."""
    try:
        from .env import get_data_dir
        path = get_data_dir() / "run.log"
        if not path.exists():
            return
        lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
        if len(lines) > max_lines:
            with _WRITE_LOCK:
                path.write_text("".join(lines[-max_lines:]), encoding="utf-8")
    except Exception:
        pass
