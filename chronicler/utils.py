"""Utility helpers: file I/O and safe JSON text rendering.

Public helpers:
- save_text(path, content)
- atomic_write_text(path, content)
- read_text(path)
- to_text(obj)
- truncate(text, limit)
"""
from __future__ import annotations
from pathlib import Path
from typing import Any
import json
import os

from .context import MissingFileError


def save_text(path: str | Path, content: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content, encoding="utf-8")


def atomic_write_text(path: str | Path, content: str) -> None:
    """Write via a sibling temp file and os.replace so readers never see a partial file."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(p.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, p)


def read_text(path: str | Path) -> str:
    p = Path(path)
    if not p.exists():
        raise MissingFileError(f"Required file not found: {path}")
    return p.read_text(encoding="utf-8")


def to_text(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False, indent=2, default=str)
    except Exception:
        return str(obj)


def truncate(text: str, limit: int, suffix: str = "...") -> str:
    s = text or ""
    if limit <= 0 or len(s) <= limit:
        return s
    return s[:limit] + suffix
