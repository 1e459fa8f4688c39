"""Data model: messages, chunks, chapters and the durable checkpoint shape.

Wire names for chapters follow the stored session document
(chapterNumber, time_range, key_quotes, isError, isManual) so archives written by
earlier versions of the app load unchanged.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

ROLE_USER = "user"
ROLE_MODEL = "model"
ROLE_SYSTEM = "system"
ARCHIVABLE_ROLES = (ROLE_USER, ROLE_MODEL)

# Chunk status values
PENDING = "pending"
PROCESSING = "processing"
SUCCESS = "success"
ERROR = "error"
SKIPPED = "skipped"
CHUNK_STATUSES = (PENDING, PROCESSING, SUCCESS, ERROR, SKIPPED)

# Run phases
IDLE = "idle"
REVIEWING = "reviewing"
RUNNING = "processing"
PAUSED = "paused"
COMPLETED = "completed"
PHASES = (IDLE, REVIEWING, RUNNING, PAUSED, COMPLETED)

_ROLE_ALIASES = {"assistant": ROLE_MODEL, "ai": ROLE_MODEL, "human": ROLE_USER}


def parse_timestamp(value: Any) -> datetime:
    """Accept datetimes, epoch seconds/milliseconds and ISO-8601 strings."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        secs = float(value)
        # Epoch milliseconds as stored by the browser app
        if secs > 1e11:
            secs = secs / 1000.0
        return datetime.fromtimestamp(secs, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported timestamp: {value!r}")


@dataclass(frozen=True)
class Message:
    id: str
    role: str
    content: str
    timestamp: datetime
    character_name: Optional[str] = None

    @property
    def epoch(self) -> float:
        return self.timestamp.timestamp()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        role = str(data.get("role", ROLE_USER)).strip().lower()
        role = _ROLE_ALIASES.get(role, role)
        return cls(
            id=str(data.get("id", "")),
            role=role,
            content=str(data.get("content") or ""),
            timestamp=parse_timestamp(data.get("timestamp")),
            character_name=data.get("characterName") or data.get("character_name"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.character_name:
            out["characterName"] = self.character_name
        return out


@dataclass(frozen=True)
class Watermark:
    """Last archived message. Timestamp filtering wins; the id is the fallback."""
    message_id: Optional[str] = None
    timestamp: Optional[float] = None

    @property
    def is_set(self) -> bool:
        return self.message_id is not None or self.timestamp is not None

    @classmethod
    def after(cls, message: Message) -> "Watermark":
        return cls(message_id=message.id, timestamp=message.epoch)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Watermark":
        if not data:
            return cls()
        ts = data.get("timestamp")
        return cls(
            message_id=data.get("messageId"),
            timestamp=float(ts) if ts is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"messageId": self.message_id, "timestamp": self.timestamp}


@dataclass
class Chunk:
    index: int
    display_id: int
    messages: List[Message]
    preview_text: str = ""
    selected: bool = True
    status: str = PENDING

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    def summary(self) -> Dict[str, Any]:
        """Durable per-chunk state; message bodies are rebuilt from the log on resume."""
        return {
            "index": self.index,
            "displayId": self.display_id,
            "selected": self.selected,
            "status": self.status,
            "msgCount": self.message_count,
        }


@dataclass
class Chapter:
    chapter_number: int
    title: str = ""
    time_range: str = ""
    narrative: str = ""
    key_quotes: List[str] = field(default_factory=list)
    is_error: bool = False
    # User-owned; run commits never replace it
    is_manual: bool = False

    def copy(self, **changes: Any) -> "Chapter":
        if "key_quotes" not in changes:
            changes["key_quotes"] = list(self.key_quotes)
        return replace(self, **changes)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], chapter_number: int) -> "Chapter":
        """Build from a backend JSON payload; the number always comes from the chunk."""
        quotes = payload.get("key_quotes") or []
        if isinstance(quotes, str):
            quotes = [quotes]
        return cls(
            chapter_number=int(chapter_number),
            title=str(payload.get("title") or ""),
            time_range=str(payload.get("time_range") or ""),
            narrative=str(payload.get("narrative") or ""),
            key_quotes=[str(q) for q in quotes],
            is_error=False,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fallback_number: int = 0) -> "Chapter":
        num = data.get("chapterNumber")
        return cls(
            chapter_number=int(num) if num is not None else int(fallback_number),
            title=str(data.get("title") or ""),
            time_range=str(data.get("time_range") or ""),
            narrative=str(data.get("narrative") or ""),
            key_quotes=[str(q) for q in (data.get("key_quotes") or [])],
            is_error=bool(data.get("isError", False)),
            is_manual=bool(data.get("isManual", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chapterNumber": self.chapter_number,
            "title": self.title,
            "time_range": self.time_range,
            "narrative": self.narrative,
            "key_quotes": list(self.key_quotes),
            "isError": self.is_error,
            "isManual": self.is_manual,
        }


@dataclass
class ModelConfig:
    model: str
    temperature: float = 0.3
    max_tokens: int = 2000
    user_name: str = "User"
    char_name: str = "AI"

    @classmethod
    def from_settings(cls, settings) -> "ModelConfig":
        return cls(
            model=settings.model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            user_name=settings.user_name,
            char_name=settings.char_name,
        )


@dataclass
class RunRecord:
    """Durable run state: enough to rebuild the same chunk list after a restart."""
    phase: str = IDLE
    anchor: Watermark = field(default_factory=Watermark)
    chunk_size: int = 0
    start_number: int = 1
    next_index: int = 0
    chunks: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_incomplete(self) -> bool:
        if not self.chunks:
            return False
        if self.phase == PAUSED:
            return True
        return self.phase == RUNNING and self.next_index > 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RunRecord":
        if not data:
            return cls()
        return cls(
            phase=str(data.get("phase", IDLE)),
            anchor=Watermark.from_dict(data.get("anchor")),
            chunk_size=int(data.get("chunkSize", 0)),
            start_number=int(data.get("startNumber", 1)),
            next_index=int(data.get("nextIndex", 0)),
            chunks=[dict(c) for c in (data.get("chunks") or [])],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "anchor": self.anchor.to_dict(),
            "chunkSize": self.chunk_size,
            "startNumber": self.start_number,
            "nextIndex": self.next_index,
            "chunks": [dict(c) for c in self.chunks],
        }


@dataclass
class Checkpoint:
    next_index: int = 0
    watermark: Watermark = field(default_factory=Watermark)
    chapters: List[Chapter] = field(default_factory=list)
    run: RunRecord = field(default_factory=RunRecord)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        chapters = [
            Chapter.from_dict(c, fallback_number=i + 1)
            for i, c in enumerate(data.get("chapters") or [])
        ]
        return cls(
            next_index=int(data.get("nextIndex", 0)),
            watermark=Watermark.from_dict(data.get("watermark")),
            chapters=chapters,
            run=RunRecord.from_dict(data.get("run")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nextIndex": self.next_index,
            "watermark": self.watermark.to_dict(),
            "chapters": [c.to_dict() for c in self.chapters],
            "run": self.run.to_dict(),
        }
