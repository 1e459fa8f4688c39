import json
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional

import pytest

# Load a test-specific environment file so pytest runs are consistent locally and in VS Code
try:
    from dotenv import load_dotenv
    _root = Path(__file__).resolve().parents[1]
    _env_test = _root / ".env.test"
    if _env_test.exists():
        load_dotenv(dotenv_path=_env_test, override=True)
except Exception:
    # Non-fatal if dotenv is unavailable; tests also work without it
    pass

from chronicler.config import ArchiverSettings
from chronicler.models import Message
from chronicler.openai import reset_client
from chronicler.processor import UnitProcessor

_BASE_TS = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_messages(n: int, *, start: int = 0, prefix: str = "m") -> List[Message]:
    out = []
    for i in range(start, start + n):
        out.append(Message(
            id=f"{prefix}{i}",
            role="user" if i % 2 == 0 else "model",
            content=f"line {i}",
            timestamp=_BASE_TS + timedelta(minutes=i),
        ))
    return out


def good_payload(title: str = "A Chapter") -> str:
    return json.dumps({
        "title": title,
        "time_range": "May 1, 12:00 - 12:30",
        "narrative": f"Things happened in {title}.",
        "key_quotes": ["hello"],
    })


class ScriptedBackend:
    """Fake backend: responder(request, call_no) -> raw text, or raises."""

    def __init__(self, responder: Optional[Callable] = None) -> None:
        self.calls: List = []
        self._lock = threading.Lock()
        self._responder = responder or (lambda req, n: good_payload(f"Chapter for {req.tag.split()[0]}"))

    def generate(self, request) -> str:
        with self._lock:
            self.calls.append(request)
            n = len(self.calls)
        return self._responder(request, n)

    def chapters_called(self) -> List[str]:
        return [r.tag.split()[0] for r in self.calls]


class FailingForChapter(ScriptedBackend):
    """Always fails for the given chapter numbers; succeeds elsewhere."""

    def __init__(self, failing) -> None:
        self.failing = set(failing)
        super().__init__(self._respond)

    def _respond(self, req, n):
        num = int(req.tag.split()[0].split("=")[1])
        if num in self.failing:
            raise RuntimeError(f"backend down for chapter {num}")
        return good_payload(f"Chapter {num}")


class GatedBackend(ScriptedBackend):
    """Blocks each call until release() so tests can act mid-chunk."""

    def __init__(self) -> None:
        super().__init__(self._respond)
        self.entered = threading.Event()
        self.gate = threading.Event()

    def _respond(self, req, n):
        self.entered.set()
        assert self.gate.wait(5), "gate never released"
        return good_payload(f"Gated {n}")

    def release(self) -> None:
        self.gate.set()


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    # Keep logs and sessions inside the test sandbox, and never reach the network
    monkeypatch.setenv("CHR_DATA_DIR", str(tmp_path / "data"))
    for k in ("OPENAI_API_KEY", "AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_API_BASE", "OPENAI_BASE_URL",
              "OPENAI_API_BASE", "CHR_CONFIG_PATH", "CHR_CHUNK_SIZE", "CHR_AUTO_ARCHIVE",
              "CHR_AUTO_ARCHIVE_THRESHOLD", "CHR_VERBOSE", "CHR_CRASH_TRACE_FILE"):
        monkeypatch.delenv(k, raising=False)
    reset_client()
    yield
    reset_client()


@pytest.fixture()
def settings() -> ArchiverSettings:
    return ArchiverSettings(chunk_size=3, auto_archive_threshold=4, max_attempts=3, backoff_base=0.0)


@pytest.fixture()
def sleeps() -> List[float]:
    return []


@pytest.fixture()
def make_processor(sleeps):
    def _make(backend, max_attempts: int = 3, base_delay: float = 1.0) -> UnitProcessor:
        return UnitProcessor(backend, max_attempts=max_attempts, base_delay=base_delay, sleep=sleeps.append)
    return _make


@pytest.fixture()
def messages_file(tmp_path: Path):
    def _write(msgs: List[Message], name: str = "chat.json") -> Path:
        p = tmp_path / name
        p.write_text(json.dumps({"messages": [m.to_dict() for m in msgs]}), encoding="utf-8")
        return p
    return _write
