"""Unit processor: one chunk in, one chapter out.

Wraps the generation backend with retry/backoff and the output normalizer.
Backend, transport and parse failures are absorbed here: after the last
attempt the caller receives a placeholder chapter flagged is_error, never an
exception. Nothing in this module touches persistence.
"""
from __future__ import annotations

import threading
import time
from typing import Callable, List, Optional

from .context import MalformedOutputError
from .logging import breadcrumb as _breadcrumb, log_run as _log_run, log_warning as _log_warning
from .models import ROLE_USER, Chapter, Chunk, ModelConfig
from .normalizer import parse_json_payload
from .openai import GenerationRequest, OpenAIBackend
from .validation import validate_chapter_payload

CHAPTER_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string", "description": "An abstract, artistic title for the chapter."},
        "time_range": {"type": "string", "description": "The specific date and time range of the events."},
        "narrative": {"type": "string", "description": "A detailed third-person summary of the events."},
        "key_quotes": {
            "type": "array",
            "items": {"type": "string"},
            "description": "List of up to 5 exact quotes from the conversation.",
        },
    },
    "required": ["title", "time_range", "narrative", "key_quotes"],
    "additionalProperties": False,
}

ERROR_TITLE = "Processing Error (Skipped)"
ERROR_QUOTES = ["Error: Content Skipped"]


def build_transcript(chunk: Chunk, config: ModelConfig) -> str:
    lines: List[str] = []
    for m in chunk.messages:
        speaker = config.user_name if m.role == ROLE_USER else (m.character_name or config.char_name)
        lines.append(f"[{speaker} ({m.timestamp.strftime('%H:%M:%S')})]: {m.content}")
    return "\n\n".join(lines)


def participants_for(chunk: Chunk, config: ModelConfig) -> List[str]:
    names = [config.user_name]
    for m in chunk.messages:
        if m.role != ROLE_USER:
            name = m.character_name or config.char_name
            if name not in names:
                names.append(name)
    if len(names) == 1:
        names.append(config.char_name)
    return names


def error_chapter(chapter_number: int, reason: str) -> Chapter:
    return Chapter(
        chapter_number=chapter_number,
        title=ERROR_TITLE,
        time_range="Unknown",
        narrative=(
            "[SYSTEM ERROR] The model refused to process this segment or the API failed "
            f"after multiple attempts.\nReason: {reason or 'Unknown error'}.\n"
            "This part of the archive is missing, but processing continued for subsequent chapters."
        ),
        key_quotes=list(ERROR_QUOTES),
        is_error=True,
    )


class UnitProcessor:
    """Process chunks sequentially against a backend with bounded retries.

    Between attempts the processor waits base_delay * 2 ** (attempt - 1)
    seconds (1s, 2s with the defaults). An injected sleep callable always
    performs the wait, and the cancel_event is checked when it returns.
    Without one, the wait blocks on the cancel_event itself, so a cancel
    during backoff stops retrying at once.
    """

    def __init__(
        self,
        backend=None,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.backend = backend if backend is not None else OpenAIBackend()
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = float(base_delay)
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))

    def _wait(self, seconds: float, cancel_event: Optional[threading.Event]) -> bool:
        """Return True when the run was cancelled during (or before) the wait."""
        if self._sleep is not None:
            self._sleep(seconds)
            return cancel_event is not None and cancel_event.is_set()
        if cancel_event is not None:
            return cancel_event.wait(seconds)
        time.sleep(seconds)
        return False

    def _attempt(self, chunk: Chunk, config: ModelConfig, attempt: int) -> Chapter:
        request = GenerationRequest(
            transcript=build_transcript(chunk, config),
            participants=participants_for(chunk, config),
            schema=CHAPTER_SCHEMA,
            model_config=config,
            tag=f"chapter={chunk.display_id} attempt={attempt}",
        )
        raw = self.backend.generate(request)
        if not raw or not str(raw).strip():
            raise MalformedOutputError("Empty response from archiver model")
        payload = parse_json_payload(str(raw))
        ok, reason = validate_chapter_payload(payload)
        if not ok:
            raise MalformedOutputError(reason)
        return Chapter.from_payload(payload, chunk.display_id)

    def process(self, chunk: Chunk, config: ModelConfig, *, cancel_event: Optional[threading.Event] = None) -> Chapter:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                chapter = self._attempt(chunk, config, attempt)
                _breadcrumb(f"processor:ok chapter={chunk.display_id} attempt={attempt}")
                return chapter
            except Exception as e:
                # Every backend failure class is treated the same: retry, then placeholder.
                last_error = e
                _log_warning(
                    f"Archiving chunk failed (chapter {chunk.display_id}, attempt {attempt}/{self.max_attempts}): "
                    f"{type(e).__name__}: {e}"
                )
            if attempt < self.max_attempts:
                if self._wait(self.backoff_delay(attempt), cancel_event):
                    _breadcrumb(f"processor:cancelled-during-backoff chapter={chunk.display_id}")
                    break
        reason = str(last_error) if last_error is not None else "Cancelled"
        _log_run(f"ERROR: all retries failed for chapter {chunk.display_id}; returning placeholder ({reason})")
        return error_chapter(chunk.display_id, reason)
