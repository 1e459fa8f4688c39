import threading

from conftest import FailingForChapter, ScriptedBackend, good_payload, make_messages
from chronicler.models import Chunk, ModelConfig
from chronicler.openai import OpenAIBackend, GenerationRequest
from chronicler.processor import (
    CHAPTER_SCHEMA,
    ERROR_QUOTES,
    ERROR_TITLE,
    build_transcript,
    participants_for,
)


def _chunk(display_id: int = 3, n: int = 4) -> Chunk:
    return Chunk(index=0, display_id=display_id, messages=make_messages(n), preview_text="")


def _config() -> ModelConfig:
    return ModelConfig(model="test-model", user_name="Ann", char_name="Bot")


def test_transcript_lines_use_speaker_and_time():
    text = build_transcript(_chunk(n=2), _config())
    assert text.split("\n\n") == ["[Ann (12:00:00)]: line 0", "[Bot (12:01:00)]: line 1"]
    assert participants_for(_chunk(n=2), _config()) == ["Ann", "Bot"]


def test_success_uses_chunk_display_id(make_processor, sleeps):
    backend = ScriptedBackend(lambda req, n: '```json\n{"title": "T", "time_range": "r", "narrative": "n", "key_quotes": "q"}\n```')
    chapter = make_processor(backend).process(_chunk(display_id=7), _config())
    assert chapter.chapter_number == 7
    assert chapter.title == "T"
    assert chapter.key_quotes == ["q"]
    assert not chapter.is_error
    assert sleeps == []
    assert backend.calls[0].schema is CHAPTER_SCHEMA


def test_retries_then_succeeds_with_backoff(make_processor, sleeps):
    def responder(req, n):
        if n < 3:
            raise RuntimeError("503")
        return good_payload("Third time")
    backend = ScriptedBackend(responder)
    chapter = make_processor(backend, max_attempts=3, base_delay=1.0).process(_chunk(), _config())
    assert chapter.title == "Third time"
    assert sleeps == [1.0, 2.0]


def test_exhausted_retries_return_placeholder(make_processor, sleeps):
    backend = FailingForChapter({3})
    chapter = make_processor(backend, max_attempts=3).process(_chunk(display_id=3), _config())
    assert chapter.is_error
    assert chapter.chapter_number == 3
    assert chapter.title == ERROR_TITLE
    assert chapter.key_quotes == ERROR_QUOTES
    assert "backend down for chapter 3" in chapter.narrative
    assert len(backend.calls) == 3
    # no wait after the final attempt
    assert sleeps == [1.0, 2.0]


def test_invalid_payload_counts_as_failure(make_processor):
    backend = ScriptedBackend(lambda req, n: '{"title": "only a title"}')
    chapter = make_processor(backend, max_attempts=2).process(_chunk(), _config())
    assert chapter.is_error
    assert len(backend.calls) == 2


def test_cancel_during_backoff_stops_retrying(make_processor):
    backend = FailingForChapter({3})
    cancel = threading.Event()
    cancel.set()
    chapter = make_processor(backend, max_attempts=3).process(_chunk(display_id=3), _config(), cancel_event=cancel)
    assert chapter.is_error
    assert len(backend.calls) == 1


def test_backend_mock_mode_is_deterministic():
    req = GenerationRequest(
        transcript=build_transcript(_chunk(n=2), _config()),
        participants=["Ann", "Bot"],
        schema=CHAPTER_SCHEMA,
        model_config=_config(),
    )
    backend = OpenAIBackend()
    first = backend.generate(req)
    assert first == backend.generate(req)
    assert "[MOCK]" in first
