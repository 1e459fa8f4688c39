"""Run executor: the archiving state machine for one chat session.

Phases: idle -> reviewing -> processing <-> paused -> completed, and back to
idle on cancel/reset. The executor walks the chunk list strictly in order,
one backend call at a time, and checkpoints after every chunk.

Threading model:
- execute() runs the loop on the caller's thread; start() runs it on a
  background thread.
- pause() and cancel() only raise flags. The loop samples them between
  chunks, never during a backend call.
- One RLock per session serializes loop commits, retries, selection edits
  and direct archive edits. Backend calls happen outside the lock.
"""
from __future__ import annotations

import threading
from dataclasses import fields as dc_fields, replace as dc_replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from .archive import ArchiveStore
from .checkpoint import CheckpointStore, JsonFileCheckpointStore
from .chunker import chunk_messages, preview_for, unarchived_messages
from .config import ArchiverSettings
from .context import (
    ChapterLockedError,
    InvalidStateError,
    PersistenceError,
)
from .env import get_sessions_dir
from .logging import (
    breadcrumb as _breadcrumb,
    log_error_base as _log_error_base,
    log_run as _log_run,
    log_warning as _log_warning,
)
from .models import (
    COMPLETED,
    ERROR,
    IDLE,
    PAUSED,
    PENDING,
    PROCESSING,
    REVIEWING,
    RUNNING,
    SKIPPED,
    SUCCESS,
    Chapter,
    Chunk,
    Message,
    ModelConfig,
    RunRecord,
    Watermark,
)
from .processor import UnitProcessor
from .review import ReviewState

Observer = Callable[["RunExecutor"], None]


class RunExecutor:
    def __init__(
        self,
        session_id: str,
        load_messages: Callable[[], Sequence[Message]],
        *,
        adapter: Optional[CheckpointStore] = None,
        processor: Optional[UnitProcessor] = None,
        settings: Optional[ArchiverSettings] = None,
        model_config: Optional[ModelConfig] = None,
    ) -> None:
        self.session_id = session_id
        self._load_messages = load_messages
        self.settings = settings or ArchiverSettings.load()
        self.adapter = adapter or JsonFileCheckpointStore(get_sessions_dir(), retries=self.settings.checkpoint_retries)
        self.processor = processor or UnitProcessor(
            max_attempts=self.settings.max_attempts,
            base_delay=self.settings.backoff_base,
        )
        self.model_config = model_config or ModelConfig.from_settings(self.settings)
        self.lock = threading.RLock()
        self.last_error: Optional[BaseException] = None

        self._pause_event = threading.Event()
        self._cancel_event = threading.Event()
        self._observers: List[Observer] = []
        self._active: Optional[str] = None  # "run" | "auto" while a backend call may be in flight
        self._retrying: Set[int] = set()

        self._phase = IDLE
        self._review: Optional[ReviewState] = None
        self._next_index = 0
        self._progress = 0.0
        self._status = "Ready"

        checkpoint = self.adapter.load_checkpoint(session_id)
        self._record = checkpoint.run if checkpoint is not None else RunRecord()
        self.archive = ArchiveStore(
            session_id,
            self.adapter,
            chapters=checkpoint.chapters if checkpoint is not None else None,
            watermark=checkpoint.watermark if checkpoint is not None else None,
            lock=self.lock,
            is_locked=self._chapter_locked,
        )
        if self._record.is_incomplete:
            self._status = f"Interrupted run can resume at chunk {self._record.next_index + 1}."
        _breadcrumb(
            f"executor:init session={session_id} chapters={len(self.archive)} "
            f"resumable={self._record.is_incomplete}"
        )

    # ------------------------------------------------------------------
    # Observers and read-only state

    def subscribe(self, callback: Observer) -> Callable[[], None]:
        with self.lock:
            self._observers.append(callback)

        def _unsubscribe() -> None:
            with self.lock:
                if callback in self._observers:
                    self._observers.remove(callback)
        return _unsubscribe

    def _notify(self) -> None:
        for cb in list(self._observers):
            try:
                cb(self)
            except Exception as e:
                _log_warning(f"observer {getattr(cb, '__name__', cb)!r} failed: {e}")

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def progress_percent(self) -> float:
        return self._progress

    @property
    def status_text(self) -> str:
        return self._status

    @property
    def next_index(self) -> int:
        return self._next_index

    @property
    def chapters(self) -> List[Chapter]:
        return self.archive.chapters

    @property
    def chunks(self) -> List[Chunk]:
        with self.lock:
            return list(self._review.chunks) if self._review is not None else []

    def chunk_counts(self) -> Dict[str, int]:
        with self.lock:
            return self._review.counts() if self._review is not None else {}

    @property
    def watermark(self) -> Watermark:
        return self.archive.watermark

    @property
    def is_busy(self) -> bool:
        return self._active is not None or bool(self._retrying)

    @property
    def has_resumable_run(self) -> bool:
        return self._phase == PAUSED or self._record.is_incomplete

    def _chapter_locked(self, chapter_number: int) -> bool:
        if chapter_number in self._retrying:
            return True
        if self._review is None:
            return False
        return any(c.display_id == chapter_number and c.status == PROCESSING for c in self._review.chunks)

    # ------------------------------------------------------------------
    # Persistence helpers

    def _snapshot_record(self) -> RunRecord:
        chunks = self._review.chunks if self._review is not None else []
        return dc_replace(
            self._record,
            phase=self._phase,
            next_index=self._next_index,
            chunks=[c.summary() for c in chunks],
        )

    def _save_progress(self) -> None:
        record = self._snapshot_record()
        self.adapter.save_progress(self.session_id, self._next_index, self.archive.watermark, record)
        self._record = record

    def _update_progress(self) -> None:
        total = len(self._review) if self._review is not None else 0
        self._progress = (self._next_index / total) * 100.0 if total else 0.0

    # ------------------------------------------------------------------
    # Chunk list construction

    def _rebuild_from_record(self, record: RunRecord) -> ReviewState:
        """Recreate the chunk list a stored run was working on.

        Candidates are cut to the stored message total so messages that
        arrived after the run started do not shift chunk boundaries.
        """
        messages = self._load_messages()
        total = sum(int(c.get("msgCount", 0)) for c in record.chunks)
        candidates = unarchived_messages(messages, record.anchor)[:total]
        chunks = chunk_messages(
            candidates,
            record.chunk_size or self.settings.chunk_size,
            last_chapter_number=record.start_number - 1,
            preview_chars=self.settings.preview_chars,
        )
        if len(chunks) != len(record.chunks):
            _log_warning(
                f"resume: rebuilt {len(chunks)} chunks but the checkpoint recorded {len(record.chunks)}; "
                "messages may have been deleted since the run started"
            )
        stored = {int(c.get("displayId", -1)): c for c in record.chunks}
        for ch in chunks:
            info = stored.get(ch.display_id)
            if info is None:
                continue
            if int(info.get("msgCount", ch.message_count)) != ch.message_count:
                _log_warning(f"resume: chunk {ch.display_id} now has {ch.message_count} messages (was {info.get('msgCount')})")
            ch.selected = bool(info.get("selected", True))
            status = str(info.get("status", PENDING))
            # A crash mid-call leaves "processing" behind; that chunk is redone.
            ch.status = PENDING if status == PROCESSING else status
        return ReviewState(chunks, frozen=True)

    def _restore_incomplete(self) -> None:
        record = self._record
        self._review = self._rebuild_from_record(record)
        self._next_index = min(record.next_index, len(self._review))
        self._phase = PAUSED
        self._update_progress()
        _log_run(f"RESUME | session={self.session_id} next_index={self._next_index} chunks={len(self._review)}")

    # ------------------------------------------------------------------
    # Consumer surface

    def prepare_run(self, resume: bool = False) -> List[Chunk]:
        """Chunk the unarchived log and enter review, or resume an interrupted run.

        Raises EmptyInputError (phase unchanged) when nothing is left to archive.
        """
        with self.lock:
            if self._active is not None or self._retrying:
                raise InvalidStateError("Archiver is busy; wait for the current call to finish.")
            if resume and self.has_resumable_run:
                if self._phase != PAUSED:
                    self._restore_incomplete()
                resume_now = True
            else:
                if self._phase in (RUNNING, PAUSED):
                    raise InvalidStateError("A run is in progress; resume it or cancel it first.")
                messages = self._load_messages()
                chunks = chunk_messages(
                    messages,
                    self.settings.chunk_size,
                    watermark=self.archive.watermark,
                    last_chapter_number=self.archive.max_chapter_number(),
                    preview_chars=self.settings.preview_chars,
                )
                self._review = ReviewState(chunks)
                self._next_index = 0
                self._progress = 0.0
                self._phase = REVIEWING
                self._status = "Review Selection"
                self._record = RunRecord(
                    phase=REVIEWING,
                    anchor=self.archive.watermark,
                    chunk_size=self.settings.chunk_size,
                    start_number=chunks[0].display_id,
                )
                self._save_progress()
                _log_run(
                    f"PREPARE | session={self.session_id} chunks={len(chunks)} "
                    f"numbers={chunks[0].display_id}..{chunks[-1].display_id}"
                )
                self._notify()
                return list(chunks)
        if resume_now:
            self.execute()
        return self.chunks

    def toggle_selection(self, index: int) -> bool:
        with self.lock:
            self._require_phase(REVIEWING, "change the selection")
            selected = self._review.toggle_selection(index)
            self._notify()
            return selected

    def set_all_selection(self, selected: bool) -> None:
        with self.lock:
            self._require_phase(REVIEWING, "change the selection")
            self._review.set_all_selection(selected)
            self._notify()

    def set_model_config(self, **changes: Any) -> ModelConfig:
        """Takes effect from the next chunk; safe to call while paused or running."""
        known = {f.name for f in dc_fields(ModelConfig)}
        unknown = [k for k in changes if k not in known]
        if unknown:
            raise ValueError(f"Unknown model config fields: {', '.join(unknown)}")
        with self.lock:
            self.model_config = dc_replace(self.model_config, **changes)
            _breadcrumb(f"executor:model-config {changes}")
            return self.model_config

    def _require_phase(self, phase: str, action: str) -> None:
        if self._phase != phase or self._review is None:
            raise InvalidStateError(f"Cannot {action} in phase '{self._phase}'.")

    def execute(self) -> str:
        """Process chunks from next_index until done, paused or cancelled. Returns the final phase."""
        with self.lock:
            if self._active is not None or self._retrying:
                raise InvalidStateError("Archiver is busy; wait for the current call to finish.")
            if self._phase == IDLE and self._record.is_incomplete:
                self._restore_incomplete()
            if self._phase not in (REVIEWING, PAUSED):
                raise InvalidStateError(f"Cannot execute in phase '{self._phase}'; prepare a run first.")
            self._pause_event.clear()
            self._cancel_event.clear()
            prev_phase = self._phase
            self._phase = RUNNING
            try:
                self._save_progress()
            except PersistenceError:
                self._phase = prev_phase
                raise
            self._review.freeze()
            self._active = "run"
            self._status = "Processing chapters..."
            self._notify()
        try:
            self._loop()
        except PersistenceError as e:
            _log_error_base(f"checkpoint write failed; run paused at chunk {self._next_index + 1}: {e}")
            raise
        finally:
            with self.lock:
                self._active = None
        return self._phase

    def start(self) -> threading.Thread:
        """Run execute() on a background thread; errors land in last_error."""
        def _target() -> None:
            try:
                self.execute()
            except Exception as e:
                self.last_error = e
                _log_error_base(f"background run for session {self.session_id} failed: {e}")

        with self.lock:
            self.last_error = None
        t = threading.Thread(target=_target, name=f"archiver-{self.session_id}", daemon=True)
        t.start()
        return t

    def _loop(self) -> None:
        while True:
            with self.lock:
                if self._cancel_event.is_set():
                    self._clear_run("Cancelled by user.")
                    return
                total = len(self._review)
                i = self._next_index
                if i >= total:
                    self._phase = COMPLETED
                    self._progress = 100.0
                    self._status = "Archiving Complete!"
                    self._save_progress()
                    _log_run(f"COMPLETE | session={self.session_id} chunks={total} chapters={len(self.archive)}")
                    self._notify()
                    return
                chunk = self._review.chunks[i]
                if self._pause_event.is_set():
                    self._phase = PAUSED
                    self._status = f"Paused at Chapter {chunk.display_id}."
                    self._save_progress()
                    _log_run(f"PAUSE | session={self.session_id} next_index={i}")
                    self._notify()
                    return
                if not chunk.selected:
                    chunk.status = SKIPPED
                    self._next_index = i + 1
                    self._update_progress()
                    try:
                        self._save_progress()
                    except PersistenceError:
                        chunk.status = PENDING
                        self._next_index = i
                        self._update_progress()
                        self._phase = PAUSED
                        self._status = "Checkpoint write failed; run paused."
                        self._notify()
                        raise
                    self._notify()
                    continue
                chunk.status = PROCESSING
                self._status = f"Processing Chapter {chunk.display_id} (Msg count: {chunk.message_count})..."
                self._update_progress()
                config = dc_replace(self.model_config)
                self._notify()

            chapter = self.processor.process(chunk, config, cancel_event=self._cancel_event)

            with self.lock:
                if self._cancel_event.is_set() and chapter.is_error:
                    chunk.status = PENDING
                    continue
                self._commit(i, chunk, chapter)
                self._notify()

    def _commit(self, i: int, chunk: Chunk, chapter: Chapter) -> None:
        """Make one chunk's outcome durable, or roll it back and pause."""
        chapter.chapter_number = chunk.display_id
        prev_watermark = self.archive.watermark
        try:
            self.archive.replace(chunk.display_id, chapter)
            chunk.status = ERROR if chapter.is_error else SUCCESS
            self._next_index = i + 1
            if chunk.last_message is not None:
                self.archive.advance_watermark(Watermark.after(chunk.last_message))
            self._update_progress()
            self._save_progress()
        except PersistenceError:
            chunk.status = PENDING
            self._next_index = i
            self.archive.advance_watermark(prev_watermark)
            self._update_progress()
            self._phase = PAUSED
            self._status = f"Checkpoint write failed at Chapter {chunk.display_id}; run paused."
            self._notify()
            raise
        _log_run(
            f"COMMIT | session={self.session_id} chapter={chunk.display_id} "
            f"status={chunk.status} next_index={self._next_index}"
        )

    def pause(self) -> bool:
        """Request a pause at the next chunk boundary. Returns False when nothing is running."""
        with self.lock:
            if self._phase != RUNNING or self._active != "run":
                return False
            self._pause_event.set()
            self._status = "Pausing after current chapter..."
            self._notify()
            return True

    def cancel(self) -> None:
        """Stop the run and return to idle. Committed chapters are kept."""
        with self.lock:
            if self._active == "run":
                self._cancel_event.set()
                self._status = "Cancelling after current chapter..."
                self._notify()
                return
            self._clear_run("Cancelled by user.")

    def reset(self) -> None:
        with self.lock:
            if self._active == "run":
                self._cancel_event.set()
                return
            self._clear_run("Ready")

    def _clear_run(self, status: str) -> None:
        self._phase = IDLE
        self._review = None
        self._next_index = 0
        self._progress = 0.0
        self._status = status
        self._record = RunRecord()
        self._save_progress()
        _log_run(f"RESET | session={self.session_id} status={status}")
        self._notify()

    # ------------------------------------------------------------------
    # Retry of a single chunk

    def retry_chunk(self, index: int) -> Chapter:
        """Re-process one chunk and replace its chapter in place."""
        with self.lock:
            if self._active is not None:
                raise InvalidStateError("Cannot retry while a run is processing; pause it first.")
            if self._phase == REVIEWING:
                raise InvalidStateError("Cannot retry during review; start or cancel the run first.")
            if self._review is None and self._record.chunks:
                self._review = self._rebuild_from_record(self._record)
                self._next_index = min(self._record.next_index, len(self._review))
                if self._phase == IDLE and self._record.is_incomplete:
                    self._phase = PAUSED
                elif self._phase == IDLE and self._record.phase == COMPLETED:
                    self._phase = COMPLETED
                self._update_progress()
            if self._review is None:
                raise InvalidStateError("No chunk list to retry from; prepare a run first.")
            if index < 0 or index >= len(self._review):
                raise IndexError(f"No chunk at index {index} (have {len(self._review)})")
            chunk = self._review.chunks[index]
            if chunk.display_id in self._retrying:
                raise ChapterLockedError(f"Chapter {chunk.display_id} is already being retried.")
            if self._retrying:
                raise InvalidStateError("Another retry is in flight; wait for it to finish.")
            if index >= self._next_index or chunk.status not in (SUCCESS, ERROR, SKIPPED):
                raise InvalidStateError(
                    f"Chapter {chunk.display_id} has not been processed yet; resume the run instead of retrying it."
                )
            self._retrying.add(chunk.display_id)
            prev_status = chunk.status
            chunk.status = PROCESSING
            self._status = f"Retrying Chapter {chunk.display_id}..."
            config = dc_replace(self.model_config)
            self._notify()
        try:
            chapter = self.processor.process(chunk, config)
            with self.lock:
                chapter.chapter_number = chunk.display_id
                try:
                    self.archive.replace(chunk.display_id, chapter)
                except PersistenceError:
                    chunk.status = prev_status
                    self._status = f"Retry of Chapter {chunk.display_id} could not be saved."
                    raise
                chunk.status = ERROR if chapter.is_error else SUCCESS
                if chapter.is_error:
                    self._status = f"Retry failed for Chapter {chunk.display_id}."
                else:
                    self._status = f"Chapter {chunk.display_id} retried successfully."
                self._save_progress()
                _log_run(f"RETRY | session={self.session_id} chapter={chunk.display_id} status={chunk.status}")
                return chapter
        finally:
            with self.lock:
                self._retrying.discard(chunk.display_id)
                self._notify()

    def retry_chapter(self, chapter_number: int) -> Chapter:
        with self.lock:
            if self._review is None and self._record.chunks:
                matches = [int(c.get("index", -1)) for c in self._record.chunks if int(c.get("displayId", -1)) == chapter_number]
            elif self._review is not None:
                try:
                    matches = [self._review.by_display_id(chapter_number).index]
                except KeyError:
                    matches = []
            else:
                matches = []
            if not matches:
                raise InvalidStateError(f"Chapter {chapter_number} does not belong to the current run's chunks.")
        return self.retry_chunk(matches[0])

    # ------------------------------------------------------------------
    # Incremental (auto) archiving

    def pending_count(self) -> int:
        return len(unarchived_messages(self._load_messages(), self.archive.watermark))

    def auto_archive(self, force: bool = False) -> Optional[Chapter]:
        """Archive the next chunk of new messages as one chapter once enough have piled up.

        Without force this is a no-op unless auto-archiving is enabled and at
        least auto_archive_threshold messages follow the watermark. Never runs
        alongside a batch run (including a paused or interrupted one) or a retry.
        """
        with self.lock:
            if self.is_busy or self._phase in (RUNNING, REVIEWING, PAUSED) or self._record.is_incomplete:
                return None
            if not force and not self.settings.auto_archive_enabled:
                return None
            pending = unarchived_messages(self._load_messages(), self.archive.watermark)
            if not pending:
                return None
            if not force and len(pending) < self.settings.auto_archive_threshold:
                return None
            batch = pending[:self.settings.chunk_size]
            chunk = Chunk(
                index=0,
                display_id=self.archive.max_chapter_number() + 1,
                messages=batch,
                preview_text=preview_for(batch, self.settings.preview_chars),
            )
            self._active = "auto"
            self._status = "Auto-archiving next chapter in background..."
            config = dc_replace(self.model_config)
            self._notify()
        try:
            chapter = self.processor.process(chunk, config)
            with self.lock:
                if chapter.is_error:
                    _log_error_base(f"Auto-archiver failed for session {self.session_id}: {chapter.narrative}")
                    self._status = "Auto-archiver failed; messages stay pending."
                    return None
                # Manual inserts during the call may have taken the number.
                chapter.chapter_number = self.archive.max_chapter_number() + 1
                self.archive.append(chapter)
                self.archive.advance_watermark(Watermark.after(batch[-1]))
                self._save_progress()
                self._status = f"Chapter {chapter.chapter_number} archived successfully."
                _log_run(
                    f"AUTO | session={self.session_id} chapter={chapter.chapter_number} "
                    f"messages={len(batch)} pending_left={len(pending) - len(batch)}"
                )
                return chapter
        finally:
            with self.lock:
                self._active = None
                self._notify()

    # ------------------------------------------------------------------
    # Direct archive edits (serialized with the run through the shared lock)

    def insert_manual_chapter(self, chapter: Optional[Chapter] = None) -> Chapter:
        out = self.archive.insert_manual(chapter)
        self._notify()
        return out

    def edit_chapter(self, index: int, **fields: Any) -> Chapter:
        out = self.archive.edit(index, **fields)
        self._notify()
        return out

    def delete_chapter(self, index: int) -> Chapter:
        out = self.archive.delete(index)
        self._notify()
        return out

    def move_chapter(self, index: int, direction: str) -> int:
        out = self.archive.move(index, direction)
        self._notify()
        return out
