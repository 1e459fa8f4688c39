"""Chronicler CLI entrypoint.

Usage:
  chronicler run <messages.json> [--session ID] [--resume] [--skip N,M] [--chunk-size N]
  chronicler retry <messages.json> --chapter N [--session ID]
  chronicler auto <messages.json> [--session ID] [--force]
  chronicler export --session ID [-o story.md]
  chronicler status [--session ID]
  chronicler story {list,delete,move,add} --session ID ...
  chronicler env

Messages are read from a JSON file (a list, or {"messages": [...]}). The
session id defaults to the file stem. Archives live under
$CHR_DATA_DIR/sessions.
"""
from __future__ import annotations

import argparse
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import List, Optional

from .artifacts import format_story, write_story_markdown
from .checkpoint import JsonFileCheckpointStore
from .config import ArchiverSettings
from .context import ChroniclerError, EmptyInputError, load_messages
from .env import collect_program_env_snapshot, get_data_dir, get_sessions_dir, load_env
from .executor import RunExecutor
from .logging import breadcrumb as _breadcrumb
from .logging import init_run_logs as _init_run_logs, log_run as _log_run
from .resume import scan_sessions
from .openai import get_model
from .utils import to_text, truncate


def _parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="chronicler", description="Archive chat logs into narrative chapters")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="Chunk unarchived messages and archive the selected chunks")
    p_run.add_argument("messages_path", help="Path to the chat log JSON")
    p_run.add_argument("--session", dest="session", help="Session id (default: messages file stem)")
    p_run.add_argument("--resume", action="store_true", help="Resume an interrupted run if one exists")
    p_run.add_argument("--skip", dest="skip", default="", help="Comma-separated chapter numbers to leave out")
    p_run.add_argument("--chunk-size", dest="chunk_size", type=int, help="Messages per chapter")

    p_retry = sub.add_parser("retry", help="Re-process one chapter of the last run in place")
    p_retry.add_argument("messages_path")
    p_retry.add_argument("--session", dest="session")
    p_retry.add_argument("--chapter", dest="chapter", type=int, required=True)

    p_auto = sub.add_parser("auto", help="Archive the next chunk if enough new messages piled up")
    p_auto.add_argument("messages_path")
    p_auto.add_argument("--session", dest="session")
    p_auto.add_argument("--force", action="store_true", help="Ignore the threshold")

    p_export = sub.add_parser("export", help="Write the story as Markdown")
    p_export.add_argument("--session", dest="session", required=True)
    p_export.add_argument("-o", "--output", dest="output", help="Output path (default: stdout)")

    p_status = sub.add_parser("status", help="Show stored sessions or one session's run state")
    p_status.add_argument("--session", dest="session")

    sub.add_parser("env", help="Show the effective configuration (secrets masked)")

    p_story = sub.add_parser("story", help="Edit the chapter list")
    p_story.add_argument("action", choices=["list", "delete", "move", "add"])
    p_story.add_argument("--session", dest="session", required=True)
    p_story.add_argument("--index", dest="index", type=int, help="Chapter position (0-based)")
    p_story.add_argument("--direction", dest="direction", choices=["up", "down"])
    p_story.add_argument("--title", dest="title")
    p_story.add_argument("--narrative", dest="narrative")

    return parser.parse_args(argv)


def _session_for(ns: argparse.Namespace) -> str:
    if getattr(ns, "session", None):
        return str(ns.session)
    return Path(ns.messages_path).stem


def _build_executor(session_id: str, messages_path: Optional[str], settings: ArchiverSettings) -> RunExecutor:
    adapter = JsonFileCheckpointStore(get_sessions_dir(), retries=settings.checkpoint_retries)

    def _loader():
        if messages_path is None:
            raise ChroniclerError("This command needs a messages file.")
        return load_messages(messages_path)

    return RunExecutor(session_id, _loader, adapter=adapter, settings=settings)


def _print_progress(ex: RunExecutor) -> None:
    print(f"[{ex.progress_percent:5.1f}%] {ex.status_text}")


def _parse_skip(raw: str) -> List[int]:
    out: List[int] = []
    for tok in (raw or "").split(","):
        tok = tok.strip()
        if not tok:
            continue
        try:
            out.append(int(tok))
        except ValueError:
            raise ChroniclerError(f"--skip expects chapter numbers, got {tok!r}")
    return out


def _cmd_run(ns: argparse.Namespace, settings: ArchiverSettings) -> int:
    if ns.chunk_size:
        settings = settings.merged({"chunk_size": ns.chunk_size})
    ex = _build_executor(_session_for(ns), ns.messages_path, settings)
    ex.subscribe(_print_progress)
    if ns.resume and ex.has_resumable_run:
        ex.prepare_run(resume=True)
    else:
        chunks = ex.prepare_run()
        skip = set(_parse_skip(ns.skip))
        for ch in chunks:
            print(f"  #{ch.display_id}  {ch.message_count:3d} msgs  {truncate(ch.preview_text, 50)}")
            if ch.display_id in skip:
                ex.toggle_selection(ch.index)
        ex.execute()
    counts = {k: v for k, v in ex.chunk_counts().items() if v}
    errors = [c.chapter_number for c in ex.archive.error_chapters()]
    print(f"Archive has {len(ex.chapters)} chapter(s). Chunks: {counts}")
    if errors:
        print(f"Chapters needing retry: {', '.join(str(n) for n in errors)}")
    return 0


def _cmd_retry(ns: argparse.Namespace, settings: ArchiverSettings) -> int:
    ex = _build_executor(_session_for(ns), ns.messages_path, settings)
    chapter = ex.retry_chapter(ns.chapter)
    state = "failed again" if chapter.is_error else "succeeded"
    print(f"Retry of chapter {chapter.chapter_number} {state}: {chapter.title}")
    return 1 if chapter.is_error else 0


def _cmd_auto(ns: argparse.Namespace, settings: ArchiverSettings) -> int:
    ex = _build_executor(_session_for(ns), ns.messages_path, settings.merged({"auto_archive_enabled": True}))
    chapter = ex.auto_archive(force=bool(ns.force))
    if chapter is None:
        print(f"No chapter archived ({ex.pending_count()} message(s) pending).")
        return 0
    print(f"Archived chapter {chapter.chapter_number}: {chapter.title}")
    return 0


def _cmd_export(ns: argparse.Namespace, settings: ArchiverSettings) -> int:
    ex = _build_executor(ns.session, None, settings)
    if ns.output:
        path = write_story_markdown(ns.output, ex.chapters)
        print(f"Wrote {len(ex.chapters)} chapter(s) to {path}")
    else:
        sys.stdout.write(format_story(ex.chapters))
    return 0


def _cmd_status(ns: argparse.Namespace, settings: ArchiverSettings) -> int:
    sessions = scan_sessions(get_sessions_dir())
    if ns.session:
        sessions = {k: v for k, v in sessions.items() if k == ns.session}
    if not sessions:
        print("No archived sessions.")
        return 0
    for name, info in sessions.items():
        flag = "  (resumable)" if info["resumable"] else ""
        print(
            f"{name}: phase={info['phase']} chapters={info['chapters']} errors={info['errors']} "
            f"next={info['next_index']}/{info['chunks']}{flag}"
        )
    return 0


def _cmd_env(ns: argparse.Namespace, settings: ArchiverSettings) -> int:
    snapshot = collect_program_env_snapshot(get_model)
    snapshot["settings"] = asdict(settings)
    print(to_text(snapshot))
    return 0


def _cmd_story(ns: argparse.Namespace, settings: ArchiverSettings) -> int:
    ex = _build_executor(ns.session, None, settings)
    if ns.action == "list":
        for pos, c in enumerate(ex.chapters):
            mark = " [ERROR]" if c.is_error else ""
            print(f"{pos:3d}. Chapter {c.chapter_number}: {c.title}{mark}")
        return 0
    if ns.action == "add":
        chapter = ex.insert_manual_chapter()
        changes = {}
        if ns.title:
            changes["title"] = ns.title
        if ns.narrative:
            changes["narrative"] = ns.narrative
        if changes:
            chapter = ex.edit_chapter(len(ex.chapters) - 1, **changes)
        print(f"Added chapter {chapter.chapter_number}: {chapter.title}")
        return 0
    if ns.index is None:
        raise ChroniclerError(f"story {ns.action} needs --index")
    if ns.action == "delete":
        removed = ex.delete_chapter(ns.index)
        print(f"Deleted chapter {removed.chapter_number}: {removed.title}")
        return 0
    if not ns.direction:
        raise ChroniclerError("story move needs --direction up|down")
    dest = ex.move_chapter(ns.index, ns.direction)
    print(f"Chapter moved to position {dest}")
    return 0


_COMMANDS = {
    "run": _cmd_run,
    "retry": _cmd_retry,
    "auto": _cmd_auto,
    "export": _cmd_export,
    "status": _cmd_status,
    "story": _cmd_story,
    "env": _cmd_env,
}


def _enable_crash_trace() -> None:
    if os.getenv("CHR_CRASH_TRACE", "0") != "1":
        return
    import faulthandler as _faulthandler
    crash_log_file = get_data_dir() / "crash_trace.log"
    crash_log_file.parent.mkdir(parents=True, exist_ok=True)
    os.environ["CHR_CRASH_TRACE_FILE"] = str(crash_log_file)
    fh = open(crash_log_file, "a", encoding="utf-8")
    _faulthandler.enable(file=fh, all_threads=True)
    _breadcrumb("crash:enabled")


def main(argv: List[str] | None = None) -> int:
    load_env()
    argv_list = list(sys.argv[1:] if argv is None else argv)
    ns = _parse_args(argv_list)
    handler = _COMMANDS.get(ns.cmd or "")
    if handler is None:
        print("Usage: chronicler {run,retry,auto,export,status,story,env} ... (see --help)")
        return 1

    _init_run_logs()
    _enable_crash_trace()
    _log_run(f"=== START {ns.cmd} === argv={' '.join(argv_list)}")
    try:
        settings = ArchiverSettings.load()
        return handler(ns, settings)
    except EmptyInputError as e:
        print(f"Nothing to archive: {e}")
        return 0
    except (ChroniclerError, IndexError, ValueError) as e:
        print(f"Error: {e}")
        return 2


if __name__ == "__main__":
    code = main()
    raise SystemExit(code)
