from pathlib import Path

from conftest import make_messages
from chronicler import cli
from chronicler.checkpoint import JsonFileCheckpointStore
from chronicler.env import get_sessions_dir


def test_run_export_and_story_in_mock_mode(messages_file, tmp_path: Path, capsys, monkeypatch):
    monkeypatch.setenv("CHR_BACKOFF_BASE", "0")
    path = messages_file(make_messages(7))
    assert cli.main(["run", str(path), "--chunk-size", "3", "--skip", "2"]) == 0
    out = capsys.readouterr().out
    assert "Archive has 2 chapter(s)." in out

    stored = JsonFileCheckpointStore(get_sessions_dir()).load_checkpoint("chat")
    assert [c.chapter_number for c in stored.chapters] == [1, 3]
    assert stored.chapters[0].title.startswith("[MOCK] Chapter")

    story = tmp_path / "story.md"
    assert cli.main(["export", "--session", "chat", "-o", str(story)]) == 0
    assert "## Chapter 3:" in story.read_text(encoding="utf-8")

    assert cli.main(["story", "add", "--session", "chat", "--title", "Epilogue"]) == 0
    assert cli.main(["story", "move", "--session", "chat", "--index", "2", "--direction", "up"]) == 0
    capsys.readouterr()
    assert cli.main(["story", "list", "--session", "chat"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert "Epilogue" in lines[1]

    assert cli.main(["status"]) == 0
    assert "chat: phase=completed" in capsys.readouterr().out


def test_nothing_to_archive_exits_zero(messages_file, capsys):
    path = messages_file([])
    assert cli.main(["run", str(path)]) == 0
    assert "Nothing to archive" in capsys.readouterr().out


def test_errors_map_to_exit_code_two(tmp_path: Path, capsys):
    assert cli.main(["run", str(tmp_path / "missing.json")]) == 2
    assert capsys.readouterr().out.startswith("Error:")
    assert cli.main(["story", "delete", "--session", "chat"]) == 2


def test_auto_command_archives_when_forced(messages_file, capsys):
    path = messages_file(make_messages(2))
    assert cli.main(["auto", str(path)]) == 0
    assert "No chapter archived (2 message(s) pending)." in capsys.readouterr().out
    assert cli.main(["auto", str(path), "--force"]) == 0
    assert "Archived chapter 1" in capsys.readouterr().out


def test_env_command_masks_secrets(monkeypatch, capsys):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-1234567890")
    assert cli.main(["env"]) == 0
    out = capsys.readouterr().out
    assert "sk-test" not in out
    assert "7890" in out
    assert '"chunk_size": 30' in out
