"""Error types and YAML loading utilities.

Contract:
- load_yaml(path: str) -> dict | list | scalar
- load_messages(path: str) -> List[Message]

This is the only module that performs YAML reads. Other modules accept
already-loaded objects and avoid YAML I/O.
"""
from __future__ import annotations
from pathlib import Path
from typing import List

import yaml
from yaml.loader import SafeLoader as _PySafeLoader

from .logging import breadcrumb as _breadcrumb, log_run as _log_run


class ChroniclerError(Exception):
    pass


class ConfigError(ChroniclerError):
    pass


class MissingFileError(ChroniclerError):
    pass


class InvalidYAMLError(ChroniclerError):
    pass


class EmptyInputError(ChroniclerError):
    """No candidate messages remain after the watermark.

    Callers treat this as "nothing to do", not as a processing failure.
    """
    pass


class InvalidStateError(ChroniclerError):
    """An operation was requested in a phase that does not allow it."""
    pass


class ChapterLockedError(ChroniclerError):
    """The chapter's chunk is being processed or retried right now."""
    pass


class PersistenceError(ChroniclerError):
    pass


class CorruptCheckpointError(PersistenceError):
    pass


class BackendError(ChroniclerError):
    pass


class MalformedOutputError(BackendError):
    pass


def _yaml_load_py(content: str):
    return yaml.load(content, Loader=_PySafeLoader)


def load_yaml(path: str):
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
        _breadcrumb(f"yaml:read:{path}")
    except FileNotFoundError:
        _breadcrumb(f"yaml:error:not_found:{path}")
        raise MissingFileError(f"Required file not found: {path}")
    except Exception as e:
        _breadcrumb(f"yaml:error:read_failure:{path}")
        raise ChroniclerError(f"Unable to read file {path}: {e}")
    try:
        data = _yaml_load_py(content)
        _log_run(f"YAML OK Parsed: {path}")
        return data
    except yaml.YAMLError as e:  # type: ignore[attr-defined]
        _log_run(f"YAML ERROR InvalidYAML: {path} :: {e}")
        raise InvalidYAMLError(f"Invalid YAML in {path}: {e}")


def load_messages(path: str) -> List["Message"]:
    """Load a message log from a JSON or YAML file.

    Accepts either a top-level list of message mappings or a mapping with a
    'messages' list. JSON parses as YAML, so one loader covers both.
    """
    from .models import Message  # lazy import to avoid cycles
    data = load_yaml(path)
    if isinstance(data, dict):
        data = data.get("messages")
    if not isinstance(data, list):
        raise InvalidYAMLError(f"Expected a list of messages in {path}")
    messages: List[Message] = []
    for pos, item in enumerate(data):
        if not isinstance(item, dict):
            raise InvalidYAMLError(f"Message #{pos} in {path} is not a mapping")
        messages.append(Message.from_dict(item))
    _breadcrumb(f"messages:loaded path={Path(path).name} count={len(messages)}")
    return messages
