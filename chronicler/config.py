"""Archiver configuration.

Defaults live here as constants; ArchiverSettings.load() resolves them from
the environment (CHR_*) and then overlays an optional ARCHIVER.yaml found in
the data directory. Keeping these in one place avoids duplication across the
executor, the processor and the CLI.
"""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from .env import env_int, env_float, env_bool, env_str, env_for, get_config_path
from .context import ConfigError, load_yaml
from .logging import breadcrumb as _breadcrumb

DEFAULT_CHUNK_SIZE = 30
DEFAULT_AUTO_ARCHIVE_THRESHOLD = 40
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_PREVIEW_CHARS = 60
DEFAULT_CHECKPOINT_RETRIES = 2
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 2000

# Step key used for CHR_MODEL_ARCHIVE / CHR_TEMP_ARCHIVE / CHR_MAX_TOKENS_ARCHIVE
ARCHIVE_STEP = "ARCHIVE"


@dataclass(frozen=True)
class ArchiverSettings:
    chunk_size: int = DEFAULT_CHUNK_SIZE
    auto_archive_threshold: int = DEFAULT_AUTO_ARCHIVE_THRESHOLD
    auto_archive_enabled: bool = False
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE
    preview_chars: int = DEFAULT_PREVIEW_CHARS
    checkpoint_retries: int = DEFAULT_CHECKPOINT_RETRIES
    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    user_name: str = "User"
    char_name: str = "AI"

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ConfigError(f"chunk_size must be >= 1 (got {self.chunk_size})")
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be >= 1 (got {self.max_attempts})")
        if self.auto_archive_threshold < 1:
            raise ConfigError(f"auto_archive_threshold must be >= 1 (got {self.auto_archive_threshold})")
        if self.backoff_base < 0:
            raise ConfigError(f"backoff_base must be >= 0 (got {self.backoff_base})")

    @classmethod
    def from_env(cls) -> "ArchiverSettings":
        model, temp, max_tokens = env_for(ARCHIVE_STEP, default_temp=DEFAULT_TEMPERATURE, default_max_tokens=DEFAULT_MAX_TOKENS)
        return cls(
            chunk_size=env_int("CHR_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
            auto_archive_threshold=env_int("CHR_AUTO_ARCHIVE_THRESHOLD", DEFAULT_AUTO_ARCHIVE_THRESHOLD),
            auto_archive_enabled=env_bool("CHR_AUTO_ARCHIVE", False),
            max_attempts=env_int("CHR_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            backoff_base=env_float("CHR_BACKOFF_BASE", DEFAULT_BACKOFF_BASE),
            preview_chars=env_int("CHR_PREVIEW_CHARS", DEFAULT_PREVIEW_CHARS),
            checkpoint_retries=env_int("CHR_CHECKPOINT_RETRIES", DEFAULT_CHECKPOINT_RETRIES),
            model=model or env_str("CHR_MODEL_DEFAULT") or env_str("OPENAI_MODEL") or DEFAULT_MODEL,
            temperature=temp,
            max_tokens=max_tokens,
            user_name=env_str("CHR_USER_NAME") or "User",
            char_name=env_str("CHR_CHAR_NAME") or "AI",
        )

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "ArchiverSettings":
        """Environment first, then ARCHIVER.yaml overrides when the file exists."""
        settings = cls.from_env()
        path = config_path or str(get_config_path())
        if not Path(path).exists():
            return settings
        data = load_yaml(path)
        if data is None:
            return settings
        if not isinstance(data, dict):
            raise ConfigError(f"ARCHIVER.yaml must be a mapping: {path}")
        section = data.get("archiver", data)
        if not isinstance(section, dict):
            raise ConfigError(f"'archiver' section must be a mapping: {path}")
        _breadcrumb(f"config:overlay path={path} keys={sorted(section.keys())}")
        return settings.merged(section)

    def merged(self, overrides: Dict[str, Any]) -> "ArchiverSettings":
        known = {f.name: f.type for f in fields(self)}
        clean: Dict[str, Any] = {}
        for k, v in (overrides or {}).items():
            key = str(k).strip().replace("-", "_")
            if key not in known:
                raise ConfigError(f"Unknown archiver setting: {k}")
            if v is None:
                continue
            current = getattr(self, key)
            try:
                if isinstance(current, bool):
                    clean[key] = v if isinstance(v, bool) else str(v).strip().lower() in ("1", "true", "yes", "on")
                elif isinstance(current, int):
                    clean[key] = int(v)
                elif isinstance(current, float):
                    clean[key] = float(v)
                else:
                    clean[key] = str(v)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid value for {key}: {v!r} ({e})")
        return replace(self, **clean)
