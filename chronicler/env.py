"""Environment helpers for Chronicler.

Centralizes reading environment variables, resolving model/token settings
for the archive step, masking secrets for logging, normalizing base URLs,
and capturing a program environment snapshot for diagnostics.
"""
from __future__ import annotations

import os
import re
from typing import Optional, Dict, Any, List, Tuple
from pathlib import Path

from dotenv import load_dotenv


def load_env() -> None:
    """Load environment variables from a local .env file if present.

    We set override=True so the local .env takes precedence over shell state
    during development, which avoids confusion from lingering env values.
    """
    load_dotenv(override=True)


def env_str(name: str) -> Optional[str]:
    val = os.getenv(name)
    if val is None or str(val).strip() == "":
        return None
    return val


def env_int(name: str, default: int) -> int:
    try:
        v = int(os.getenv(name, str(default)))
        if v <= 0:
            return default
        return v
    except Exception:
        return default


def env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def env_bool(name: str, default: bool = False) -> bool:
    val = env_str(name)
    if val is None:
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


def resolve_temp(step_key: str, default_temp: float) -> float:
    """Resolve temperature with precedence: CHR_TEMP_{STEP} -> CHR_TEMP_DEFAULT -> default_temp."""
    for name in (f"CHR_TEMP_{step_key}", "CHR_TEMP_DEFAULT"):
        val = os.getenv(name)
        if val is not None and str(val).strip() != "":
            try:
                return float(val)
            except Exception:
                pass
    return float(default_temp)


def resolve_max_tokens(step_key: str, default_max_tokens: int) -> int:
    """Resolve max tokens with precedence: CHR_MAX_TOKENS_{STEP} -> CHR_MAX_TOKENS_DEFAULT -> default."""
    for name in (f"CHR_MAX_TOKENS_{step_key}", "CHR_MAX_TOKENS_DEFAULT"):
        val = os.getenv(name)
        if val is not None and str(val).strip() != "":
            try:
                v = int(val)
                return v if v > 0 else default_max_tokens
            except Exception:
                pass
    return int(default_max_tokens)


def env_for(step_key: str, *, default_temp: float = 0.3, default_max_tokens: int = 2000) -> Tuple[Optional[str], float, int]:
    """Resolve (model, temperature, max_tokens) for a logical step.

    Precedence:
    - CHR_MODEL_{STEP}, CHR_TEMP_{STEP}, CHR_MAX_TOKENS_{STEP}
    - CHR_TEMP_DEFAULT, CHR_MAX_TOKENS_DEFAULT
    - Provided defaults
    """
    model = env_str(f"CHR_MODEL_{step_key}")
    temp = resolve_temp(step_key, default_temp)
    max_tokens = resolve_max_tokens(step_key, default_max_tokens)
    return model, float(temp), int(max_tokens)


# ---------------------------
# Path resolution
# ---------------------------

def get_data_dir() -> Path:
    """Resolve the directory holding checkpoints, logs and the optional ARCHIVER.yaml.

    Env: CHR_DATA_DIR (relative to cwd if not absolute)
    Default: ./.chronicler
    """
    base = env_str("CHR_DATA_DIR")
    if base:
        p = Path(base)
        return p if p.is_absolute() else (Path.cwd() / p)
    return Path(".chronicler")


def get_sessions_dir() -> Path:
    return get_data_dir() / "sessions"


def get_config_path() -> Path:
    """Resolve ARCHIVER.yaml path.

    Env: CHR_CONFIG_PATH (relative to the data dir if not absolute)
    Default: <data_dir>/ARCHIVER.yaml
    """
    base = get_data_dir()
    p = env_str("CHR_CONFIG_PATH")
    if p is None:
        return base / "ARCHIVER.yaml"
    path = Path(p)
    return path if path.is_absolute() else (base / path)


# ---------------------------
# Diagnostics
# ---------------------------

def mask_env_value(k: str, v: Optional[str]) -> str:
    """Mask secrets in environment values while retaining minimal suffix for debugging.
    Masks keys containing key/secret/token/password regardless of prefix.
    """
    try:
        if v is None:
            return ""
        kl = (k or "").lower()
        if any(s in kl for s in ("key", "secret", "token", "password")):
            s = str(v)
            if len(s) <= 8:
                return "***"
            return ("*" * (len(s) - 4)) + s[-4:]
        return str(v)
    except Exception:
        return ""


def normalize_base_url(base_url: str) -> str:
    """Append '/v1' to non-Azure base URLs that lack a version suffix."""
    bu = base_url.strip()
    lower = bu.lower()
    is_azure = ("azure.com" in lower) or ("openai.azure" in lower)
    if (not is_azure) and not re.search(r"/v\d+/?$", bu):
        bu = bu.rstrip("/") + "/v1"
    return bu


def normalize_base_url_from_env() -> Dict[str, str]:
    """Infer the effective base URL or Azure endpoint from environment without creating a client."""
    info: Dict[str, str] = {}
    azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT") or os.getenv("AZURE_OPENAI_API_BASE")
    if azure_endpoint:
        info["azure_endpoint"] = azure_endpoint.strip()
        info["azure_api_version"] = os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-01")
        return info
    base_url = os.getenv("OPENAI_BASE_URL") or os.getenv("OPENAI_API_BASE")
    if base_url:
        info["base_url"] = normalize_base_url(base_url)
    return info


def collect_program_env_snapshot(get_model_cb=None) -> Dict[str, Any]:
    """Collect program-relevant environment settings for diagnostics.
    Includes CHR_*, OPENAI_*, AZURE_OPENAI_* variables with secret masking,
    plus derived fields such as base URL and default model.
    """
    prefixes = ("CHR_", "OPENAI_", "AZURE_OPENAI_")
    env_items: List[Tuple[str, str]] = []
    for k, v in os.environ.items():
        if any(k.startswith(p) for p in prefixes):
            env_items.append((k, mask_env_value(k, v)))
    env_items.sort(key=lambda kv: kv[0])
    derived: Dict[str, Any] = {}
    derived.update(normalize_base_url_from_env())
    if get_model_cb is not None:
        derived["model_default"] = get_model_cb()
    derived["data_dir"] = str(get_data_dir())
    derived["dotenv_override_enabled"] = True
    return {
        "env": {k: v for k, v in env_items},
        "derived": derived,
    }
