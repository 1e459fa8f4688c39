"""OpenAI client utilities and the structured-generation backend.

This module centralizes LLM client creation and a thin schema-constrained
completion wrapper with diagnostics. It depends only on environment
variables and the chronicler.logging helpers for breadcrumbs.

Swap-friendly: any object with a generate(request) -> str method can be
handed to UnitProcessor instead of OpenAIBackend.

Public API:
- get_client() -> client | None
- reset_client() -> None
- get_model() -> str
- GenerationRequest
- OpenAIBackend.generate(request) -> str
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List
import hashlib
import json
import os

from openai import OpenAI, AzureOpenAI

from .context import BackendError
from .env import normalize_base_url
from .logging import breadcrumb as _breadcrumb, log_run as _log_run
from .models import ModelConfig
from .tokenizer import count_chat_tokens as _count_chat_tokens

_CLIENT = None  # type: ignore
_CLIENT_INFO = ""  # for diagnostics (base_url or azure endpoint)

SYSTEM_INSTRUCTION = (
    "You are a data archiving engine. Turn the conversation transcript between "
    "\"{user_name}\" and \"{char_name}\" into one JSON object with these fields:\n"
    "1. \"title\": an abstract, artistic chapter title.\n"
    "2. \"time_range\": the date and time range of the events.\n"
    "3. \"narrative\": a faithful third-person summary of what happened.\n"
    "4. \"key_quotes\": up to 5 exact quotes from the chat.\n"
    "Return only the JSON object."
)


def get_client():
    """Return OpenAI client if API key is present; otherwise None for mock mode.
    Supports native OpenAI, OpenAI-compatible base URLs and Azure OpenAI.
    """
    global _CLIENT, _CLIENT_INFO
    if _CLIENT is not None:
        return _CLIENT
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None
    azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT") or os.getenv("AZURE_OPENAI_API_BASE")
    if azure_endpoint:
        api_version = os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-01")
        ak = os.getenv("AZURE_OPENAI_API_KEY") or api_key
        _CLIENT = AzureOpenAI(azure_endpoint=azure_endpoint, api_version=api_version, api_key=ak)
        _CLIENT_INFO = f"azure:{azure_endpoint}|v={api_version}"
        _breadcrumb(f"openai:client-initialized azure_endpoint={azure_endpoint} api_version={api_version}")
        return _CLIENT
    base_url = os.getenv("OPENAI_BASE_URL") or os.getenv("OPENAI_API_BASE")
    if base_url:
        bu = normalize_base_url(base_url)
        _CLIENT = OpenAI(base_url=bu, api_key=api_key)
        _CLIENT_INFO = f"base_url:{bu}"
        _breadcrumb(f"openai:client-initialized base_url={bu}")
    else:
        _CLIENT = OpenAI(api_key=api_key)
        _CLIENT_INFO = "default"
        _breadcrumb("openai:client-initialized base_url=default")
    return _CLIENT


def reset_client() -> None:
    """Drop the cached client so the next call re-reads the environment."""
    global _CLIENT, _CLIENT_INFO
    _CLIENT = None
    _CLIENT_INFO = ""


def get_model() -> str:
    # Prefer CHR_MODEL_DEFAULT; fall back to OPENAI_MODEL for compatibility
    return os.getenv("CHR_MODEL_DEFAULT") or os.getenv("OPENAI_MODEL", "gpt-4o-mini")


@dataclass
class GenerationRequest:
    transcript: str
    participants: List[str]
    schema: Dict[str, Any]
    model_config: ModelConfig
    tag: str = ""


def _mock_response(request: GenerationRequest) -> str:
    """Deterministic JSON document for offline/dev usage."""
    text = request.transcript
    h = hashlib.sha1(text.encode("utf-8")).hexdigest()[:12]
    lines = [ln for ln in text.split("\n\n") if ln.strip()]
    head = (text[:220] + "...") if len(text) > 220 else text
    payload = {
        "title": f"[MOCK] Chapter {h}",
        "time_range": "Unknown",
        "narrative": f"[MOCK LLM RESPONSE] {len(lines)} lines between {' and '.join(request.participants)}.\n{head}",
        "key_quotes": [ln.split("]: ", 1)[-1][:120] for ln in lines[:5]],
    }
    return json.dumps(payload, ensure_ascii=False)


class OpenAIBackend:
    """Schema-constrained chat completion; mock JSON when no client is configured."""

    def __init__(self, client=None) -> None:
        self._client = client

    def _resolve_client(self):
        return self._client if self._client is not None else get_client()

    def generate(self, request: GenerationRequest) -> str:
        _breadcrumb(f"llm:enter {request.tag}")
        client = self._resolve_client()
        if client is None:
            _breadcrumb("llm:mock-return")
            return _mock_response(request)

        cfg = request.model_config
        model_name = cfg.model or get_model()
        system = SYSTEM_INSTRUCTION.format(user_name=cfg.user_name, char_name=cfg.char_name)
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": f"Here is the raw conversation transcript to archive:\n\n{request.transcript}"},
            {"role": "user", "content": "Generate the JSON now."},
        ]
        token_param = os.getenv("CHR_TOKENS_PARAM", "max_tokens").strip() or "max_tokens"
        kwargs: Dict[str, Any] = {
            "model": model_name,
            "messages": messages,
            "temperature": cfg.temperature,
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": "archived_chapter", "schema": request.schema, "strict": True},
            },
            token_param: int(cfg.max_tokens),
        }
        try:
            prompt_count = int(_count_chat_tokens(messages, model_name))
        except Exception:
            prompt_count = 0
        _log_run(
            f"LLM request | {request.tag} model={model_name} temp={cfg.temperature} param={token_param} "
            f"prompt_tokens={prompt_count} limit={cfg.max_tokens} endpoint={_CLIENT_INFO or 'injected'}"
        )
        try:
            resp = client.chat.completions.create(**kwargs)
        except Exception as e:
            msg = str(e)
            # Retry with alternate token parameter if provider rejects 'max_tokens'
            if "Unsupported parameter" in msg and "max_tokens" in msg and token_param == "max_tokens":
                _breadcrumb("llm:param-fallback:max_completion_tokens")
                kwargs.pop("max_tokens", None)
                kwargs["max_completion_tokens"] = int(cfg.max_tokens)
                resp = client.chat.completions.create(**kwargs)
            else:
                raise
        _breadcrumb("llm:chat.create:after")
        choice = resp.choices[0] if resp.choices else None
        out = (choice.message.content if choice is not None else None) or ""
        usage = getattr(resp, "usage", None)
        if usage:
            _log_run(
                f"LLM response | {request.tag} usage prompt={getattr(usage, 'prompt_tokens', None)} "
                f"completion={getattr(usage, 'completion_tokens', None)} total={getattr(usage, 'total_tokens', None)} "
                f"finish_reason={getattr(choice, 'finish_reason', None)}"
            )
        refusal = getattr(choice.message, "refusal", None) if choice is not None else None
        if refusal:
            raise BackendError(f"Model refused: {refusal}")
        return out
