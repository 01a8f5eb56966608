from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, Optional
import logging

import httpx
from openai import APIConnectionError, APIStatusError, AsyncOpenAI

logger = logging.getLogger(__name__)

# Rough budget: ~0.5 token per char keeps us well inside common context windows
MAX_CONTEXT_CHARS = 30000

# Returned when the provider answers without a text field
NO_RESPONSE = "No response"

# Self-hosted servers ignore the bearer token but the SDK insists on one
LOCAL_PLACEHOLDER_KEY = "not-needed"


class Provider(str, Enum):
    OPENAI = "openai"  # chat-completions API (OpenAI and compatible relays)
    GOOGLE = "google"  # Gemini generateContent API
    LOCAL = "local"    # self-hosted OpenAI-compatible server

    @property
    def needs_api_key(self) -> bool:
        return self is not Provider.LOCAL


class GenerationError(Exception):
    """A provider call failed; message is safe to show in a cell."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class Configuration:
    provider: Provider = Provider.OPENAI
    api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    google_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    google_model: str = "gemini-1.5-flash"
    local_base_url: str = "http://localhost:11434/v1"
    local_model: str = "llama3.1"
    temperature: float = 0.3  # low temperature for faithful extraction
    response_language: str = "English"

    def __post_init__(self):
        # Accept plain strings from persisted snapshots and settings forms
        object.__setattr__(self, "provider", Provider(self.provider))

    def updated(self, **patch: Any) -> "Configuration":
        return replace(self, **patch)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["provider"] = self.provider.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Configuration":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


DEFAULT_CONFIGURATION = Configuration()


# Same prompt layout for every provider
def build_user_prompt(context_text: str, system_instruction: str, task_prompt: str) -> str:
    truncated = context_text[:MAX_CONTEXT_CHARS]
    return (
        f"Context:\n{truncated}\n\n---\n"
        f"System Requirement: {system_instruction}\n"
        f"Task: {task_prompt}"
    )


def _upstream_message(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return None


# Chat-completions round trip, shared by the OpenAI and local variants
async def _chat_completions(
    label: str,
    base_url: str,
    api_key: str,
    model: str,
    system_instruction: str,
    user_prompt: str,
    cfg: Configuration,
    http_client: httpx.AsyncClient | None,
) -> str:

    if not api_key:
        raise GenerationError(f"{label} API Error: API key is required")

    client = AsyncOpenAI(
        base_url=base_url,
        api_key=api_key,
        max_retries=0,
        http_client=http_client,
    )

    request: Dict[str, Any] = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_instruction},
            {"role": "user", "content": user_prompt},
        ],
        "temperature": cfg.temperature,
    }

    try:
        response = await client.chat.completions.create(**request)
    except APIStatusError as exc:
        message = _upstream_message(exc.body) or f"{label} API Error: {exc.status_code}"
        raise GenerationError(message, status_code=exc.status_code) from exc
    except APIConnectionError as exc:
        raise GenerationError(f"{label} API Error: could not reach {base_url}") from exc
    finally:
        # Injected clients belong to the caller
        if http_client is None:
            await client.close()

    choices = getattr(response, "choices", None) or []
    if not choices or choices[0].message is None:
        return NO_RESPONSE
    return choices[0].message.content or NO_RESPONSE


async def _call_openai(cfg, system_instruction, user_prompt, http_client) -> str:
    return await _chat_completions(
        "OpenAI",
        cfg.openai_base_url,
        cfg.api_key,
        cfg.openai_model,
        system_instruction,
        user_prompt,
        cfg,
        http_client,
    )


async def _call_local(cfg, system_instruction, user_prompt, http_client) -> str:
    return await _chat_completions(
        "Local",
        cfg.local_base_url,
        cfg.api_key or LOCAL_PLACEHOLDER_KEY,
        cfg.local_model,
        system_instruction,
        user_prompt,
        cfg,
        http_client,
    )


# Gemini generateContent; the key travels in the query string
async def _call_google(cfg, system_instruction, user_prompt, http_client) -> str:

    url = f"{cfg.google_base_url.rstrip('/')}/models/{cfg.google_model}:generateContent"
    payload = {"contents": [{"parts": [{"text": user_prompt}]}]}

    client = http_client or httpx.AsyncClient(timeout=None)
    try:
        response = await client.post(url, params={"key": cfg.api_key}, json=payload)
    except httpx.HTTPError as exc:
        raise GenerationError("Google API Error: request failed") from exc
    finally:
        if http_client is None:
            await client.aclose()

    try:
        data = response.json()
    except ValueError:
        data = {}

    if not response.is_success:
        message = _upstream_message(data) or f"Google API Error: {response.status_code}"
        raise GenerationError(message, status_code=response.status_code)

    try:
        return data["candidates"][0]["content"]["parts"][0]["text"] or NO_RESPONSE
    except (KeyError, IndexError, TypeError):
        return NO_RESPONSE


_PROVIDERS = {
    Provider.OPENAI: _call_openai,
    Provider.GOOGLE: _call_google,
    Provider.LOCAL: _call_local,
}


async def generate_text(
    cfg: Configuration,
    system_instruction: str,
    task_prompt: str,
    context_text: str,
    http_client: httpx.AsyncClient | None = None,
) -> str:

    user_prompt = build_user_prompt(context_text, system_instruction, task_prompt)
    logger.info("[Mode: %s] Sending request...", cfg.provider.value)

    call = _PROVIDERS[cfg.provider]
    return await call(cfg, system_instruction, user_prompt, http_client)
