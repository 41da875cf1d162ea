import json
import logging
import os
from typing import Any, Optional

import httpx

from mitr_analytics.extraction.errors import EndpointError, ParseError
from mitr_analytics.extraction.prompt import SYSTEM_PROMPT

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

_KEY_PROVIDERS = {"openrouter", "openai", "anthropic"}


def _normalize_provider(value: Any) -> str:
    provider = str(value or "openrouter").strip().lower()
    aliases = {
        "oai": "openai",
        "chatgpt": "openai",
        "claude": "anthropic",
        "local": "ollama",
        "rules": "heuristic",
        "fallback": "heuristic",
    }
    return aliases.get(provider, provider)


def resolve_runtime(settings: dict) -> dict:
    """Fill provider credentials and endpoints from the environment when unset."""
    provider = _normalize_provider(settings.get("provider"))
    api_key = str(settings.get("api_key") or "").strip()
    if not api_key:
        if provider == "openrouter":
            api_key = os.environ.get("OPENROUTER_API_KEY", "")
        elif provider == "openai":
            api_key = os.environ.get("OPENAI_API_KEY", "")
        elif provider == "anthropic":
            api_key = os.environ.get("ANTHROPIC_API_KEY", "")

    api_base_url = str(settings.get("api_base_url") or "").strip()
    if not api_base_url:
        if provider == "openrouter":
            api_base_url = OPENROUTER_BASE_URL
        elif provider == "openai":
            api_base_url = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
        elif provider == "anthropic":
            api_base_url = os.environ.get("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1")
        elif provider == "ollama":
            api_base_url = os.environ.get("OLLAMA_BASE_URL", "http://127.0.0.1:11434")

    model = str(settings.get("model") or "").strip()
    if provider == "ollama" and not model:
        model = os.environ.get("OLLAMA_MODEL", "llama3.2:3b")

    return {
        "provider": provider,
        "api_key": api_key,
        "api_base_url": api_base_url.rstrip("/"),
        "model": model,
        "fallback_model": str(settings.get("fallback_model") or "").strip(),
        "temperature": float(settings.get("temperature", 0.3)),
        "max_tokens": int(settings.get("max_tokens", 1000)),
        "timeout_seconds": float(settings.get("timeout_seconds", 30.0)),
        "app_url": str(settings.get("app_url") or ""),
        "app_title": str(settings.get("app_title") or ""),
    }


def runtime_can_call_provider(runtime: dict) -> bool:
    provider = runtime.get("provider")
    if provider in _KEY_PROVIDERS:
        return bool(runtime.get("api_key")) and bool(runtime.get("model"))
    if provider == "ollama":
        return bool(runtime.get("api_base_url")) and bool(runtime.get("model"))
    return False


def extract_json_obj(text: str) -> Optional[dict]:
    if not text:
        return None
    text = text.strip()
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _json_object(provider: str, res: httpx.Response) -> dict:
    data = res.json()
    if not isinstance(data, dict):
        raise ParseError(f"{provider} response body is not a JSON object: {type(data).__name__}")
    return data


def _raise_for_status(provider: str, res: httpx.Response):
    if res.status_code >= 400:
        raise EndpointError(
            f"{provider} request failed ({res.status_code}): {res.text[:180]}",
            status_code=res.status_code,
        )


async def _call_chat_completions(client: httpx.AsyncClient, prompt: str, runtime: dict, model: str) -> str:
    headers = {"Content-Type": "application/json"}
    if runtime.get("api_key"):
        headers["Authorization"] = f"Bearer {runtime['api_key']}"
    if runtime.get("provider") == "openrouter":
        if runtime.get("app_url"):
            headers["HTTP-Referer"] = runtime["app_url"]
        if runtime.get("app_title"):
            headers["X-Title"] = runtime["app_title"]
    body = {
        "model": model,
        "temperature": runtime.get("temperature", 0.3),
        "max_tokens": runtime.get("max_tokens", 1000),
        "response_format": {"type": "json_object"},
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
    }
    res = await client.post(f"{runtime['api_base_url']}/chat/completions", headers=headers, json=body)
    provider = runtime.get("provider", "openrouter")
    _raise_for_status(provider, res)
    data = _json_object(provider, res)
    choices = data.get("choices") or [{}]
    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        raise ParseError(f"{provider} response has malformed choices")
    message = choices[0].get("message") or {}
    if not isinstance(message, dict):
        raise ParseError(f"{provider} response has a malformed message")
    return str(message.get("content") or "")


async def _call_anthropic(client: httpx.AsyncClient, prompt: str, runtime: dict, model: str) -> str:
    headers = {
        "x-api-key": runtime.get("api_key") or "",
        "anthropic-version": "2023-06-01",
        "Content-Type": "application/json",
    }
    body = {
        "model": model,
        "max_tokens": runtime.get("max_tokens", 1000),
        "temperature": runtime.get("temperature", 0.3),
        "system": SYSTEM_PROMPT,
        "messages": [{"role": "user", "content": prompt}],
    }
    res = await client.post(f"{runtime['api_base_url']}/messages", headers=headers, json=body)
    _raise_for_status("anthropic", res)
    data = _json_object("anthropic", res)
    blocks = data.get("content") or []
    if not isinstance(blocks, list):
        raise ParseError("anthropic response has malformed content")
    parts = []
    for block in blocks:
        if isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "\n".join(parts)


async def _call_ollama(client: httpx.AsyncClient, prompt: str, runtime: dict, model: str) -> str:
    body = {
        "model": model,
        "prompt": f"{SYSTEM_PROMPT}\n\n{prompt}",
        "stream": False,
        "format": "json",
        "options": {"temperature": runtime.get("temperature", 0.3)},
    }
    res = await client.post(f"{runtime['api_base_url']}/api/generate", json=body)
    _raise_for_status("ollama", res)
    return str(_json_object("ollama", res).get("response") or "")


async def generate_json(
    prompt: str,
    runtime: dict,
    model: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """Call the configured provider and return the parsed JSON object.

    Raises EndpointError on transport or HTTP failures and ParseError when the
    answer holds no JSON object.
    """
    provider = runtime.get("provider")
    target_model = model or runtime.get("model") or ""
    try:
        async with httpx.AsyncClient(timeout=runtime.get("timeout_seconds", 30.0), transport=transport) as client:
            if provider in {"openrouter", "openai"}:
                text = await _call_chat_completions(client, prompt, runtime, target_model)
            elif provider == "anthropic":
                text = await _call_anthropic(client, prompt, runtime, target_model)
            elif provider == "ollama":
                text = await _call_ollama(client, prompt, runtime, target_model)
            else:
                raise EndpointError(f"Unsupported extraction provider: {provider}")
    except httpx.HTTPError as e:
        raise EndpointError(f"{provider} request error: {e}") from e
    except ValueError as e:
        # Non-JSON HTTP body.
        raise ParseError(f"{provider} returned a malformed response body: {e}") from e

    parsed = extract_json_obj(text)
    if parsed is None:
        raise ParseError(f"{provider} response did not contain a JSON object: {text[:120]!r}")
    return parsed
