from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional, Protocol, Tuple

from tenacity import retry, stop_after_attempt, wait_fixed

from .config import DEFAULT_OPENAI_EMBEDDING_MODEL, DEFAULT_OPENAI_MODEL_CODE, DEFAULT_OPENAI_MODEL_PLAN
from .errors import CapabilityFailure

logger = logging.getLogger(__name__)

_client_singleton = None
_USAGE_LOG = threading.local()


class CompletionCapability(Protocol):
    """Role-addressed text completion ("plan" returns JSON, "code" returns SOQL in a fenced block)."""

    async def complete(self, role: str, payload: Dict[str, str]) -> str:
        ...


def _load_openai_client():
    try:
        from openai import OpenAI  # type: ignore
    except Exception as exc:  # pragma: no cover
        raise SystemExit("OpenAI client missing. Install with: pip install openai") from exc
    return OpenAI


def _openai_errors():
    try:
        from openai import APIStatusError, BadRequestError, NotFoundError  # type: ignore
        return (APIStatusError, BadRequestError, NotFoundError)
    except Exception:  # pragma: no cover
        return ()


def _is_max_tokens_unsupported(exc: Exception) -> bool:
    text = str(exc).lower()
    return "max_tokens" in text and "max_completion_tokens" in text


def _is_temperature_unsupported(exc: Exception) -> bool:
    text = str(exc).lower()
    return "temperature" in text and "supported" in text


def _is_response_format_unsupported(exc: Exception) -> bool:
    text = str(exc).lower()
    return "response_format" in text and "supported" in text


def _requires_completion_tokens(model: str) -> bool:
    # Reasoning models only take max_completion_tokens.
    lowered = model.lower()
    return lowered.startswith(("o1", "o3", "o4")) or "gpt-5" in lowered


def _client():
    global _client_singleton
    if _client_singleton is None:
        OpenAI = _load_openai_client()
        _client_singleton = OpenAI()
    return _client_singleton


def reset_usage_log() -> None:
    log = getattr(_USAGE_LOG, "entries", None)
    if log is None:
        _USAGE_LOG.entries = []
    else:
        log.clear()


def record_usage(usage: Dict[str, Any]) -> None:
    prompt = int(usage.get("prompt_tokens", 0))
    completion = int(usage.get("completion_tokens", 0))
    total = int(usage.get("total_tokens", prompt + completion))
    log = getattr(_USAGE_LOG, "entries", None)
    if log is None:
        log = []
        _USAGE_LOG.entries = log
    log.append({"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": total})


def usage_totals() -> Dict[str, int]:
    log = getattr(_USAGE_LOG, "entries", []) or []
    totals = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    for entry in log:
        for key in totals:
            totals[key] += int(entry.get(key, 0))
    return totals


@retry(stop=stop_after_attempt(3), wait=wait_fixed(0.25), reraise=True)
def chat_complete(
    model: str,
    system: str,
    user: str,
    *,
    temperature: float = 0.0,
    max_tokens: int = 1200,
    force_json: bool = False,
    timeout: Optional[float] = None,
) -> Tuple[str, Optional[Dict[str, Any]]]:
    use_completion_tokens = _requires_completion_tokens(model)
    user_payload = user if not force_json else f"{user}\n\nReturn JSON only."

    def _call(completion_tokens: bool, temp: Optional[float], json_mode: bool):
        params: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": "system", "content": system}, {"role": "user", "content": user_payload}],
        }
        params["max_completion_tokens" if completion_tokens else "max_tokens"] = max_tokens
        if temp is not None:
            params["temperature"] = temp
        if json_mode:
            params["response_format"] = {"type": "json_object"}
        if timeout is not None:
            params["timeout"] = timeout
        return _client().chat.completions.create(**params)

    temp = None if use_completion_tokens else temperature
    try:
        resp = _call(use_completion_tokens, temp, force_json)
    except _openai_errors() as exc:
        if _is_max_tokens_unsupported(exc) and not use_completion_tokens:
            retry_args = (True, temp, force_json)
        elif _is_temperature_unsupported(exc):
            retry_args = (use_completion_tokens, None, force_json)
        elif _is_response_format_unsupported(exc) and force_json:
            retry_args = (use_completion_tokens, temp, False)
        else:
            # Surface invalid/missing model errors without burying them in a RetryError.
            raise CapabilityFailure("completion", f"OpenAI model '{model}' is not available: {exc}") from exc
        logger.debug("retrying %s with adjusted parameters after: %s", model, exc)
        try:
            resp = _call(*retry_args)
        except _openai_errors() as exc2:
            raise CapabilityFailure("completion", f"OpenAI model '{model}' is not available: {exc2}") from exc2

    text = (resp.choices[0].message.content or "").strip()
    usage_data = getattr(resp, "usage", None)
    if usage_data:
        usage = {
            "prompt_tokens": getattr(usage_data, "prompt_tokens", 0),
            "completion_tokens": getattr(usage_data, "completion_tokens", 0),
            "total_tokens": getattr(usage_data, "total_tokens", 0),
        }
        record_usage(usage)
        return text, usage
    return text, None


class OpenAICompletion:
    """CompletionCapability over chat completions; blocking calls run in a worker thread."""

    def __init__(
        self,
        plan_model: str = DEFAULT_OPENAI_MODEL_PLAN,
        code_model: str = DEFAULT_OPENAI_MODEL_CODE,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self.models = {"plan": plan_model, "code": code_model}
        self.timeout = timeout

    async def complete(self, role: str, payload: Dict[str, str]) -> str:
        model = self.models.get(role, self.models["code"])
        text, usage = await asyncio.to_thread(
            chat_complete,
            model,
            payload.get("system", ""),
            payload.get("user", ""),
            force_json=role == "plan",
            timeout=self.timeout,
        )
        if usage:
            logger.debug("%s completion used %s tokens", role, usage.get("total_tokens"))
        return text


class OpenAIEmbedder:
    def __init__(self, model: str = DEFAULT_OPENAI_EMBEDDING_MODEL) -> None:
        self.model = model

    @retry(stop=stop_after_attempt(3), wait=wait_fixed(0.25), reraise=True)
    def _embed_sync(self, text: str) -> List[float]:
        resp = _client().embeddings.create(model=self.model, input=text)
        return list(resp.data[0].embedding)

    async def embed(self, text: str) -> List[float]:
        return await asyncio.to_thread(self._embed_sync, text)


__all__ = [
    "CompletionCapability",
    "chat_complete",
    "reset_usage_log",
    "record_usage",
    "usage_totals",
    "OpenAICompletion",
    "OpenAIEmbedder",
]
