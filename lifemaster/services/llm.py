import json
import logging
import os
import time
from typing import Any, Optional, Protocol

import httpx

from lifemaster.core.errors import EngineNotConfigured

logger = logging.getLogger("uvicorn.error")

AI_PROVIDER = os.getenv("AI_PROVIDER", "openai").strip().lower()
AI_MODEL = os.getenv("AI_MODEL", "gpt-4.1-mini").strip()
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
LLM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("LLM_CONNECT_TIMEOUT_SECONDS", "10"))
LLM_WRITE_TIMEOUT_SECONDS = float(os.getenv("LLM_WRITE_TIMEOUT_SECONDS", "30"))
LLM_POOL_TIMEOUT_SECONDS = float(os.getenv("LLM_POOL_TIMEOUT_SECONDS", "60"))
LLM_RETRY_COUNT = int(os.getenv("LLM_RETRY_COUNT", "1"))
LLM_RETRY_BACKOFF_SECONDS = float(os.getenv("LLM_RETRY_BACKOFF_SECONDS", "0.75"))
LLM_MAX_TOKENS_ANALYSIS = int(os.getenv("LLM_MAX_TOKENS_ANALYSIS", "700"))
LLM_MAX_TOKENS_AGENT = int(os.getenv("LLM_MAX_TOKENS_AGENT", "900"))

# Status codes worth another attempt; everything else fails fast.
RETRYABLE_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504}


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=LLM_CONNECT_TIMEOUT_SECONDS,
        read=LLM_TIMEOUT_SECONDS,
        write=LLM_WRITE_TIMEOUT_SECONDS,
        pool=LLM_POOL_TIMEOUT_SECONDS,
    )


class LLMRequestError(RuntimeError):
    def __init__(self, provider: str, model: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code


def parse_llm_json(raw_text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw_text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(raw_text[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
    raise ValueError("Invalid JSON response from LLM")


class ReasoningEngine(Protocol):
    configured: bool

    def complete_json(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        ...

    def chat(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> dict[str, Any]:
        ...


class OpenAIReasoningEngine:
    provider = "openai"

    def __init__(self, api_key: str, model: str = AI_MODEL, base_url: str = OPENAI_BASE_URL) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _require_key(self) -> None:
        if not self.api_key:
            raise EngineNotConfigured("OPENAI_API_KEY is not configured")

    def _post_chat(self, payload: dict[str, Any]) -> dict[str, Any]:
        attempts = max(1, LLM_RETRY_COUNT + 1)
        last_error = "unknown error"
        for idx in range(attempts):
            try:
                response = httpx.post(
                    f"{self.base_url}/chat/completions",
                    headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                    json=payload,
                    timeout=_http_timeout(),
                )
                response.raise_for_status()
                data = response.json()
                usage = data.get("usage", {}) if isinstance(data, dict) else {}
                logger.info(
                    "llm_request_ok model=%s prompt_tokens=%s completion_tokens=%s",
                    self.model,
                    usage.get("prompt_tokens"),
                    usage.get("completion_tokens"),
                )
                return data["choices"][0]["message"]
            except httpx.TimeoutException as exc:
                last_error = "request timed out"
                if idx < attempts - 1:
                    time.sleep(LLM_RETRY_BACKOFF_SECONDS * (idx + 1))
                    continue
                raise LLMRequestError(
                    provider=self.provider,
                    model=self.model,
                    message="OpenAI request timed out while waiting for response.",
                ) from exc
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code if exc.response is not None else None
                detail = (exc.response.text or "").strip()[:220] if exc.response is not None else ""
                if status in RETRYABLE_STATUS_CODES and idx < attempts - 1:
                    time.sleep(LLM_RETRY_BACKOFF_SECONDS * (idx + 1))
                    continue
                raise LLMRequestError(
                    provider=self.provider,
                    model=self.model,
                    status_code=status,
                    message=f"OpenAI request failed (status={status}): {detail or 'no response body'}",
                ) from exc
            except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as exc:
                last_error = str(exc)[:220]
                if idx < attempts - 1:
                    time.sleep(LLM_RETRY_BACKOFF_SECONDS * (idx + 1))
                    continue
                raise LLMRequestError(
                    provider=self.provider,
                    model=self.model,
                    message=f"OpenAI request failed: {last_error}",
                ) from exc
        raise LLMRequestError(provider=self.provider, model=self.model, message=f"OpenAI request failed: {last_error}")

    def complete_json(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        self._require_key()
        message = self._post_chat(
            {
                "model": self.model,
                "response_format": {"type": "json_object"},
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "max_completion_tokens": LLM_MAX_TOKENS_ANALYSIS,
            }
        )
        text = str(message.get("content") or "").strip()
        if not text:
            raise LLMRequestError(provider=self.provider, model=self.model, message="OpenAI returned empty content")
        return parse_llm_json(text)

    def chat(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> dict[str, Any]:
        self._require_key()
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_completion_tokens": LLM_MAX_TOKENS_AGENT,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return self._post_chat(payload)


def get_reasoning_engine() -> ReasoningEngine:
    if AI_PROVIDER != "openai":
        raise EngineNotConfigured(f"Unsupported AI provider: {AI_PROVIDER}")
    return OpenAIReasoningEngine(api_key=os.getenv("OPENAI_API_KEY", "").strip())
