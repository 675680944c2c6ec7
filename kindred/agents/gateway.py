"""
Model Gateway for Kindred.

This module sends prompts to a configured language-model backend and returns
the raw text. It classifies failures, retries transient ones with exponential
backoff plus jitter, and records every attempt in the database for
reproducibility. Settings and credentials are always passed in explicitly;
nothing here reads global configuration.
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
from pydantic import BaseModel, Field, SecretStr

from ..database import DatabaseManager
from .errors import AIError, AIErrorType, classify_exception, classify_http_error
from .rate_limiter import SlidingWindowRateLimiter


class ModelBackend(str, Enum):
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OLLAMA = "ollama"


DEFAULT_MODELS: Dict[str, str] = {
    ModelBackend.ANTHROPIC.value: "claude-3-5-sonnet-20241022",
    ModelBackend.GEMINI.value: "gemini-2.0-flash-lite",
    ModelBackend.OLLAMA.value: "gemma3",
}

# Backends that run locally and need no API key
KEYLESS_BACKENDS = {ModelBackend.OLLAMA}

SAFETY_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "RECITATION"}


class Credentials(BaseModel):
    """
    Capability object supplied by the caller for one model call.

    The key is a SecretStr so it never shows up in reprs or logs.
    """

    backend: ModelBackend = Field(..., description="Which backend to call")
    api_key: SecretStr = Field(SecretStr(""), description="Provider API key")
    model: Optional[str] = Field(None, description="Overrides the backend's configured model")


@dataclass
class GatewaySettings:
    """
    Tunables for the Model Gateway.
    """
    timeout: float = 60.0
    max_attempts: int = 3
    initial_retry_delay: float = 1.0
    max_retry_delay: float = 10.0
    max_jitter: float = 0.5
    temperature: float = 0.3
    max_tokens: int = 4000
    models: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODELS))
    anthropic_url: str = "https://api.anthropic.com/v1/messages"
    anthropic_version: str = "2023-06-01"
    gemini_url: str = "https://generativelanguage.googleapis.com/v1beta/models"
    ollama_host: str = "http://localhost:11434"

    @classmethod
    def from_config(cls, config) -> "GatewaySettings":
        """
        Build settings from the ai section of a ConfigManager.

        Args:
            config: A ConfigManager instance

        Returns:
            GatewaySettings with configured values and defaults for the rest
        """
        defaults = cls()
        models = dict(DEFAULT_MODELS)
        models.update(config.get("ai.models", {}) or {})
        return cls(
            timeout=float(config.get("ai.timeout", defaults.timeout)),
            max_attempts=int(config.get("ai.max_attempts", defaults.max_attempts)),
            initial_retry_delay=float(config.get("ai.initial_retry_delay", defaults.initial_retry_delay)),
            max_retry_delay=float(config.get("ai.max_retry_delay", defaults.max_retry_delay)),
            temperature=float(config.get("ai.temperature", defaults.temperature)),
            max_tokens=int(config.get("ai.max_tokens", defaults.max_tokens)),
            models=models,
            anthropic_url=config.get("ai.anthropic_url", defaults.anthropic_url),
            gemini_url=config.get("ai.gemini_url", defaults.gemini_url),
            ollama_host=config.get("ai.ollama_host", defaults.ollama_host)
        )


@dataclass
class ModelResponse:
    """
    Raw output of a successful model call.
    """
    text: str
    tokens_used: Optional[int]
    model: str
    backend: ModelBackend
    attempts: int = 1


class ModelGateway:
    """
    Sends prompts to a language-model backend with retries and call logging.
    """

    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
        database_manager: Optional[DatabaseManager] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None
    ):
        """
        Initialize the gateway.

        Args:
            settings: Timeouts, retry policy and endpoints
            rate_limiter: Limiter consulted before every attempt
            client: HTTP client to use (one is created and owned if omitted)
            database_manager: Optional database manager for call logging
            sleep: Coroutine used to wait between retries
        """
        self.settings = settings or GatewaySettings()
        self.rate_limiter = rate_limiter
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.settings.timeout)
        self.db = database_manager
        self._sleep = sleep or asyncio.sleep

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def model_for(self, credentials: Credentials) -> str:
        """Get the model name to use for the given credentials."""
        return credentials.model or self.settings.models.get(
            credentials.backend.value, DEFAULT_MODELS[credentials.backend.value]
        )

    def retry_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Compute the wait before the next attempt.

        Args:
            attempt: Zero-based index of the attempt that just failed
            retry_after: Provider hint, which replaces the computed backoff

        Returns:
            Seconds to wait
        """
        if retry_after is not None:
            return retry_after
        delay = self.settings.initial_retry_delay * (2 ** attempt)
        delay += random.uniform(0, self.settings.max_jitter)
        return min(delay, self.settings.max_retry_delay)

    async def generate(
        self,
        prompt: str,
        credentials: Credentials,
        system_prompt: str = "",
        agent_name: str = "extraction",
        story_id: Optional[str] = None
    ) -> ModelResponse:
        """
        Send a prompt and return the model's raw text.

        Args:
            prompt: The user prompt
            credentials: Backend selector and API key
            system_prompt: Optional system prompt
            agent_name: Name recorded in the call log
            story_id: Related story, recorded in the call log

        Returns:
            ModelResponse with the text and token usage

        Raises:
            AIError: Classified failure after retries are exhausted, or
                immediately for non-retryable failures
            RateLimitExceededError: If the local rate limit is reached
        """
        model = self.model_for(credentials)
        backend = credentials.backend

        if backend not in KEYLESS_BACKENDS and not credentials.api_key.get_secret_value():
            raise AIError(AIErrorType.INVALID_CREDENTIALS, f"No API key configured for {backend.value}")

        attempt = 0
        while True:
            if self.rate_limiter:
                self.rate_limiter.acquire()

            start_time = time.time()
            try:
                text, tokens = await asyncio.wait_for(
                    self._dispatch(backend, prompt, system_prompt, model, credentials),
                    timeout=self.settings.timeout
                )
                if not text.strip():
                    raise AIError(AIErrorType.INVALID_RESPONSE, "Model returned an empty response", retryable=True)

                self._log_call(agent_name, prompt, system_prompt, model, text, True, None,
                               start_time, story_id, attempt)
                logging.info(f"{backend.value} call succeeded on attempt {attempt + 1} "
                             f"({tokens if tokens is not None else 'unknown'} tokens)")
                return ModelResponse(text=text, tokens_used=tokens, model=model,
                                     backend=backend, attempts=attempt + 1)

            except asyncio.TimeoutError:
                error = AIError(AIErrorType.TIMEOUT, f"No response within {self.settings.timeout}s")
            except Exception as e:
                error = classify_exception(e)

            self._log_call(agent_name, prompt, system_prompt, model, "", False, str(error),
                           start_time, story_id, attempt)

            if not error.retryable or attempt + 1 >= self.settings.max_attempts:
                logging.error(f"{backend.value} call failed after {attempt + 1} attempt(s): {error}")
                raise error

            delay = self.retry_delay(attempt, error.retry_after)
            logging.warning(f"{backend.value} call failed ({error.error_type.value}), "
                            f"retrying in {delay:.2f}s (attempt {attempt + 1}/{self.settings.max_attempts})")
            await self._sleep(delay)
            attempt += 1

    async def _dispatch(
        self,
        backend: ModelBackend,
        prompt: str,
        system_prompt: str,
        model: str,
        credentials: Credentials
    ) -> Tuple[str, Optional[int]]:
        if backend == ModelBackend.ANTHROPIC:
            return await self._call_anthropic(prompt, system_prompt, model, credentials)
        if backend == ModelBackend.GEMINI:
            return await self._call_gemini(prompt, system_prompt, model, credentials)
        if backend == ModelBackend.OLLAMA:
            return await self._call_ollama(prompt, system_prompt, model)
        raise AIError(AIErrorType.UNKNOWN, f"Unsupported backend: {backend}")

    @staticmethod
    def _read_json(response: httpx.Response) -> Dict[str, Any]:
        """
        Decode a provider response, raising a classified error on failure.
        """
        if response.status_code >= 400:
            raise classify_http_error(response.status_code, response.text, response.headers)
        try:
            data = response.json()
        except ValueError as e:
            raise AIError(AIErrorType.INVALID_RESPONSE, f"Provider returned non-JSON body: {e}", retryable=False)
        if not isinstance(data, dict):
            raise AIError(AIErrorType.INVALID_RESPONSE, "Provider returned an unexpected body", retryable=False)
        return data

    async def _call_anthropic(
        self,
        prompt: str,
        system_prompt: str,
        model: str,
        credentials: Credentials
    ) -> Tuple[str, Optional[int]]:
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": self.settings.max_tokens,
            "temperature": self.settings.temperature,
            "messages": [{"role": "user", "content": prompt}]
        }
        if system_prompt:
            payload["system"] = system_prompt

        headers = {
            "x-api-key": credentials.api_key.get_secret_value(),
            "anthropic-version": self.settings.anthropic_version,
            "content-type": "application/json"
        }
        response = await self.client.post(self.settings.anthropic_url, json=payload, headers=headers)
        data = self._read_json(response)

        if data.get("stop_reason") == "refusal":
            raise AIError(AIErrorType.CONTENT_POLICY, "Model refused the request")

        text = "".join(
            block.get("text", "") for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        tokens = None
        if usage:
            tokens = (usage.get("input_tokens") or 0) + (usage.get("output_tokens") or 0)
        return text, tokens

    async def _call_gemini(
        self,
        prompt: str,
        system_prompt: str,
        model: str,
        credentials: Credentials
    ) -> Tuple[str, Optional[int]]:
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.settings.temperature,
                "maxOutputTokens": self.settings.max_tokens,
                "responseMimeType": "application/json"
            }
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        headers = {"x-goog-api-key": credentials.api_key.get_secret_value()}
        response = await self.client.post(
            f"{self.settings.gemini_url}/{model}:generateContent",
            json=payload,
            headers=headers
        )
        data = self._read_json(response)

        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise AIError(AIErrorType.CONTENT_POLICY, f"Prompt blocked: {block_reason}")

        usage = data.get("usageMetadata") or {}
        tokens = usage.get("totalTokenCount")
        if tokens is None and usage:
            tokens = (usage.get("promptTokenCount") or 0) + (usage.get("candidatesTokenCount") or 0)

        candidates = data.get("candidates") or []
        if not candidates:
            return "", tokens

        candidate = candidates[0]
        if candidate.get("finishReason") in SAFETY_FINISH_REASONS:
            raise AIError(AIErrorType.CONTENT_POLICY, f"Response blocked: {candidate.get('finishReason')}")

        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        return text, tokens

    async def _call_ollama(self, prompt: str, system_prompt: str, model: str) -> Tuple[str, Optional[int]]:
        payload: Dict[str, Any] = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {"temperature": self.settings.temperature}
        }
        if system_prompt:
            payload["system"] = system_prompt

        response = await self.client.post(f"{self.settings.ollama_host}/api/generate", json=payload)
        data = self._read_json(response)

        tokens = None
        if "prompt_eval_count" in data or "eval_count" in data:
            tokens = (data.get("prompt_eval_count") or 0) + (data.get("eval_count") or 0)
        return data.get("response", "") or "", tokens

    def _log_call(
        self,
        agent_name: str,
        prompt: str,
        system_prompt: str,
        model: str,
        raw_response: str,
        success: bool,
        error_message: Optional[str],
        start_time: float,
        story_id: Optional[str],
        attempt: int
    ) -> None:
        """Record one attempt in the ai_agent_calls table, if a database is attached."""
        if not self.db or not self.db.connection:
            return

        execution_time_ms = int((time.time() - start_time) * 1000)
        try:
            self.db.log_ai_agent_call(
                agent_name=agent_name,
                input_data=json.dumps({"story_id": story_id, "attempt": attempt + 1}),
                system_prompt=system_prompt or None,
                user_prompt=prompt,
                model_name=model,
                raw_response=raw_response,
                success=success,
                error_message=error_message,
                execution_time_ms=execution_time_ms,
                story_id=story_id
            )
        except Exception as log_error:
            logging.warning(f"Failed to log AI agent call: {log_error}")
