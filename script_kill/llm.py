"""LLM client - HTTP connection to the generative content provider.

Every pipeline stage talks to the provider through a callable matching:

    async def __call__(self, stage: str, prompt: str) -> str: ...

`stage` names the caller (e.g. "script", "npc_decision"). HttpLLM uses it to
pick a heavier model for long-form generation; stubs use it to route canned
responses.

Two implementations are provided:

    HttpLLM   - real HTTP client for Gemini, OpenAI-compatible and KoboldCpp
                 backends, with retries and a one-shot model downgrade when
                 the heavy model is overloaded.
    EchoLLM   - returns the prompt back unchanged. Every structured stage
                 falls back to deterministic output, so the whole game can
                 run without a model.

The provider is treated as an unreliable oracle: callers catch LLMError and
take their fallback path instead of propagating it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal, Protocol

import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol - every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


ProviderFormat = Literal["gemini", "openai", "koboldcpp"]

# Long-form stages that go to the heavy model when one is configured.
HEAVY_STAGES = frozenset({
    "script",
    "script_skeleton",
    "personal_script",
    "summary_review",
    "summary_analysis",
    "summary_elevation",
})

_OVERLOADED = (502, 503, 504)


# ---------------------------------------------------------------------------
# HttpLLM - connects to a real backend
# ---------------------------------------------------------------------------

class HttpLLM:
    """Async HTTP client for text-generation backends.

    Supported formats:
      "gemini"     - POST {base}/v1beta/models/{model}:generateContent
                     {"contents": [{"parts": [{"text": ...}]}]}
                     Response: {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}
      "openai"     - POST /v1/completions   {"model": ..., "prompt": ...}
                     Response: {"choices": [{"text": "..."}]}
      "koboldcpp"  - POST /api/v1/generate  {"prompt": ...}
                     Response: {"results": [{"text": "..."}]}

    Args:
        provider_url:    Base URL of the backend.
        api_key:         API key, or empty string if not required.
        provider_format: Wire format to use. Defaults to "gemini".
        model:           Model used for light stages.
        heavy_model:     Model used for HEAVY_STAGES; falls back to `model`.
        fallback_model:  Model tried once when the heavy model answers 502/503/504.
        timeout:         HTTP timeout in seconds per request.
        retries:         Attempts before giving up.
        backoff:         Seconds multiplied by the attempt number between retries.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "gemini",
        model: str = "",
        heavy_model: str = "",
        fallback_model: str = "",
        timeout: float = 60.0,
        retries: int = 3,
        backoff: float = 2.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._heavy_model = heavy_model or model
        self._fallback_model = fallback_model
        self._timeout = timeout
        self._retries = max(1, retries)
        self._backoff = backoff

    def model_for(self, stage: str) -> str:
        return self._heavy_model if stage in HEAVY_STAGES else self._model

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if not self._api_key:
            return headers
        if self._format == "gemini":
            headers["X-goog-api-key"] = self._api_key
        else:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, prompt: str, model: str) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "gemini":
            url = f"{self._base_url}/v1beta/models/{model}:generateContent"
            return url, {"contents": [{"parts": [{"text": prompt}]}]}

        if self._format == "openai":
            url = f"{self._base_url}/v1/completions"
            body: dict = {"prompt": prompt}
            if model:
                body["model"] = model
            return url, body

        # koboldcpp
        url = f"{self._base_url}/api/v1/generate"
        return url, {"prompt": prompt}

    def _parse_response(self, data: Any) -> str:
        """Extract the completion text from the response body."""
        if self._format == "gemini":
            path: tuple[str | int, ...] = ("candidates", 0, "content", "parts", 0, "text")
            backend = "Gemini"
        elif self._format == "openai":
            path = ("choices", 0, "text")
            backend = "OpenAI-compatible"
        else:
            path = ("results", 0, "text")
            backend = "KoboldCpp"

        if not isinstance(data, dict):
            raise LLMError(f"Unexpected response format from {backend} backend")
        try:
            text = data
            for key in path:
                text = text[key]
        except (KeyError, IndexError, TypeError):
            raise LLMError(f"Unexpected response format from {backend} backend") from None
        if not isinstance(text, str):
            raise LLMError(f"Unexpected response format from {backend} backend")
        return text

    async def _post(self, client: httpx.AsyncClient, prompt: str, model: str) -> str:
        url, body = self._build_request(prompt, model)
        resp = await client.post(url, json=body, headers=self._headers())
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e
        return self._parse_response(data)

    async def _downgrade(self, client: httpx.AsyncClient, stage: str, prompt: str) -> str | None:
        """One attempt on the fallback model; None if it fails too."""
        logger.warning("llm stage=%s heavy model overloaded, trying %s", stage, self._fallback_model)
        try:
            return await self._post(client, prompt, self._fallback_model)
        except (httpx.HTTPError, LLMError) as e:
            logger.warning("llm downgrade failed stage=%s: %s", stage, e)
            return None

    async def __call__(self, stage: str, prompt: str) -> str:
        model = self.model_for(stage)
        can_downgrade = bool(self._fallback_model) and model != self._fallback_model
        logger.debug("llm call stage=%s model=%s prompt_len=%d", stage, model, len(prompt))

        last_error: LLMError | None = None
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            for attempt in range(1, self._retries + 1):
                try:
                    text = await self._post(client, prompt, model)
                    logger.debug("llm response stage=%s attempt=%d len=%d", stage, attempt, len(text))
                    return text
                except httpx.ConnectError as e:
                    last_error = LLMError(f"Cannot connect to LLM backend at {self._base_url}")
                    last_error.__cause__ = e
                except httpx.TimeoutException as e:
                    last_error = LLMError(f"LLM backend timed out after {self._timeout}s")
                    last_error.__cause__ = e
                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    last_error = LLMError(f"LLM backend returned HTTP {status}")
                    last_error.__cause__ = e
                    if status in _OVERLOADED and can_downgrade:
                        text = await self._downgrade(client, stage, prompt)
                        if text is not None:
                            return text
                    if status < 500:
                        raise last_error
                except httpx.HTTPError as e:
                    last_error = LLMError(f"LLM request failed: {e}")
                    last_error.__cause__ = e
                logger.warning(
                    "llm attempt %d/%d failed stage=%s: %s",
                    attempt, self._retries, stage, last_error,
                )
                if attempt < self._retries:
                    await asyncio.sleep(attempt * self._backoff)

        assert last_error is not None
        raise last_error


async def ask(llm: LLM, stage: str, prompt: str) -> str | None:
    """Call the provider, turning LLMError into None for fallback paths."""
    try:
        return await llm(stage, prompt)
    except LLMError as e:
        logger.warning("provider failed at stage=%s: %s", stage, e)
        return None


# ---------------------------------------------------------------------------
# EchoLLM - returns the prompt unchanged; useful for smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the prompt text as-is. No network calls.

    No stage can decode the echo as JSON, so every synthesizer takes its
    deterministic fallback path. Handy for running a full game offline.
    """

    async def __call__(self, stage: str, prompt: str) -> str:
        logger.debug("EchoLLM stage=%s prompt_len=%d", stage, len(prompt))
        return prompt


# ---------------------------------------------------------------------------
# LLMError - raised by HttpLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
