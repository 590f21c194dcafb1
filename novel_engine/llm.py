"""LLM client — HTTP connection to a text-completion backend.

The dialogue backend talks to any callable matching the protocol:

    async def __call__(self, purpose: str, prompt: str) -> str: ...

`purpose` names the caller (e.g. "dialogue") and only feeds the logs.

HttpLLM speaks two wire formats, selected by provider_format:

  "koboldcpp"  — POST /api/v1/generate  {"prompt": ..., "max_length": ...}
                 Response: {"results": [{"text": "..."}]}
  "openai"     — POST /v1/completions   {"model": ..., "prompt": ..., "max_tokens": ...}
                 Response: {"choices": [{"text": "..."}]}
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Protocol

import httpx

from novel_engine.errors import LLMError

logger = logging.getLogger(__name__)


class LLM(Protocol):
    async def __call__(self, purpose: str, prompt: str) -> str: ...


ProviderFormat = Literal["koboldcpp", "openai"]


class HttpLLM:
    """Async HTTP client for text-completion backends.

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "koboldcpp".
        model:           Model identifier, sent only in the openai format.
        max_tokens:      Completion length cap.
        timeout:         HTTP timeout in seconds. The turn pipeline applies
                         its own, usually shorter, generation timeout on top.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        max_tokens: int = 300,
        timeout: float = 60.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._max_tokens = max_tokens
        self._timeout = timeout

    @classmethod
    def from_connection(cls, connection: dict[str, Any]) -> HttpLLM:
        """Build a client from the `llm_connection` block of the app config."""
        return cls(
            provider_url=connection["provider_url"],
            api_key=connection.get("api_key", ""),
            provider_format=connection.get("provider_format", "koboldcpp"),
            model=connection.get("model", ""),
        )

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        if self._format == "openai":
            body: dict = {"prompt": prompt, "max_tokens": self._max_tokens}
            if self._model:
                body["model"] = self._model
            return f"{self._base_url}/v1/completions", body

        return f"{self._base_url}/api/v1/generate", {
            "prompt": prompt,
            "max_length": self._max_tokens,
        }

    def _parse_response(self, data: Any) -> str:
        key = "choices" if self._format == "openai" else "results"
        items = data.get(key) if isinstance(data, dict) else None
        if not items or not isinstance(items[0], dict) or "text" not in items[0]:
            raise LLMError(f"Unexpected response format from {self._format} backend")
        return items[0]["text"]

    async def __call__(self, purpose: str, prompt: str) -> str:
        url, body = self._build_request(prompt)
        logger.debug("llm call purpose=%s url=%s prompt_len=%d", purpose, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"LLM backend returned HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM transport error: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e

        text = self._parse_response(data)
        logger.debug("llm response purpose=%s len=%d", purpose, len(text))
        return text
