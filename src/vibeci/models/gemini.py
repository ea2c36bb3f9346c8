"""Gemini client that speaks the ``generateContent`` REST API."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Mapping, Optional

from .llm_client import (
    LLMClient,
    LLMRateLimitError,
    LLMResponseFormatError,
    LLMTransportError,
    RateLimitTable,
)

__all__ = ["DEFAULT_BASE_URL", "DEFAULT_MODEL", "GeminiClient"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-3-pro-preview"
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

Transport = Callable[[str, Dict[str, Any]], str]

_RATE_LIMIT_HINTS = ("429", "quota", "RESOURCE_EXHAUSTED")


def _looks_rate_limited(message: str) -> bool:
    return any(hint in message for hint in _RATE_LIMIT_HINTS)


class GeminiClient(LLMClient):
    """Thin adapter around the Gemini ``generateContent`` endpoint."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        model: Optional[str] = None,
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 5,
        retry_delay: float = 2.0,
        rate_limits: Optional[RateLimitTable] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        options: Dict[str, Any] = {"max_attempts": max_attempts, "retry_delay": retry_delay, "rate_limits": rate_limits}
        if sleep is not None:
            options["sleep"] = sleep
        super().__init__(model or os.getenv("GEMINI_MODEL") or DEFAULT_MODEL, **options)
        self._api_key = api_key or os.getenv("GEMINI_API_KEY")
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("GEMINI_API_KEY is required when using the default transport.")

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        transport: Optional[Transport] = None,
        rate_limits: Optional[RateLimitTable] = None,
    ) -> "GeminiClient":
        models = config.get("models", {}) or {}
        return cls(
            api_key=models.get("api_key") or None,
            base_url=models.get("base_url") or DEFAULT_BASE_URL,
            model=models.get("default") or None,
            transport=transport,
            timeout=float(models.get("timeout", 120) or 120),
            max_attempts=int(models.get("max_attempts", 5) or 5),
            retry_delay=float(models.get("retry_delay", 2.0) or 2.0),
            rate_limits=rate_limits,
        )

    @staticmethod
    def build_body(payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Translate a request payload into a ``generateContent`` body."""
        generation_config: Dict[str, Any] = {
            "temperature": payload.get("temperature", 0.2),
            "topP": 0.8,
            "topK": 40,
            "maxOutputTokens": 8192,
        }
        if payload.get("response_format") == "json":
            generation_config["responseMimeType"] = "application/json"
        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": payload["prompt"]}]}],
            "generationConfig": generation_config,
        }
        system_prompt = payload.get("system_prompt")
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return body

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Send the request over the configured transport."""
        model = payload.get("model") or self.model
        try:
            raw_response = self._transport(model, self.build_body(payload))
        except LLMTransportError:
            raise
        except Exception as error:
            message = str(error)
            if _looks_rate_limited(message):
                raise LLMRateLimitError(message) from error
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        text = self._extract_text(raw_response)
        if text is None:
            raise LLMResponseFormatError("Gemini response did not contain any text parts.")
        return text

    def _http_transport(self, model: str, body: Dict[str, Any]) -> str:
        """Default HTTP transport for the Gemini REST endpoint."""
        import urllib.error
        import urllib.request

        url = f"{self._base_url}/models/{model}:generateContent"
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "x-goog-api-key": self._api_key or "",
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Gemini response timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            if error.code == 429 or _looks_rate_limited(message):
                raise LLMRateLimitError(f"HTTP {error.code}: {message}") from error
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach Gemini endpoint: {error.reason}") from error

        return raw.decode("utf-8")

    @staticmethod
    def _extract_text(raw_response: str) -> Optional[str]:
        """Concatenate the text parts of the first candidate."""
        if not raw_response:
            return None
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response

        if not isinstance(data, dict):
            return raw_response
        error = data.get("error")
        if isinstance(error, dict):
            message = str(error.get("message") or error)
            if error.get("code") == 429 or _looks_rate_limited(str(error.get("status", ""))):
                raise LLMRateLimitError(message)
            raise LLMTransportError(message)

        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return None
        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            return None
        texts = [part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)]
        joined = "".join(texts)
        return joined if joined.strip() else None
