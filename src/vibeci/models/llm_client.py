"""Typed client base class shared by all language-model integrations."""

from __future__ import annotations

import ast
import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Optional, Type, TypeVar

from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRateLimitError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "RateLimitTable",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class LLMClientError(RuntimeError):
    """Base error raised for structured LLM client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMRateLimitError(LLMTransportError):
    """Raised when the provider rejects a call because of rate limits or quota."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns payload that is not valid JSON."""


class LLMRetryError(LLMClientError):
    """Raised after exhausting retries; ``last_error`` holds the final cause."""

    def __init__(self, message: str, *, last_error: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.last_error = last_error

    @property
    def rate_limited(self) -> bool:
        return isinstance(self.last_error, LLMRateLimitError)


class RateLimitTable:
    """Per-model backoff state shared by every client that receives it.

    A rate-limited call doubles the model's delay starting from
    ``initial_delay``; a successful call resets it.  Callers wait until the
    model's ``blocked_until`` time before sending again.
    """

    def __init__(
        self,
        *,
        initial_delay: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.initial_delay = initial_delay
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._strikes: Dict[str, int] = {}
        self._blocked_until: Dict[str, float] = {}

    def record_rate_limit(self, model: str) -> float:
        """Register a rate-limit response and return the delay before the next call."""
        with self._lock:
            strikes = self._strikes.get(model, 0)
            delay = self.initial_delay * (2 ** strikes)
            self._strikes[model] = strikes + 1
            self._blocked_until[model] = self._clock() + delay
        return delay

    def record_success(self, model: str) -> None:
        with self._lock:
            self._strikes.pop(model, None)
            self._blocked_until.pop(model, None)

    def strikes(self, model: str) -> int:
        with self._lock:
            return self._strikes.get(model, 0)

    def wait(self, model: str) -> float:
        """Sleep until ``model`` may be called again and return the time waited."""
        with self._lock:
            remaining = self._blocked_until.get(model, 0.0) - self._clock()
        if remaining > 0:
            self._sleep(remaining)
            return remaining
        return 0.0


@dataclass(slots=True)
class LLMRequest(Generic[T]):
    """Typed request payload sent to an LLM.

    ``response_model`` of ``str`` requests free text; anything else requests
    JSON validated against that type.
    """

    prompt: str
    response_model: Type[T]
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    temperature: float = 0.2
    max_attempts: Optional[int] = None

    @property
    def expects_json(self) -> bool:
        return self.response_model is not str

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a provider-neutral payload consumed by ``_raw_invoke``."""
        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "prompt": self.prompt,
            "system_prompt": self.system_prompt,
            "temperature": self.temperature,
            "response_format": "json" if self.expects_json else "text",
        }
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


class LLMClient:
    """High-level helper that enforces JSON responses and schema validation."""

    def __init__(
        self,
        model: str,
        *,
        max_attempts: int = 5,
        retry_delay: float = 2.0,
        rate_limits: Optional[RateLimitTable] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._model = model
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._sleep = sleep
        self.rate_limits = rate_limits or RateLimitTable(initial_delay=retry_delay, sleep=sleep)

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def invoke(self, request: LLMRequest[T]) -> T:
        """Invoke the underlying model and return a validated response."""
        result, _ = self.invoke_structured(request)
        return result

    def complete_text(self, prompt: str, *, system_prompt: Optional[str] = None) -> str:
        """Return free-form text (for example a Markdown report)."""
        return self.invoke(LLMRequest(prompt=prompt, response_model=str, system_prompt=system_prompt))

    def invoke_structured(self, request: LLMRequest[T]) -> tuple[T, Any]:
        """Invoke the model and return both the structured response and raw payload.

        Rate-limit errors back off exponentially through the rate-limit table;
        malformed output is retried after ``retry_delay``.  Other transport
        errors propagate immediately.
        """
        attempts = request.max_attempts or self._max_attempts
        model_name = request.model or self._model
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            self.rate_limits.wait(model_name)
            payload = request.to_payload(self._model)
            try:
                raw = self._raw_invoke(payload)
            except LLMRateLimitError as error:
                last_error = error
                delay = self.rate_limits.record_rate_limit(model_name)
                LOGGER.warning(
                    "Rate limited on %s. Attempt %d/%d. Waiting %.1fs",
                    model_name,
                    attempt,
                    attempts,
                    delay,
                )
                continue
            except LLMResponseFormatError as error:
                # Answered, but without usable text (a blocked or empty candidate).
                raw = None
                last_error = error
            self.rate_limits.record_success(model_name)

            if raw is None:
                LOGGER.info("Discarding empty response on attempt %d/%d: %s", attempt, attempts, last_error)
            elif not request.expects_json:
                text = raw.strip()
                if text:
                    return text, raw  # type: ignore[return-value]
                last_error = LLMResponseFormatError("Model returned an empty response.")
            else:
                try:
                    data = self._parse_json(raw)
                    validated = TypeAdapter(request.response_model).validate_python(data)
                    return validated, data
                except (LLMResponseFormatError, ValidationError) as error:
                    last_error = error
                    LOGGER.info("Discarding malformed response on attempt %d/%d: %s", attempt, attempts, error)
            if attempt < attempts:
                self._sleep(self._retry_delay)

        error_message = f"Failed to produce a usable response after {attempts} attempt(s) for model {model_name}"
        raise LLMRetryError(error_message, last_error=last_error) from last_error

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def _parse_json(raw_response: str) -> Any:
        """Decode the first readable JSON (or Python literal) value in ``raw_response``."""
        text = raw_response.strip()
        if not text:
            raise LLMResponseFormatError("Model returned an empty response.")

        for candidate in _json_candidates(text):
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                pass
            try:
                return _jsonable(ast.literal_eval(candidate))
            except (SyntaxError, ValueError):
                continue

        raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}")


_FENCED = re.compile(r"^```[\w-]*[ \t]*\n(?P<body>.*?)\n?```", re.DOTALL)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_TYPOGRAPHIC = str.maketrans({"\u201c": '"', "\u201d": '"', "\u00a0": " ", "\ufeff": ""})


def _json_candidates(text: str) -> list[str]:
    """Readings of ``text`` to try in order, verbatim before quote-normalised.

    Typographic quotes can legitimately sit inside string values, so they are
    only rewritten once every verbatim reading has failed.
    """
    candidates: list[str] = []
    for variant in (text, text.translate(_TYPOGRAPHIC)):
        fenced = _FENCED.match(variant)
        body = fenced.group("body").strip() if fenced else variant
        block = _outermost_block(body)
        for candidate in (variant, body, _TRAILING_COMMA.sub(r"\1", block) if block else None):
            if candidate and candidate not in candidates:
                candidates.append(candidate)
    return candidates


def _outermost_block(text: str) -> str | None:
    """Return the first balanced ``{...}`` or ``[...]`` span, skipping string contents."""
    closers: list[str] = []
    start: Optional[int] = None
    in_string = escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"' and closers:
            in_string = True
        elif char in "{[":
            start = index if start is None else start
            closers.append("}" if char == "{" else "]")
        elif closers and char == closers[-1]:
            closers.pop()
            if not closers:
                return text[start : index + 1]
    return None


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
