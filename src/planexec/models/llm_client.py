"""Typed client base class shared by the model integrations."""

from __future__ import annotations

import ast
import json
import logging
import re
import time
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from typing import Any, Callable, Dict, Generic, Optional, Type, TypeVar

from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

__all__ = [
    "CallableLLMClient",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_METADATA_LEN = 512


def _close_schema(value: Any) -> Any:
    """Recursively mark JSON Schema objects as closed with every key required."""
    if isinstance(value, dict):
        if value.get("type") == "object":
            value["additionalProperties"] = False
            properties = value.get("properties")
            if isinstance(properties, dict):
                value["required"] = list(properties.keys())
                for key, child in list(properties.items()):
                    properties[key] = _close_schema(child)
        for key, child in list(value.items()):
            if key != "properties":
                value[key] = _close_schema(child)
    elif isinstance(value, list):
        return [_close_schema(item) for item in value]
    return value


class LLMClientError(RuntimeError):
    """Base error raised for structured LLM client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns payload that is not valid JSON."""


class LLMRetryError(LLMClientError):
    """Raised after exhausting retries due to repeated validation failures."""


@dataclass(slots=True)
class LLMRequest(Generic[T]):
    """Typed request payload sent to a model."""

    prompt: str
    response_model: Type[T]
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    temperature: float = 0.0
    max_attempts: Optional[int] = None

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a transport-ready payload for the JSON responses API."""

        def _message(role: str, text: str) -> Dict[str, Any]:
            return {"role": role, "content": [{"type": "input_text", "text": text}]}

        messages: list[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append(_message("system", self.system_prompt))
        messages.append(_message("user", self.prompt))

        schema_name = getattr(self.response_model, "__name__", "planexec_response")
        schema = _close_schema(TypeAdapter(self.response_model).json_schema())

        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "input": messages,
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": schema_name,
                    "schema": schema,
                    "strict": True,
                }
            },
        }
        if self.temperature not in (None, 0.0):
            payload["temperature"] = self.temperature
        if self.metadata:
            serialised: Dict[str, str] = {}
            for key, value in self.metadata.items():
                formatted = value if isinstance(value, str) else json.dumps(value, separators=(",", ":"), sort_keys=True)
                if len(formatted) > _MAX_METADATA_LEN:
                    formatted = f"{formatted[: _MAX_METADATA_LEN - 3]}..."
                serialised[key] = formatted
            payload["metadata"] = serialised
        return payload


class LLMClient:
    """High-level helper that enforces JSON responses and schema validation."""

    def __init__(self, model: str, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def invoke(self, request: LLMRequest[T]) -> T:
        """Invoke the underlying model and return a validated response."""
        attempts = request.max_attempts or self._max_attempts
        last_error: Optional[Exception] = None
        adapter = TypeAdapter(request.response_model)

        for attempt in range(1, attempts + 1):
            payload = request.to_payload(self._model)
            try:
                raw = self._raw_invoke(payload)
                data = _hydrate_defaults(request.response_model, self._parse_json(raw))
                return adapter.validate_python(data)
            except (LLMResponseFormatError, ValidationError, LLMTransportError) as error:
                last_error = error
                LOGGER.debug("Model attempt %d/%d failed: %s", attempt, attempts, error)
                if attempt >= attempts:
                    break
                time.sleep(self._retry_delay)

        raise LLMRetryError(
            f"Failed to produce schema-valid JSON after {attempts} attempt(s) for model "
            f"{request.model or self._model}"
        ) from last_error

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def _parse_json(raw_response: str) -> Any:
        """Parse JSON payloads and normalise errors."""
        text = (raw_response or "").strip()
        if not text:
            raise LLMResponseFormatError("Model returned an empty response.")

        candidates = [text]
        repaired = _repair_json_payload(text)
        if repaired and repaired not in candidates:
            candidates.append(repaired)

        for candidate in candidates:
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                literal = _coerce_python_literal(candidate)
                if literal is not None:
                    return literal

        raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}")


class CallableLLMClient(LLMClient):
    """Client backed by a plain function returning the raw model text."""

    def __init__(self, handler: Callable[[Dict[str, Any]], str], *, model: str = "callable") -> None:
        super().__init__(model, max_attempts=1, retry_delay=0.0)
        self._handler = handler

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        return self._handler(payload)


def _strip_code_fence(payload: str) -> str:
    """Remove Markdown-style code fences that wrap JSON payloads."""
    match = re.match(r"```(?:json)?\s*\n(.*?)```", payload, re.IGNORECASE | re.DOTALL)
    if not match:
        return payload
    return match.group(1).strip()


def _repair_json_payload(raw: str) -> str | None:
    """Attempt to salvage the first JSON object embedded in noisy output."""
    stripped = _strip_code_fence(raw.strip())
    if not stripped:
        return None
    opening = None
    expected: list[str] = []
    for index, char in enumerate(stripped):
        if char in "{[":
            if opening is None:
                opening = index
            expected.append("}" if char == "{" else "]")
        elif expected and char == expected[-1]:
            expected.pop()
            if not expected and opening is not None:
                candidate = stripped[opening : index + 1]
                return re.sub(r",(\s*[}\]])", r"\1", candidate.strip())
    return stripped if stripped != raw else None


def _coerce_python_literal(candidate: str) -> Any | None:
    """Fall back to Python literal parsing when JSON decoding fails."""
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, ValueError):
        return None
    if isinstance(literal, (dict, list)):
        return literal
    return None


def _hydrate_defaults(model: Type[Any], payload: Any) -> Any:
    """Populate missing dataclass fields with their defaults."""
    if not isinstance(payload, dict) or not is_dataclass(model):
        return payload
    updated = dict(payload)
    for field_info in fields(model):
        if field_info.name in updated:
            continue
        if field_info.default is not MISSING:
            updated[field_info.name] = field_info.default
        elif field_info.default_factory is not MISSING:  # type: ignore[attr-defined]
            updated[field_info.name] = field_info.default_factory()  # type: ignore[misc]
    return updated
