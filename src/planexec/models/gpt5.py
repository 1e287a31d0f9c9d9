"""Remote client that speaks the JSON Responses API."""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

__all__ = ["GPT5Client"]

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]


class GPT5Client(LLMClient):
    """Thin adapter around the Responses API used for tool runs and fix-plan elaboration."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1/responses",
        model: str = "gpt-5",
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key or os.getenv("PLANEXEC_API_KEY") or os.getenv("OPENAI_API_KEY")
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Send the request over the configured transport."""
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except (OSError, ValueError) as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        text = self._extract_output_text(raw_response)
        if text is None:
            raise LLMResponseFormatError("Response did not contain output text.")
        return text

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport targeting the Responses endpoint."""
        LOGGER.debug("POST %s (model=%s)", self._base_url, payload.get("model"))
        request = urllib.request.Request(
            self._base_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Model response timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach model endpoint: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")
        return raw.decode("utf-8")

    def _extract_output_text(self, raw_response: str) -> Optional[str]:
        if not raw_response:
            return None
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response
        if not isinstance(data, dict):
            return raw_response

        for container in (data.get("output"), (data.get("response") or {}).get("output")):
            text = self._first_text(container)
            if text:
                return text
        if "output_text" in data and isinstance(data["output_text"], str):
            return data["output_text"]
        return raw_response

    @staticmethod
    def _first_text(container: Any) -> Optional[str]:
        if not container:
            return None
        if isinstance(container, dict):
            container = [container]
        for item in container:
            if not isinstance(item, dict):
                continue
            contents = item.get("content")
            if isinstance(contents, list):
                for content in contents:
                    if not isinstance(content, dict):
                        continue
                    if isinstance(content.get("json"), (dict, list)):
                        return json.dumps(content["json"])
                    text = content.get("text")
                    if isinstance(text, str) and text.strip():
                        return text
            text = item.get("text")
            if isinstance(text, str) and text.strip():
                return text
        return None
