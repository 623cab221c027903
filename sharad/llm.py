"""Model transport — HTTP connection to a text-generation backend.

The orchestrator depends only on the Transport protocol:

    async def send(self, context: RequestContext) -> str: ...

Serialising the context into the provider's format is the transport's job.
Two implementations are provided:

    HttpTransport — real HTTP client. Supports KoboldCpp, OpenAI-compatible
                    completions and OpenAI-compatible chat completions,
                    selected by provider_format.
    EchoTransport — returns the rendered prompt unchanged. Useful for
                    smoke-testing the loop without a running model.

Every failure surfaces as TransportError with a kind of "network",
"timeout", "auth" or "protocol"; the orchestrator decides about retries.
Tests use scripted stub transports (see conftest.py) instead.
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol

import httpx

from sharad.errors import TransportError
from sharad.models import RequestContext
from sharad.prompts import chat_messages, render_completion

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol — every transport implementation must match this signature
# ---------------------------------------------------------------------------

class Transport(Protocol):
    async def send(self, context: RequestContext) -> str: ...


# ---------------------------------------------------------------------------
# HttpTransport — connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai", "openai-chat"]


class HttpTransport:
    """Async HTTP client for text-generation backends.

    Supported formats:
      "koboldcpp"    — POST /api/v1/generate      {"prompt": ...}
                       Response: {"results": [{"text": "..."}]}
      "openai"       — POST /v1/completions       {"model": ..., "prompt": ...}
                       Response: {"choices": [{"text": "..."}]}
      "openai-chat"  — POST /v1/chat/completions  {"model": ..., "messages": [...]}
                       Response: {"choices": [{"message": {"content": "..."}}]}

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "koboldcpp".
        model:           Model identifier, used only by the openai formats.
        timeout:         HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, context: RequestContext) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai-chat":
            url = f"{self._base_url}/v1/chat/completions"
            body: dict = {"messages": chat_messages(context)}
            if self._model:
                body["model"] = self._model
            return url, body

        prompt = render_completion(context)
        if self._format == "openai":
            url = f"{self._base_url}/v1/completions"
            body = {"prompt": prompt}
            if self._model:
                body["model"] = self._model
            return url, body

        # koboldcpp (default)
        url = f"{self._base_url}/api/v1/generate"
        return url, {"prompt": prompt}

    def _parse_response(self, data: dict) -> str:
        """Extract the completion text from the response body."""
        if self._format == "openai-chat":
            message = _first_entry(data, "choices", "OpenAI-compatible chat").get("message")
            if not isinstance(message, dict) or "content" not in message:
                raise TransportError(
                    "Unexpected response format from OpenAI-compatible chat backend", "protocol"
                )
            if message["content"] is None:
                return ""
            return _text(message["content"], "OpenAI-compatible chat")

        if self._format == "openai":
            entry = _first_entry(data, "choices", "OpenAI-compatible")
            return _text(entry.get("text"), "OpenAI-compatible")

        # koboldcpp
        entry = _first_entry(data, "results", "KoboldCpp")
        return _text(entry.get("text"), "KoboldCpp")

    async def send(self, context: RequestContext) -> str:
        url, body = self._build_request(context)
        logger.debug("model request turn=%d url=%s", context.turn, url)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise TransportError(f"Cannot connect to model backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            kind = "auth" if status in (401, 403) else "network"
            raise TransportError(f"Model backend returned HTTP {status}", kind) from e
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Model backend timed out after {self._timeout}s", "timeout"
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Model backend request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError("Model backend returned invalid JSON", "protocol") from e
        text = self._parse_response(data if isinstance(data, dict) else {})
        logger.debug("model response turn=%d len=%d", context.turn, len(text))
        return text


def _first_entry(data: dict, key: str, backend: str) -> dict:
    entries = data.get(key)
    if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
        raise TransportError(f"Unexpected response format from {backend} backend", "protocol")
    return entries[0]


def _text(value: object, backend: str) -> str:
    if not isinstance(value, str):
        raise TransportError(f"Unexpected response format from {backend} backend", "protocol")
    return value


# ---------------------------------------------------------------------------
# EchoTransport — returns the prompt unchanged; useful for loop smoke tests
# ---------------------------------------------------------------------------

class EchoTransport:
    """Returns the rendered completion prompt as-is. No network calls.

    Lets you verify the wiring (context building, parsing, storage writes)
    end-to-end without a running model. The echoed prompt contains the
    example calls from the instructions, so it also exercises the dispatcher.
    """

    async def send(self, context: RequestContext) -> str:
        prompt = render_completion(context)
        logger.debug("EchoTransport turn=%d prompt_len=%d", context.turn, len(prompt))
        return prompt
