from __future__ import annotations

import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar

import httpx
from pydantic import BaseModel, ConfigDict

from as_built.config import DEFAULT_PROVIDER_TABLE, LlmProvider, LlmTier, ProviderProfile, ProviderTable
from as_built.exceptions import AsBuiltError
from as_built.logging import logger
from as_built.models import LlmResponse, TokenUsage

if TYPE_CHECKING:
    from collections.abc import Mapping

DEFAULT_REQUEST_TIMEOUT = 300.0
_STATUS_IN_MESSAGE = re.compile(r"\b(4\d{2}|5\d{2})\b")


class LlmErrorCode(StrEnum):
    """Closed taxonomy of model call failures."""

    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    SERVER_ERROR = "SERVER_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    CONTENT_FILTER = "CONTENT_FILTER"
    CONTEXT_LENGTH = "CONTEXT_LENGTH"
    UNKNOWN = "UNKNOWN"


RETRYABLE_CODES = frozenset({LlmErrorCode.RATE_LIMIT, LlmErrorCode.TIMEOUT, LlmErrorCode.SERVER_ERROR})


@dataclass(frozen=True)
class LlmError(AsBuiltError):
    """Classified failure of a model call."""

    code: LlmErrorCode
    provider: LlmProvider
    message: str
    status_code: int | None = None

    @property
    def retryable(self) -> bool:
        """Only rate limits, timeouts and server errors can succeed on a second try."""
        return self.code in RETRYABLE_CODES


class RawLlmFailure(BaseModel):
    """Structured view of a failed call, before classification."""

    model_config = ConfigDict(frozen=True)

    status_code: int | None = None
    message: str = ""


_RATE_LIMIT_PHRASES = ("rate limit", "rate_limit", "too many requests", "quota", "throttl")
_TIMEOUT_PHRASES = (
    "timeout",
    "timed out",
    "deadline exceeded",
    "econnreset",
    "socket hang up",
    "connection reset",
    "connection error",
)
_AUTH_PHRASES = ("unauthorized", "forbidden", "invalid api key", "invalid_api_key", "authentication")
_CONTENT_FILTER_PHRASES = ("content filter", "content_filter", "safety", "blocked")
_CONTEXT_LENGTH_PHRASES = ("context length", "context_length", "maximum context", "token limit", "too long")
_BAD_REQUEST_PHRASES = ("bad request", "invalid")


def _mentions(text: str, phrases: tuple[str, ...]) -> bool:
    return any(phrase in text for phrase in phrases)


def extract_status_code(message: str) -> int | None:
    """Find an HTTP status (4xx/5xx) quoted inside an error message."""
    match = _STATUS_IN_MESSAGE.search(message)
    return int(match.group(1)) if match else None


def classify_error(failure: RawLlmFailure, provider: LlmProvider) -> LlmError:
    """Map a raw failure onto the closed error taxonomy.

    Rules are tried in priority order: rate limit, timeout, authentication,
    content filter, context length, bad request, server error, unknown. This is
    the only place where error messages are pattern-matched.

    Args:
        failure (RawLlmFailure): status code (if any) and message of the failure
        provider (LlmProvider): provider that failed

    Returns:
        LlmError: the classified error
    """
    message = failure.message
    lower = message.lower()
    status = failure.status_code if failure.status_code is not None else extract_status_code(message)

    if status == 429 or _mentions(lower, _RATE_LIMIT_PHRASES):  # noqa: PLR2004
        code, text = LlmErrorCode.RATE_LIMIT, f"Rate limited by {provider}. {message}"
        status = 429
    elif _mentions(lower, _TIMEOUT_PHRASES):
        code, text = LlmErrorCode.TIMEOUT, f"Request to {provider} timed out. {message}"
    elif status in {401, 403} or _mentions(lower, _AUTH_PHRASES):
        code, text = LlmErrorCode.AUTH_ERROR, f"Authentication failed for {provider}. Check your API key. {message}"
        status = status or 401
    elif _mentions(lower, _CONTENT_FILTER_PHRASES):
        code, text = LlmErrorCode.CONTENT_FILTER, f"Content was filtered by {provider}. {message}"
    elif _mentions(lower, _CONTEXT_LENGTH_PHRASES):
        code, text = LlmErrorCode.CONTEXT_LENGTH, f"Context window exceeded for {provider}. {message}"
        status = status or 400
    elif status == 400 or _mentions(lower, _BAD_REQUEST_PHRASES):  # noqa: PLR2004
        code, text = LlmErrorCode.INVALID_REQUEST, f"Invalid request to {provider}. {message}"
        status = 400
    elif status is not None and status >= 500:  # noqa: PLR2004
        code, text = LlmErrorCode.SERVER_ERROR, f"{provider} server error ({status}). {message}"
    else:
        code, text = LlmErrorCode.UNKNOWN, message or f"{provider} call failed"

    logger.info("Classified LLM failure", provider=str(provider), code=str(code), status_code=status)
    return LlmError(code=code, provider=provider, message=text.strip(), status_code=status)


def error_message_from_response(response: httpx.Response) -> str:
    """Pull a readable message out of a vendor error body.

    All three vendors use some variant of ``{"error": {"message": ...}}``.
    """
    try:
        data = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if data.get("message"):
            return str(data["message"])
    return response.text[:500]


# ------------------------------- Backends ------------------------------------


class ProviderBackend(ABC):
    """Request and response shapes of one vendor REST API."""

    finish_reasons: ClassVar[dict[str, str]] = {}

    @abstractmethod
    def url(self, profile: ProviderProfile, model_id: str) -> str: ...

    @abstractmethod
    def headers(self, api_key: str) -> dict[str, str]: ...

    @abstractmethod
    def payload(self, model_id: str, prompt: str, max_output_tokens: int) -> dict[str, Any]: ...

    @abstractmethod
    def parse(self, data: dict[str, Any]) -> tuple[str, TokenUsage, str]:
        """Return ``(text, usage, raw finish reason)`` from a success body."""

    def normalize_finish_reason(self, raw: str | None) -> str:
        """Map a vendor finish reason onto ``stop``/``length``/lower-cased raw value."""
        if not raw:
            return "unknown"
        return self.finish_reasons.get(raw, raw.lower())


class GeminiBackend(ProviderBackend):
    finish_reasons: ClassVar[dict[str, str]] = {"STOP": "stop", "MAX_TOKENS": "length"}

    def url(self, profile: ProviderProfile, model_id: str) -> str:
        return f"{profile.base_url}/v1beta/models/{model_id}:generateContent"

    def headers(self, api_key: str) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": api_key}

    def payload(self, model_id: str, prompt: str, max_output_tokens: int) -> dict[str, Any]:  # noqa: ARG002
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"maxOutputTokens": max_output_tokens},
        }

    def parse(self, data: dict[str, Any]) -> tuple[str, TokenUsage, str]:
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "no candidates")
            msg = f"Prompt blocked by safety filters ({reason})"
            raise ValueError(msg)
        first = candidates[0]
        parts = (first.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        meta = data.get("usageMetadata") or {}
        usage = TokenUsage(
            prompt_tokens=meta.get("promptTokenCount", 0),
            completion_tokens=meta.get("candidatesTokenCount", 0),
        )
        return text, usage, first.get("finishReason", "")


class ClaudeBackend(ProviderBackend):
    api_version = "2023-06-01"
    finish_reasons: ClassVar[dict[str, str]] = {
        "end_turn": "stop",
        "stop_sequence": "stop",
        "max_tokens": "length",
    }

    def url(self, profile: ProviderProfile, model_id: str) -> str:  # noqa: ARG002
        return f"{profile.base_url}/v1/messages"

    def headers(self, api_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": self.api_version,
        }

    def payload(self, model_id: str, prompt: str, max_output_tokens: int) -> dict[str, Any]:
        return {
            "model": model_id,
            "max_tokens": max_output_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }

    def parse(self, data: dict[str, Any]) -> tuple[str, TokenUsage, str]:
        blocks = data["content"]
        text = "".join(block.get("text", "") for block in blocks if block.get("type") == "text")
        usage = data.get("usage") or {}
        return (
            text,
            TokenUsage(
                prompt_tokens=usage.get("input_tokens", 0),
                completion_tokens=usage.get("output_tokens", 0),
            ),
            data.get("stop_reason") or "",
        )


class OpenAIBackend(ProviderBackend):
    finish_reasons: ClassVar[dict[str, str]] = {"stop": "stop", "length": "length"}

    def url(self, profile: ProviderProfile, model_id: str) -> str:  # noqa: ARG002
        return f"{profile.base_url}/v1/chat/completions"

    def headers(self, api_key: str) -> dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}

    def payload(self, model_id: str, prompt: str, max_output_tokens: int) -> dict[str, Any]:
        return {
            "model": model_id,
            "max_tokens": max_output_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }

    def parse(self, data: dict[str, Any]) -> tuple[str, TokenUsage, str]:
        choice = data["choices"][0]
        if choice.get("finish_reason") == "content_filter":
            msg = "Completion stopped by the content_filter"
            raise ValueError(msg)
        usage = data.get("usage") or {}
        return (
            choice["message"].get("content") or "",
            TokenUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
            ),
            choice.get("finish_reason") or "",
        )


BACKENDS: dict[LlmProvider, ProviderBackend] = {
    LlmProvider.GEMINI: GeminiBackend(),
    LlmProvider.CLAUDE: ClaudeBackend(),
    LlmProvider.OPENAI: OpenAIBackend(),
}


# -------------------------------- Gateway ------------------------------------


class LlmGateway:
    """Uniform ``generate`` call over the three vendor REST APIs.

    Every failure leaves as a classified :class:`LlmError`.
    """

    def __init__(
        self,
        provider_table: ProviderTable = DEFAULT_PROVIDER_TABLE,
        client: httpx.AsyncClient | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.provider_table = provider_table
        self.client = client
        self.environ = environ

    def resolve_api_key(self, provider: LlmProvider, credential: str | None = None) -> str:
        """Return the override credential, else the provider's environment variable.

        Raises:
            LlmError: classified as AUTH_ERROR when no key is available
        """
        if credential:
            return credential
        env_var = self.provider_table.profile(provider).api_key_env
        environ = self.environ if self.environ is not None else os.environ
        key = environ.get(env_var, "")
        if not key:
            raise classify_error(
                RawLlmFailure(
                    status_code=401,
                    message=f"No API key available: set {env_var} or pass a key explicitly.",
                ),
                provider,
            )
        return key

    async def generate(
        self,
        provider: LlmProvider,
        tier: LlmTier,
        prompt: str,
        credential: str | None = None,
        *,
        timeout: float | None = None,
    ) -> LlmResponse:
        """Send ``prompt`` to the model selected by ``provider`` and ``tier``.

        Args:
            provider (LlmProvider): vendor to call
            tier (LlmTier): model tier
            prompt (str): full prompt text
            credential (str | None): API key overriding the environment
            timeout (float | None): HTTP timeout in seconds

        Raises:
            LlmError: for any failure, already classified

        Returns:
            LlmResponse: text, usage, model id and normalized finish reason
        """
        profile = self.provider_table.profile(provider)
        model_id = profile.model_ids[tier]
        backend = BACKENDS[provider]
        api_key = self.resolve_api_key(provider, credential)

        logger.info("Calling LLM", provider=str(provider), model=model_id, prompt_chars=len(prompt))
        try:
            response = await self._post(
                backend.url(profile, model_id),
                headers=backend.headers(api_key),
                payload=backend.payload(model_id, prompt, profile.max_output_tokens),
                timeout=timeout if timeout is not None else DEFAULT_REQUEST_TIMEOUT,
            )
        except httpx.TimeoutException as e:
            raise classify_error(RawLlmFailure(message=f"Request timed out: {e!s}"), provider) from e
        except httpx.TransportError as e:
            failure = RawLlmFailure(message=f"Connection error ({type(e).__name__}): {e!s}")
            raise classify_error(failure, provider) from e

        if response.is_error:
            failure = RawLlmFailure(status_code=response.status_code, message=error_message_from_response(response))
            raise classify_error(failure, provider)

        try:
            text, usage, raw_reason = backend.parse(response.json())
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise classify_error(RawLlmFailure(message=f"Unusable response body: {e!s}"), provider) from e

        result = LlmResponse(
            text=text,
            token_usage=usage,
            model_id=model_id,
            finish_reason=backend.normalize_finish_reason(raw_reason),
        )
        logger.info(
            "LLM response",
            provider=str(provider),
            model=model_id,
            finish_reason=result.finish_reason,
            total_tokens=usage.total_tokens,
        )
        return result

    async def _post(
        self,
        url: str,
        *,
        headers: dict[str, str],
        payload: dict[str, Any],
        timeout: float,
    ) -> httpx.Response:
        if self.client is not None:
            return await self.client.post(url, json=payload, headers=headers, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(url, json=payload, headers=headers)
