from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from metahub.errors import ProviderCallFailed


class ProviderError(ProviderCallFailed):
    """Domain-level provider exception."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass
class Prompt:
    message: str
    system: str | None = None
    history: list[dict[str, str]] = field(default_factory=list)
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass
class ProviderReply:
    """Uniform reply. Token counts are None when the provider sent no usage."""

    text: str
    tokens_in: int | None = None
    tokens_out: int | None = None
    model: str | None = None


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.transient


class ServiceProvider(ABC):
    """Common provider contract for all provider implementations."""

    provider_type: str = "base"

    def __init__(
        self,
        name: str,
        config: dict[str, Any],
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.name = name
        self.config = config
        self._transport = transport

    @abstractmethod
    def validate_config(self) -> None:
        """Validate provider-specific config and raise ProviderError on failure."""

    @abstractmethod
    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Estimate request cost in USD."""

    @abstractmethod
    def _request(self, prompt: Prompt) -> ProviderReply:
        """Perform one HTTP round trip."""

    def call(self, prompt: Prompt) -> ProviderReply:
        return self._with_retry(self._request, prompt)

    def _client(self) -> httpx.Client:
        timeout = float(self.config.get("timeout", 60))
        return httpx.Client(timeout=timeout, transport=self._transport)

    def handle_error(self, error: Exception) -> ProviderError:
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            if status == 429:
                return ProviderError("Rate limit reached. Retry later.", transient=True)
            if status in {502, 503, 504}:
                return ProviderError(f"Provider temporarily unavailable ({status}).", transient=True)
            return ProviderError(f"{self.provider_type} API error {status}: {error.response.text}")
        if isinstance(error, httpx.TimeoutException):
            return ProviderError(f"{self.provider_type} request timed out", transient=True)
        if isinstance(error, httpx.RequestError):
            return ProviderError(f"{self.provider_type} request failed: {error}")
        return ProviderError(str(error))

    @retry(
        retry=retry_if_exception(_is_transient),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _with_retry(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ProviderError:
            raise
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as exc:
            raise self.handle_error(exc) from exc
