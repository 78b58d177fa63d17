from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import aclosing, contextmanager
from enum import StrEnum
from typing import Any

import httpx
import litellm
import structlog
from litellm import acompletion
from pydantic import BaseModel, Field

from forumai.errors import (
    ProviderProtocolError,
    ProviderTimeoutError,
    ProviderUnreachableError,
)
from forumai.models import Prompt

logger = structlog.get_logger(__name__)


class ProviderKind(StrEnum):
    OLLAMA = "ollama"
    LMSTUDIO = "lmstudio"
    LITELLM = "litellm"


class GenerationOptions(BaseModel, frozen=True):
    temperature: float
    max_tokens: int = Field(gt=0)
    timeout_seconds: float = Field(gt=0)


class ChatBackend(ABC):
    """Abstract interface for one text-generation provider."""

    name: str

    @abstractmethod
    async def generate(
        self, prompt: Prompt, *, model: str, options: GenerationOptions
    ) -> str: ...

    @abstractmethod
    def stream(
        self, prompt: Prompt, *, model: str, options: GenerationOptions
    ) -> AsyncIterator[str]: ...

    @abstractmethod
    async def list_models(self) -> list[str]: ...

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Envelope helpers
# ---------------------------------------------------------------------------


def normalize_base_url(endpoint: str) -> str:
    url = endpoint.strip()
    if not url.lower().startswith(("http://", "https://")):
        url = "http://" + url
    return url.rstrip("/")


def probe_text(data: Any, paths: Sequence[Sequence[str | int]]) -> str:
    """Return the first string found under any of ``paths``, else ``""``."""
    for path in paths:
        node = data
        try:
            for part in path:
                node = node[part]
        except (KeyError, IndexError, TypeError):
            continue
        if isinstance(node, str):
            return node
    return ""


def chat_messages(prompt: Prompt) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": prompt.system},
        {"role": "user", "content": prompt.user},
    ]


@contextmanager
def map_transport_errors(provider: str) -> Iterator[None]:
    try:
        yield
    except httpx.TimeoutException as e:
        raise ProviderTimeoutError(
            f"{provider} request timed out: {e!s}", provider=provider
        ) from e
    except httpx.HTTPStatusError as e:
        raise ProviderProtocolError(
            f"{provider} returned HTTP {e.response.status_code}",
            provider=provider,
            status_code=e.response.status_code,
        ) from e
    except httpx.DecodingError as e:
        raise ProviderProtocolError(
            f"{provider} sent an undecodable body: {e!s}", provider=provider
        ) from e
    except httpx.RequestError as e:
        raise ProviderUnreachableError(
            f"{provider} unreachable: {e!s}", provider=provider
        ) from e


# ---------------------------------------------------------------------------
# HTTP backends
# ---------------------------------------------------------------------------


class HttpBackend(ChatBackend):
    """Shared plumbing for providers spoken to directly over HTTP."""

    def __init__(self, endpoint: str, *, client: httpx.AsyncClient | None = None) -> None:
        self._endpoint = endpoint
        self._base_url: str | None = None
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    @property
    def base_url(self) -> str:
        # Resolved on first use, immutable afterwards.
        if self._base_url is None:
            self._base_url = normalize_base_url(self._endpoint)
            logger.debug("provider_base_url_resolved", provider=self.name, base_url=self._base_url)
        return self._base_url

    def _decode(self, body: str) -> Any:
        try:
            return json.loads(body)
        except (ValueError, RecursionError) as e:
            raise ProviderProtocolError(
                f"{self.name} returned a non-JSON envelope: {e}", provider=self.name
            ) from e

    async def _post_json(
        self, path: str, payload: dict[str, Any], options: GenerationOptions
    ) -> Any:
        with map_transport_errors(self.name):
            response = await self._client.post(
                self.base_url + path, json=payload, timeout=options.timeout_seconds
            )
            response.raise_for_status()
        return self._decode(response.text)

    async def _get_json(self, path: str) -> Any:
        with map_transport_errors(self.name):
            response = await self._client.get(self.base_url + path)
            response.raise_for_status()
        return self._decode(response.text)

    async def _stream_lines(
        self, path: str, payload: dict[str, Any], options: GenerationOptions
    ) -> AsyncIterator[str]:
        """Yield non-blank response lines; the response is closed when this generator is."""
        with map_transport_errors(self.name):
            async with self._client.stream(
                "POST", self.base_url + path, json=payload, timeout=options.timeout_seconds
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    line = line.strip()
                    if line:
                        yield line

    def _lines(
        self, path: str, payload: dict[str, Any], options: GenerationOptions
    ) -> aclosing[AsyncIterator[str]]:
        return aclosing(self._stream_lines(path, payload, options))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# LiteLLM backend
# ---------------------------------------------------------------------------


@contextmanager
def map_litellm_errors(provider: str) -> Iterator[None]:
    try:
        yield
    except litellm.Timeout as e:
        raise ProviderTimeoutError(f"{provider} request timed out: {e!s}", provider=provider) from e
    except litellm.APIConnectionError as e:
        raise ProviderUnreachableError(f"{provider} unreachable: {e!s}", provider=provider) from e
    except (
        litellm.APIError,
        litellm.AuthenticationError,
        litellm.BadRequestError,
        litellm.NotFoundError,
        litellm.RateLimitError,
        litellm.ServiceUnavailableError,
        litellm.InternalServerError,
    ) as e:
        raise ProviderProtocolError(
            f"{provider} call failed: {e!s}",
            provider=provider,
            status_code=getattr(e, "status_code", None),
        ) from e


class LiteLLMBackend(ChatBackend):
    """Hosted models routed through LiteLLM."""

    name = ProviderKind.LITELLM

    def __init__(self, api_key: str = "") -> None:
        self._api_key = api_key or None

    async def generate(
        self, prompt: Prompt, *, model: str, options: GenerationOptions
    ) -> str:
        with map_litellm_errors(self.name):
            response = await acompletion(
                model=model,
                messages=chat_messages(prompt),
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                timeout=options.timeout_seconds,
                api_key=self._api_key,
            )
        return response.choices[0].message.content or ""

    async def stream(
        self, prompt: Prompt, *, model: str, options: GenerationOptions
    ) -> AsyncIterator[str]:
        with map_litellm_errors(self.name):
            response = await acompletion(
                model=model,
                messages=chat_messages(prompt),
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                timeout=options.timeout_seconds,
                api_key=self._api_key,
                stream=True,
            )
            async for chunk in response:
                piece = chunk.choices[0].delta.content
                if piece:
                    yield piece

    async def list_models(self) -> list[str]:
        return sorted(litellm.model_list)
