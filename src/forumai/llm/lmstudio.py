from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import structlog

from forumai.llm.backend import (
    GenerationOptions,
    HttpBackend,
    ProviderKind,
    chat_messages,
    probe_text,
)
from forumai.models import Prompt

logger = structlog.get_logger(__name__)

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
MODELS_PATH = "/v1/models"

_TEXT_PATHS = (
    ("choices", 0, "message", "content"),
    ("choices", 0, "text"),
    ("Choices", 0, "Message", "Content"),
)
_DELTA_PATHS = (
    ("choices", 0, "delta", "content"),
    ("Choices", 0, "Delta", "Content"),
)

_SSE_DATA = "data:"
_SSE_DONE = "[DONE]"


class LmStudioBackend(HttpBackend):
    """OpenAI chat-completions compatible server (LM Studio, vLLM, llama.cpp)."""

    name = ProviderKind.LMSTUDIO

    def _payload(
        self, prompt: Prompt, model: str, options: GenerationOptions, *, stream: bool
    ) -> dict[str, Any]:
        return {
            "model": model,
            "messages": chat_messages(prompt),
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "stream": stream,
        }

    async def generate(
        self, prompt: Prompt, *, model: str, options: GenerationOptions
    ) -> str:
        data = await self._post_json(
            CHAT_COMPLETIONS_PATH, self._payload(prompt, model, options, stream=False), options
        )
        return probe_text(data, _TEXT_PATHS)

    async def stream(
        self, prompt: Prompt, *, model: str, options: GenerationOptions
    ) -> AsyncIterator[str]:
        payload = self._payload(prompt, model, options, stream=True)
        async with self._lines(CHAT_COMPLETIONS_PATH, payload, options) as lines:
            async for line in lines:
                if line[: len(_SSE_DATA)].lower() != _SSE_DATA:
                    continue
                body = line[len(_SSE_DATA):].strip()
                if body == _SSE_DONE:
                    return
                try:
                    data = json.loads(body)
                except (ValueError, RecursionError):
                    logger.debug("lmstudio_stream_line_skipped", line=line[:200])
                    continue
                piece = probe_text(data, _DELTA_PATHS)
                if piece:
                    yield piece

    async def list_models(self) -> list[str]:
        data = await self._get_json(MODELS_PATH)
        entries = data.get("data", []) if isinstance(data, dict) else []
        return [e["id"] for e in entries if isinstance(e, dict) and "id" in e]
