from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import structlog

from forumai.llm.backend import GenerationOptions, HttpBackend, ProviderKind, probe_text
from forumai.models import Prompt

logger = structlog.get_logger(__name__)

GENERATE_PATH = "/api/generate"
TAGS_PATH = "/api/tags"

# Field casing differs across server builds.
_TEXT_PATHS = (("response",), ("Response",), ("message", "content"))


class OllamaBackend(HttpBackend):
    """Local inference server speaking the ``/api/generate`` protocol."""

    name = ProviderKind.OLLAMA

    def _payload(
        self, prompt: Prompt, model: str, options: GenerationOptions, *, stream: bool
    ) -> dict[str, Any]:
        return {
            "model": model,
            "prompt": prompt.text,
            "stream": stream,
            "options": {
                "temperature": options.temperature,
                "num_predict": options.max_tokens,
            },
        }

    async def generate(
        self, prompt: Prompt, *, model: str, options: GenerationOptions
    ) -> str:
        data = await self._post_json(
            GENERATE_PATH, self._payload(prompt, model, options, stream=False), options
        )
        return probe_text(data, _TEXT_PATHS)

    async def stream(
        self, prompt: Prompt, *, model: str, options: GenerationOptions
    ) -> AsyncIterator[str]:
        payload = self._payload(prompt, model, options, stream=True)
        async with self._lines(GENERATE_PATH, payload, options) as lines:
            async for line in lines:
                # NDJSON: one object per line
                try:
                    data = json.loads(line)
                except (ValueError, RecursionError):
                    logger.debug("ollama_stream_line_skipped", line=line[:200])
                    continue
                piece = probe_text(data, _TEXT_PATHS)
                if piece:
                    yield piece
                if isinstance(data, dict) and data.get("done") is True:
                    return

    async def list_models(self) -> list[str]:
        data = await self._get_json(TAGS_PATH)
        models = data.get("models", []) if isinstance(data, dict) else []
        return [m["name"] for m in models if isinstance(m, dict) and "name" in m]
