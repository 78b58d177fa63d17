from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing

import structlog
from opentelemetry.trace import Span, SpanKind

from forumai.config import Settings
from forumai.errors import ForumAIError, ProviderTimeoutError
from forumai.llm.backend import ChatBackend, GenerationOptions, ProviderKind
from forumai.models import Charter, GenerationRequest, GenerationResult, Prompt
from forumai.telemetry import (
    METRIC_TEXT_REQUESTS,
    METRIC_TEXT_REQUESTS_DURATION,
    SPAN_GENERATE,
    SPAN_TRANSLATE,
    SPAN_TRANSLATE_STREAM,
    TAG_DURATION_MS,
    TAG_INPUT_LENGTH,
    TAG_MODEL,
    TAG_OPERATION,
    TAG_OUTCOME,
    TAG_OUTPUT_LENGTH,
    TAG_PROVIDER,
    TAG_STREAMING,
    TAG_TARGET_LANGUAGE,
    Telemetry,
)

logger = structlog.get_logger(__name__)

TRANSLATOR_INSTRUCTIONS = (
    "Translate user-provided text into the specified target language while preserving "
    "formatting, markdown and links. Only output the translated text without any preface."
)

TRANSLATOR_CHARTER = Charter(name="Translator", purpose=TRANSLATOR_INSTRUCTIONS)

STREAM_TRANSLATOR_SYSTEM = (
    "You are a professional translator. Translate the user's text into the target "
    "language while preserving the original formatting, markdown and links. Only output "
    "the translated text without any preface."
)


def translation_input(text: str, target_language: str) -> str:
    return f"Target language: {target_language}\n\nText to translate:\n\n{text}"


class TextGenerationService:
    """Backend-agnostic facade over the registered chat backends."""

    def __init__(
        self,
        backends: Sequence[ChatBackend],
        *,
        settings: Settings,
        telemetry: Telemetry,
    ) -> None:
        if not backends:
            raise ValueError("at least one backend is required")
        self._backends = list(backends)
        self._settings = settings
        self._telemetry = telemetry

    @property
    def default_model(self) -> str:
        return self._settings.default_model

    @property
    def translation_provider(self) -> str:
        return self._settings.translation_provider or self._settings.ai_provider

    @property
    def translation_model(self) -> str:
        return self._settings.translation_model or self._settings.default_model

    def select_backend(self, provider: str | None = None) -> ChatBackend:
        wanted = (provider or self._settings.ai_provider).strip().lower()
        for backend in self._backends:
            if backend.name.lower() == wanted:
                return backend
        for backend in self._backends:
            if backend.name == ProviderKind.OLLAMA:
                return backend
        return self._backends[0]

    def _options(
        self,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout_seconds: float | None = None,
    ) -> GenerationOptions:
        return GenerationOptions(
            temperature=temperature if temperature is not None else self._settings.temperature,
            max_tokens=max_tokens if max_tokens is not None else self._settings.max_tokens,
            timeout_seconds=timeout_seconds or self._settings.request_timeout_seconds,
        )

    def _record(self, *, provider: str, model: str, operation: str, outcome: str, elapsed_ms: float) -> None:
        attributes = {
            TAG_PROVIDER: provider,
            TAG_MODEL: model,
            TAG_OPERATION: operation,
            TAG_OUTCOME: outcome,
        }
        self._telemetry.get_counter(METRIC_TEXT_REQUESTS).add(1, attributes)
        self._telemetry.get_histogram(METRIC_TEXT_REQUESTS_DURATION).record(elapsed_ms, attributes)

    async def _run(
        self,
        *,
        span_name: str,
        operation: str,
        prompt: Prompt,
        model: str,
        options: GenerationOptions,
        input_length: int,
        provider: str | None = None,
    ) -> GenerationResult:
        backend = self.select_backend(provider)

        def configure(span: Span) -> None:
            span.set_attribute(TAG_PROVIDER, backend.name)
            span.set_attribute(TAG_MODEL, model)
            span.set_attribute(TAG_INPUT_LENGTH, input_length)

        log = logger.bind(provider=backend.name, model=model, operation=operation)
        start = time.monotonic()
        outcome = "error"
        with self._telemetry.start_span(span_name, SpanKind.CLIENT, configure) as span:
            try:
                async with asyncio.timeout(options.timeout_seconds):
                    text = await backend.generate(prompt, model=model, options=options)
            except asyncio.CancelledError:
                outcome = "cancelled"
                raise
            except TimeoutError as e:
                raise ProviderTimeoutError(
                    f"{backend.name} did not answer within {options.timeout_seconds}s",
                    provider=backend.name,
                ) from e
            except Exception as e:
                log.warning("generation_failed", error_type=type(e).__name__, error=str(e))
                raise
            else:
                outcome = "ok"
            finally:
                elapsed_ms = (time.monotonic() - start) * 1000
                span.set_attribute(TAG_DURATION_MS, elapsed_ms)
                self._record(
                    provider=backend.name,
                    model=model,
                    operation=operation,
                    outcome=outcome,
                    elapsed_ms=elapsed_ms,
                )
            span.set_attribute(TAG_OUTPUT_LENGTH, len(text))

        log.info(
            "generation_complete",
            input_length=input_length,
            output_length=len(text),
            latency_ms=int(elapsed_ms),
        )
        return GenerationResult(
            text=text,
            elapsed_ms=int(elapsed_ms),
            provider=backend.name,
            model=model,
        )

    async def complete(self, request: GenerationRequest) -> GenerationResult:
        prompt = Prompt(system=request.charter.build_system_prompt(), user=request.user_input)
        return await self._run(
            span_name=SPAN_GENERATE,
            operation="generate",
            prompt=prompt,
            model=request.model or self.default_model,
            options=self._options(
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                timeout_seconds=request.timeout_seconds,
            ),
            input_length=len(request.user_input),
            provider=request.provider,
        )

    async def generate(
        self,
        charter: Charter,
        user_input: str,
        model: str | None = None,
        *,
        provider: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout_seconds: float | None = None,
    ) -> str:
        result = await self.complete(
            GenerationRequest(
                charter=charter,
                user_input=user_input,
                model=model,
                provider=provider,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout_seconds=timeout_seconds,
            )
        )
        return result.text

    async def translate(
        self, text: str, target_language: str, model: str | None = None
    ) -> str:
        prompt = Prompt(
            system=TRANSLATOR_CHARTER.build_system_prompt(),
            user=translation_input(text, target_language),
        )
        result = await self._run(
            span_name=SPAN_TRANSLATE,
            operation="translate",
            prompt=prompt,
            model=model or self.translation_model,
            options=self._options(),
            input_length=len(text),
            provider=self.translation_provider,
        )
        return result.text

    async def translate_stream(
        self, text: str, target_language: str, model: str | None = None
    ) -> AsyncIterator[str]:
        """Yield translated text incrementally.

        Wrap in ``contextlib.aclosing`` when the consumer may stop early so the
        backend connection is released immediately. The request timeout bounds
        the total time spent waiting on the backend, not the consumer's time
        between chunks. When the backend fails before producing anything, the
        full translation is fetched instead and yielded word by word.
        """
        backend = self.select_backend(self.translation_provider)
        active_model = model or self.translation_model
        options = self._options()
        prompt = Prompt(
            system=STREAM_TRANSLATOR_SYSTEM,
            user=translation_input(text, target_language),
        )

        def configure(span: Span) -> None:
            span.set_attribute(TAG_PROVIDER, backend.name)
            span.set_attribute(TAG_MODEL, active_model)
            span.set_attribute(TAG_TARGET_LANGUAGE, target_language)
            span.set_attribute(TAG_INPUT_LENGTH, len(text))
            span.set_attribute(TAG_STREAMING, True)

        emitted = 0
        fallback = False
        outcome = "error"
        waited = 0.0
        with self._telemetry.start_span(
            SPAN_TRANSLATE_STREAM, SpanKind.CLIENT, configure, attach=False
        ) as span:
            try:
                async with aclosing(
                    backend.stream(prompt, model=active_model, options=options)
                ) as chunks:
                    while True:
                        remaining = options.timeout_seconds - waited
                        started = time.monotonic()
                        try:
                            async with asyncio.timeout(max(remaining, 0)):
                                piece = await anext(chunks)
                        except StopAsyncIteration:
                            break
                        except TimeoutError as e:
                            raise ProviderTimeoutError(
                                f"{backend.name} stream exceeded {options.timeout_seconds}s",
                                provider=backend.name,
                            ) from e
                        finally:
                            waited += time.monotonic() - started
                        emitted += len(piece)
                        yield piece
            except ForumAIError as e:
                if emitted:
                    raise
                logger.warning(
                    "translate_stream_fallback",
                    provider=backend.name,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                span.set_attribute("ai.stream.fallback", True)
                fallback = True
                outcome = "fallback"
            except GeneratorExit:
                outcome = "closed"
                raise
            except asyncio.CancelledError:
                outcome = "cancelled"
                raise
            else:
                outcome = "ok"
                span.set_attribute(TAG_OUTPUT_LENGTH, emitted)
            finally:
                span.set_attribute(TAG_DURATION_MS, waited * 1000)
                self._record(
                    provider=backend.name,
                    model=active_model,
                    operation="translate_stream",
                    outcome=outcome,
                    elapsed_ms=waited * 1000,
                )

        if fallback:
            full = await self.translate(text, target_language, model=model)
            for word in full.split(" "):
                yield word + " "

    async def list_models(self) -> list[str]:
        backend = self.select_backend()
        models = await backend.list_models()
        logger.info("models_listed", provider=backend.name, count=len(models))
        return models
