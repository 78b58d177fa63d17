from __future__ import annotations

import argparse
import asyncio
import sys
from contextlib import aclosing
from typing import Any

import httpx
import structlog

from forumai.charters import load_charters, load_translation_items
from forumai.config import Settings
from forumai.errors import ForumAIError
from forumai.llm.backend import LiteLLMBackend
from forumai.llm.lmstudio import LmStudioBackend
from forumai.llm.ollama import OllamaBackend
from forumai.llm.service import TextGenerationService
from forumai.logging import setup_logging
from forumai.models import Charter
from forumai.moderation.scoring import CharterScoringService
from forumai.moderation.service import ModerationService
from forumai.publishing import LoggingPublisher, ProgressPublisher
from forumai.telemetry import setup_telemetry
from forumai.translation.orchestrator import TranslationOrchestrator

logger = structlog.get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="forumai", description="Forum AI moderation and translation")
    subparsers = parser.add_subparsers(dest="command", required=True)

    gen = subparsers.add_parser("generate", help="Generate a reply under a charter")
    gen.add_argument("--charter", required=True)
    gen.add_argument("--model")
    gen.add_argument("text")

    mod = subparsers.add_parser("moderate", help="Evaluate a post against a charter")
    mod.add_argument("--charter", required=True)
    mod.add_argument("--model")
    mod.add_argument("text")

    score = subparsers.add_parser("score", help="Score content 0-100 for charter compliance")
    score.add_argument("--charter", required=True)
    score.add_argument("--model")
    score.add_argument("text")

    tr = subparsers.add_parser("translate", help="Translate a piece of text")
    tr.add_argument("--lang", required=True)
    tr.add_argument("--stream", action="store_true")
    tr.add_argument("text")

    job = subparsers.add_parser("translate-job", help="Translate a YAML file of key: text strings")
    job.add_argument("--lang", required=True)
    job.add_argument("file")

    subparsers.add_parser("models", help="List models on the active provider")
    return parser.parse_args(argv)


def create_app_components(
    settings: Settings,
    *,
    publisher: ProgressPublisher | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    telemetry = setup_telemetry(settings)
    http_client = http_client or httpx.AsyncClient()

    backends = [
        OllamaBackend(settings.ollama_endpoint, client=http_client),
        LmStudioBackend(settings.lmstudio_endpoint, client=http_client),
        LiteLLMBackend(api_key=settings.litellm_api_key),
    ]
    generator = TextGenerationService(backends, settings=settings, telemetry=telemetry)

    moderation = ModerationService(
        generator, telemetry=telemetry, temperature=settings.moderation_temperature
    )
    scoring = CharterScoringService(generator, telemetry=telemetry)
    orchestrator = TranslationOrchestrator(
        generator,
        publisher or LoggingPublisher(),
        telemetry=telemetry,
        source_language=settings.source_language,
    )

    return {
        "telemetry": telemetry,
        "http_client": http_client,
        "generator": generator,
        "moderation": moderation,
        "scoring": scoring,
        "orchestrator": orchestrator,
    }


def _charter(settings: Settings, name: str) -> Charter:
    charters = load_charters(settings.charters_path)
    if name not in charters:
        raise SystemExit(f"Unknown charter {name!r} (known: {', '.join(sorted(charters))})")
    return charters[name]


async def _run(args: argparse.Namespace, settings: Settings) -> None:
    components = create_app_components(settings)
    generator: TextGenerationService = components["generator"]
    try:
        if args.command == "generate":
            print(await generator.generate(_charter(settings, args.charter), args.text, args.model))

        elif args.command == "moderate":
            moderation: ModerationService = components["moderation"]
            result = await moderation.evaluate_post(
                _charter(settings, args.charter), args.text, args.model
            )
            print(result.model_dump_json(indent=2))

        elif args.command == "score":
            scoring: CharterScoringService = components["scoring"]
            value = await scoring.score_post(_charter(settings, args.charter), args.text, args.model)
            print("unscored" if value is None else f"{value:g}")

        elif args.command == "translate":
            if args.stream:
                async with aclosing(generator.translate_stream(args.text, args.lang)) as chunks:
                    async for chunk in chunks:
                        print(chunk, end="", flush=True)
                print()
            else:
                print(await generator.translate(args.text, args.lang))

        elif args.command == "translate-job":
            orchestrator: TranslationOrchestrator = components["orchestrator"]
            items = load_translation_items(args.file)
            job = await orchestrator.run_job(items, args.lang)
            print(job.model_dump_json(indent=2))

        elif args.command == "models":
            for name in await generator.list_models():
                print(name)
    finally:
        await components["http_client"].aclose()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = Settings()
    setup_logging(json_output=settings.log_json, level=settings.log_level)
    logger.info("forumai_start", command=args.command, provider=settings.ai_provider)

    try:
        asyncio.run(_run(args, settings))
    except ForumAIError as e:
        logger.error("command_failed", command=args.command, error_type=type(e).__name__, error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
