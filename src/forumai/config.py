import logging

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_prefix": "", "env_file": ".env", "env_file_encoding": "utf-8"}

    # Provider selection
    ai_provider: str = "ollama"                      # "ollama" | "lmstudio" | "litellm"

    # Endpoints
    ollama_endpoint: str = "http://localhost:11434"
    lmstudio_endpoint: str = "http://localhost:1234"
    litellm_api_key: str = ""

    # Generation defaults
    default_model: str = "llama3.1"
    temperature: float = 0.2
    max_tokens: int = Field(default=512, gt=0)
    request_timeout_seconds: float = Field(default=60.0, gt=0)

    # Moderation / translation
    moderation_temperature: float = 0.0
    source_language: str = "en"
    translation_provider: str = ""                   # empty: same as ai_provider
    translation_model: str = ""                      # empty: same as default_model

    # Logging & telemetry
    log_json: bool = True
    log_level: str = "info"
    telemetry_enabled: bool = False
    telemetry_console_export: bool = False
    service_name: str = "forumai"

    # Charter catalog
    charters_path: str = "charters.yaml"

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, v: str) -> str:
        if v.upper() not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level {v!r}")
        return v.lower()
