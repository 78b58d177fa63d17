from __future__ import annotations


class ForumAIError(Exception):
    """Base class for errors raised by the AI core."""


class ProviderError(ForumAIError):
    def __init__(self, message: str, *, provider: str) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderUnreachableError(ProviderError):
    """The backend could not be reached (connection refused, DNS, reset)."""


class ProviderProtocolError(ProviderError):
    """Non-success HTTP status or an envelope that could not be decoded."""

    def __init__(
        self, message: str, *, provider: str, status_code: int | None = None
    ) -> None:
        super().__init__(message, provider=provider)
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """The call exceeded its configured duration."""


class ModerationParseError(ForumAIError):
    pass


class TranslationItemError(ForumAIError):
    def __init__(self, message: str, *, key: str) -> None:
        super().__init__(message)
        self.key = key
