from __future__ import annotations

from typing import Any


class ChatError(Exception):
    pass


class ValidationError(ChatError, ValueError):
    pass


class ConfigError(ChatError):
    pass


class ResourceNotFoundError(ChatError, LookupError):
    pass


class AdapterError(ChatError):
    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.metadata = dict(metadata or {})


class RateLimitError(AdapterError):
    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message, error_code="rate_limited")
        self.retry_after = retry_after


class ChatNotImplementedError(ChatError, NotImplementedError):
    def __init__(self, message: str, *, method: str | None = None) -> None:
        super().__init__(message)
        self.method = method
