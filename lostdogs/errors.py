from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class VKError(RuntimeError):
    """Raised when a VK API call fails."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class TelegramError(RuntimeError):
    """Raised when a Telegram Bot API call fails."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.retry_after = retry_after


class StorageError(RuntimeError):
    """Raised when reading or writing state in SQLite fails."""
