from __future__ import annotations

import httpx

from .errors import TelegramError, VKError

# Too many requests per second, flood control, internal server error.
VK_RETRYABLE_CODES = frozenset({6, 9, 10})


def _status_retryable(code: int | None) -> bool:
    return code == 429 or (isinstance(code, int) and code >= 500)


def _retry_after_header(response: httpx.Response) -> float | None:
    raw = (response.headers.get("Retry-After") or "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def is_retryable_http_exception(exc: BaseException) -> tuple[bool, float | None, str | None]:
    """
    Retry policy shared by the VK and Telegram clients:
    - transport errors (timeouts, connection resets)
    - HTTP 429 and 500+
    - VK API error codes 6/9/10
    - Telegram errors that carry retry_after
    """
    if isinstance(exc, VKError):
        if exc.code in VK_RETRYABLE_CODES:
            return True, None, f"vk_error_{exc.code}"
        return False, None, f"vk_error_{exc.code}" if exc.code is not None else "vk_error"

    if isinstance(exc, TelegramError):
        if exc.retry_after is not None:
            return True, float(exc.retry_after), "telegram_retry_after"
        if _status_retryable(exc.code):
            return True, None, f"http_{exc.code}"
        return False, None, f"telegram_{exc.code}" if exc.code is not None else "telegram_error"

    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        if _status_retryable(code):
            return True, _retry_after_header(exc.response), f"http_{code}"
        return False, None, f"http_{code}"

    if isinstance(exc, httpx.TransportError):
        return True, None, "network_error"

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True, None, "network_error"

    return False, None, None
