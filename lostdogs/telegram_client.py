from __future__ import annotations

import threading
from typing import Any

import httpx

from .errors import TelegramError
from .http_retry import is_retryable_http_exception
from .retry import OnRetryFn, RetryConfig, SleepFn, call_with_retries

TELEGRAM_API_BASE_URL = "https://api.telegram.org"
DEFAULT_TIMEOUT_SECONDS = 10.0

_DEFAULT_TELEGRAM_RETRY = RetryConfig(
    max_attempts=3,
    base_delay_seconds=1.0,
    max_delay_seconds=8.0,
    jitter_ratio=0.2,
    retry_after_cap_seconds=30.0,
)


class TelegramClient:
    """Bot API client bound to one destination chat."""

    def __init__(
        self,
        token: str,
        chat_id: int | str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        base_url: str = TELEGRAM_API_BASE_URL,
        client: httpx.Client | None = None,
        retry: RetryConfig | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
        stop: threading.Event | None = None,
    ) -> None:
        tok = (token or "").strip()
        if not tok:
            raise TelegramError("Telegram bot token must be non-empty")

        self._token = tok
        self._chat_id = chat_id
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._owns_client = client is None
        self._retry = retry or _DEFAULT_TELEGRAM_RETRY
        self._on_retry = on_retry
        self._sleep_fn = sleep_fn
        self._stop = stop

    @property
    def chat_id(self) -> int | str:
        return self._chat_id

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "TelegramClient":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def _call(self, method: str, payload: dict[str, Any]) -> Any:
        url = f"{self._base_url}/bot{self._token}/{method}"

        def _do_call() -> Any:
            resp = self._client.post(url, json=payload)
            try:
                body = resp.json()
            except ValueError:
                # Proxies and outages answer with HTML; let the status decide.
                resp.raise_for_status()
                raise TelegramError(f"{method}: response is not JSON", code=resp.status_code)

            if not isinstance(body, dict):
                raise TelegramError(f"{method}: unexpected response shape", code=resp.status_code)
            if body.get("ok") is True:
                return body.get("result")

            params = body.get("parameters")
            retry_after = params.get("retry_after") if isinstance(params, dict) else None
            code = body.get("error_code")
            desc = (body.get("description") or "").strip() or "unknown error"
            raise TelegramError(
                f"{method} failed: [{code}] {desc}",
                code=int(code) if isinstance(code, int) else resp.status_code,
                retry_after=float(retry_after) if isinstance(retry_after, (int, float)) else None,
            )

        try:
            return call_with_retries(
                _do_call,
                cfg=self._retry,
                is_retryable=is_retryable_http_exception,
                operation=f"telegram.{method}",
                on_retry=self._on_retry,
                sleep_fn=self._sleep_fn,
                stop=self._stop,
            )
        except TelegramError:
            raise
        except httpx.HTTPStatusError as e:
            raise TelegramError(
                f"{method}: HTTP {e.response.status_code}", code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise TelegramError(f"{method}: request failed: {e}") from e

    def send_message(self, text: str, *, parse_mode: str | None = "HTML") -> int | None:
        payload: dict[str, Any] = {
            "chat_id": self._chat_id,
            "text": text,
            "disable_web_page_preview": False,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode

        result = self._call("sendMessage", payload)
        if isinstance(result, dict) and isinstance(result.get("message_id"), int):
            return int(result["message_id"])
        return None
