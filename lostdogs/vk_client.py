from __future__ import annotations

import threading
from typing import Any, Mapping

import httpx

from .errors import VKError
from .http_retry import is_retryable_http_exception
from .normalize import wall_item_from_api
from .post import WallItem
from .retry import OnRetryFn, RetryConfig, SleepFn, call_with_retries

VK_API_BASE_URL = "https://api.vk.com/method"
DEFAULT_API_VERSION = "5.199"
DEFAULT_TIMEOUT_SECONDS = 10.0

_DEFAULT_VK_RETRY = RetryConfig(
    max_attempts=3,
    base_delay_seconds=1.0,
    max_delay_seconds=8.0,
    jitter_ratio=0.2,
)


class VKClient:
    """
    Thin wrapper around the VK HTTP API methods the service needs.

    Every call is bounded by the HTTP timeout and retried on transient failures;
    anything else surfaces as VKError.
    """

    def __init__(
        self,
        token: str,
        *,
        api_version: str = DEFAULT_API_VERSION,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        base_url: str = VK_API_BASE_URL,
        client: httpx.Client | None = None,
        retry: RetryConfig | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
        stop: threading.Event | None = None,
    ) -> None:
        tok = (token or "").strip()
        if not tok:
            raise VKError("VK access token must be non-empty")

        self._token = tok
        self._api_version = api_version
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._owns_client = client is None
        self._retry = retry or _DEFAULT_VK_RETRY
        self._on_retry = on_retry
        self._sleep_fn = sleep_fn
        self._stop = stop

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "VKClient":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def call(self, method: str, params: Mapping[str, Any]) -> Any:
        """Invoke one API method and return its `response` payload."""
        data = {k: v for k, v in params.items() if v is not None}
        data["access_token"] = self._token
        data["v"] = self._api_version
        url = f"{self._base_url}/{method}"

        def _do_call() -> Any:
            resp = self._client.post(url, data=data)
            resp.raise_for_status()
            try:
                body = resp.json()
            except ValueError as e:
                raise VKError(f"{method}: response is not JSON") from e

            if not isinstance(body, dict):
                raise VKError(f"{method}: unexpected response shape")

            err = body.get("error")
            if isinstance(err, dict):
                code = err.get("error_code")
                msg = (err.get("error_msg") or "").strip() or "unknown error"
                raise VKError(
                    f"{method} failed: [{code}] {msg}",
                    code=int(code) if isinstance(code, int) else None,
                )
            if "response" not in body:
                raise VKError(f"{method}: response field is missing")
            return body["response"]

        try:
            return call_with_retries(
                _do_call,
                cfg=self._retry,
                is_retryable=is_retryable_http_exception,
                operation=f"vk.{method}",
                on_retry=self._on_retry,
                sleep_fn=self._sleep_fn,
                stop=self._stop,
            )
        except VKError:
            raise
        except httpx.HTTPStatusError as e:
            raise VKError(
                f"{method}: HTTP {e.response.status_code}", code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise VKError(f"{method}: request failed: {e}") from e

    def resolve_group(self, screen_name: str) -> int:
        name = (screen_name or "").strip()
        if not name:
            raise VKError("screen_name must be non-empty")

        resp = self.call("utils.resolveScreenName", {"screen_name": name})
        # VK returns an empty list for unknown names.
        if not isinstance(resp, dict) or not resp:
            raise VKError(f"{name}: screen name not found")
        if resp.get("type") != "group":
            raise VKError(f"{name} is not a group (type={resp.get('type')!r})")

        object_id = resp.get("object_id")
        if not isinstance(object_id, int) or object_id <= 0:
            raise VKError(f"{name}: invalid object_id in response")
        return object_id

    def fetch_wall_raw(self, owner_id: int, count: int) -> list[dict[str, Any]]:
        resp = self.call("wall.get", {"owner_id": int(owner_id), "count": int(count)})
        items = resp.get("items") if isinstance(resp, dict) else None
        if not isinstance(items, list):
            raise VKError("wall.get: items field is missing")
        return [i for i in items if isinstance(i, dict)]

    def fetch_wall(self, owner_id: int, count: int) -> list[WallItem]:
        """Most recent `count` wall posts, newest first as VK returns them."""
        out: list[WallItem] = []
        for raw in self.fetch_wall_raw(owner_id, count):
            item = wall_item_from_api(raw)
            if item is not None:
                out.append(item)
        return out

    def wall_post(self, owner_id: int, message: str, *, from_group: bool = True) -> int | None:
        resp = self.call(
            "wall.post",
            {
                "owner_id": int(owner_id),
                "message": message,
                "from_group": 1 if from_group else 0,
            },
        )
        if isinstance(resp, dict) and isinstance(resp.get("post_id"), int):
            return int(resp["post_id"])
        return None
