from __future__ import annotations

import json
import unittest
from typing import Any, Callable
from urllib.parse import parse_qs

import httpx

from lostdogs.errors import TelegramError, VKError
from lostdogs.http_retry import is_retryable_http_exception
from lostdogs.retry import RetryConfig, RetryEvent
from lostdogs.telegram_client import TelegramClient
from lostdogs.vk_client import VKClient

_FAST_RETRY = RetryConfig(max_attempts=3, base_delay_seconds=0.5, max_delay_seconds=1.0, jitter_ratio=0.0)


def _scripted(responses: list[Any], requests: list[httpx.Request]) -> Callable[[httpx.Request], httpx.Response]:
    """MockTransport handler replaying `responses` in order; exceptions are raised."""
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)

    return handler


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}


class TestVKClient(unittest.TestCase):
    def _client(self, responses: list[Any], **kw: Any) -> tuple[VKClient, list[httpx.Request], list[float]]:
        requests: list[httpx.Request] = []
        sleeps: list[float] = []
        http = httpx.Client(transport=httpx.MockTransport(_scripted(responses, requests)))
        client = VKClient(
            "vk-token",
            client=http,
            retry=kw.pop("retry", _FAST_RETRY),
            sleep_fn=sleeps.append,
            **kw,
        )
        return client, requests, sleeps

    def test_requires_token(self) -> None:
        with self.assertRaises(VKError):
            VKClient("  ")

    def test_call_sends_token_and_version(self) -> None:
        client, requests, _ = self._client([{"response": {"type": "group", "object_id": 42}}])

        self.assertEqual(client.resolve_group("zoopoisk_18"), 42)

        (req,) = requests
        self.assertEqual(str(req.url), "https://api.vk.com/method/utils.resolveScreenName")
        form = _form(req)
        self.assertEqual(form["screen_name"], "zoopoisk_18")
        self.assertEqual(form["access_token"], "vk-token")
        self.assertEqual(form["v"], "5.199")

    def test_resolve_group_rejects_unknown_and_non_groups(self) -> None:
        client, _, _ = self._client(
            [{"response": []}, {"response": {"type": "user", "object_id": 1}}]
        )
        with self.assertRaises(VKError):
            client.resolve_group("nobody")
        with self.assertRaises(VKError) as ctx:
            client.resolve_group("durov")
        self.assertIn("not a group", str(ctx.exception))

    def test_api_error_is_not_retried(self) -> None:
        client, requests, sleeps = self._client(
            [{"error": {"error_code": 15, "error_msg": "Access denied"}}]
        )
        with self.assertRaises(VKError) as ctx:
            client.fetch_wall(-1, 10)
        self.assertEqual(ctx.exception.code, 15)
        self.assertIn("Access denied", str(ctx.exception))
        self.assertEqual(len(requests), 1)
        self.assertEqual(sleeps, [])

    def test_rate_limit_error_is_retried(self) -> None:
        events: list[RetryEvent] = []
        client, requests, sleeps = self._client(
            [
                {"error": {"error_code": 6, "error_msg": "Too many requests per second"}},
                {"response": {"count": 0, "items": []}},
            ],
            on_retry=events.append,
        )

        self.assertEqual(client.fetch_wall(-1, 10), [])
        self.assertEqual(len(requests), 2)
        self.assertEqual(sleeps, [0.5])
        self.assertEqual(events[0].operation, "vk.wall.get")
        self.assertEqual(events[0].reason, "vk_error_6")

    def test_http_errors_surface_as_vk_error(self) -> None:
        client, requests, _ = self._client(
            [httpx.Response(502, text="bad gateway") for _ in range(3)]
        )
        with self.assertRaises(VKError) as ctx:
            client.fetch_wall(-1, 10)
        self.assertEqual(ctx.exception.code, 502)
        self.assertEqual(len(requests), 3)

    def test_transport_errors_are_retried_then_wrapped(self) -> None:
        request = httpx.Request("POST", "https://api.vk.com/method/wall.get")
        client, requests, sleeps = self._client(
            [httpx.ConnectError("connection reset", request=request) for _ in range(3)]
        )
        with self.assertRaises(VKError) as ctx:
            client.fetch_wall(-1, 10)
        self.assertIn("request failed", str(ctx.exception))
        self.assertEqual(sleeps, [0.5, 1.0])

    def test_fetch_wall_normalizes_items(self) -> None:
        item = {
            "id": 12,
            "owner_id": -42,
            "date": 1756260000,
            "text": "Пропала собака",
            "attachments": [
                {
                    "type": "photo",
                    "photo": {
                        "id": 1,
                        "owner_id": -42,
                        "sizes": [
                            {"type": "m", "url": "https://img/1m.jpg", "width": 130, "height": 100},
                            {"type": "x", "url": "https://img/1x.jpg", "width": 604, "height": 480},
                        ],
                    },
                },
            ],
            "copy_history": [
                {
                    "attachments": [
                        {
                            "type": "photo",
                            "photo": {
                                "id": 2,
                                "owner_id": -7,
                                "sizes": [{"type": "z", "url": "https://img/2z.jpg", "width": 1280, "height": 960}],
                            },
                        }
                    ]
                }
            ],
        }
        client, requests, _ = self._client(
            [{"response": {"count": 2, "items": [item, {"text": "no ids"}]}}]
        )

        (wall_item,) = client.fetch_wall(-42, 20)

        self.assertEqual(wall_item.id, 12)
        self.assertEqual(wall_item.owner_id, -42)
        self.assertEqual(wall_item.photos, ("https://img/1x.jpg", "https://img/2z.jpg"))
        self.assertEqual(wall_item.link, "https://vk.com/wall-42_12")
        form = _form(requests[0])
        self.assertEqual((form["owner_id"], form["count"]), ("-42", "20"))

    def test_wall_post_returns_post_id(self) -> None:
        client, requests, _ = self._client([{"response": {"post_id": 991}}])

        self.assertEqual(client.wall_post(-555, "Источник VK: x", from_group=True), 991)
        form = _form(requests[0])
        self.assertEqual(form["owner_id"], "-555")
        self.assertEqual(form["from_group"], "1")
        self.assertEqual(form["message"], "Источник VK: x")


class TestTelegramClient(unittest.TestCase):
    def _client(self, responses: list[Any]) -> tuple[TelegramClient, list[httpx.Request], list[float]]:
        requests: list[httpx.Request] = []
        sleeps: list[float] = []
        http = httpx.Client(transport=httpx.MockTransport(_scripted(responses, requests)))
        client = TelegramClient("bot-token", -1001, client=http, retry=_FAST_RETRY, sleep_fn=sleeps.append)
        return client, requests, sleeps

    def test_send_message_payload(self) -> None:
        client, requests, _ = self._client([{"ok": True, "result": {"message_id": 77}}])

        self.assertEqual(client.send_message("<b>hi</b>"), 77)

        (req,) = requests
        self.assertEqual(str(req.url), "https://api.telegram.org/botbot-token/sendMessage")
        payload = json.loads(req.content)
        self.assertEqual(payload["chat_id"], -1001)
        self.assertEqual(payload["parse_mode"], "HTML")
        self.assertIs(payload["disable_web_page_preview"], False)

    def test_flood_wait_uses_retry_after(self) -> None:
        client, requests, sleeps = self._client(
            [
                httpx.Response(
                    429,
                    json={
                        "ok": False,
                        "error_code": 429,
                        "description": "Too Many Requests: retry after 3",
                        "parameters": {"retry_after": 3},
                    },
                ),
                {"ok": True, "result": {"message_id": 5}},
            ]
        )

        self.assertEqual(client.send_message("x"), 5)
        self.assertEqual(sleeps, [3.0])
        self.assertEqual(len(requests), 2)

    def test_bad_request_is_not_retried(self) -> None:
        client, requests, _ = self._client(
            [httpx.Response(400, json={"ok": False, "error_code": 400, "description": "chat not found"})]
        )
        with self.assertRaises(TelegramError) as ctx:
            client.send_message("x")
        self.assertEqual(ctx.exception.code, 400)
        self.assertIn("chat not found", str(ctx.exception))
        self.assertEqual(len(requests), 1)

    def test_non_json_gateway_error(self) -> None:
        client, requests, _ = self._client([httpx.Response(502, text="<html>bad gateway</html>") for _ in range(3)])
        with self.assertRaises(TelegramError) as ctx:
            client.send_message("x")
        self.assertEqual(ctx.exception.code, 502)
        self.assertEqual(len(requests), 3)


class TestRetryPolicy(unittest.TestCase):
    def test_classification(self) -> None:
        self.assertTrue(is_retryable_http_exception(VKError("x", code=9))[0])
        self.assertFalse(is_retryable_http_exception(VKError("x", code=100))[0])
        self.assertEqual(
            is_retryable_http_exception(TelegramError("x", code=429, retry_after=4)),
            (True, 4.0, "telegram_retry_after"),
        )
        self.assertTrue(is_retryable_http_exception(TelegramError("x", code=503))[0])
        self.assertFalse(is_retryable_http_exception(TelegramError("x", code=403))[0])
        self.assertTrue(is_retryable_http_exception(TimeoutError())[0])
        self.assertFalse(is_retryable_http_exception(ValueError())[0])


if __name__ == "__main__":
    unittest.main()
