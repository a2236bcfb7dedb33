from __future__ import annotations

from .post import Post
from .render import render_telegram, render_vk
from .telegram_client import TelegramClient
from .vk_client import VKClient


class TelegramChannel:
    """Republishes posts to one Telegram chat as HTML messages."""

    name = "telegram"

    def __init__(self, client: TelegramClient) -> None:
        self._client = client

    def render(self, post: Post) -> str:
        return render_telegram(post)

    def send(self, text: str) -> int | None:
        return self._client.send_message(text, parse_mode="HTML")

    def close(self) -> None:
        self._client.close()


class VKRepostChannel:
    """Republishes posts to a VK wall as plain text."""

    name = "vk"

    def __init__(self, client: VKClient, owner_id: int, *, from_group: bool = True) -> None:
        self._client = client
        self._owner_id = int(owner_id)
        self._from_group = bool(from_group)

    @property
    def owner_id(self) -> int:
        return self._owner_id

    def render(self, post: Post) -> str:
        return render_vk(post)

    def send(self, text: str) -> int | None:
        return self._client.wall_post(self._owner_id, text, from_group=self._from_group)

    def close(self) -> None:
        self._client.close()
