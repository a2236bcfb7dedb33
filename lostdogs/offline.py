from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from .errors import VKError
from .post import WallItem

OFFLINE_GROUP_ID = 100500
OFFLINE_GROUP_NAME = "offline_group"

_OFFLINE_TEXT_LOST = (
    "Пропала собака, кобель, рыжий метис, 3 года. Без ошейника. "
    "Пушкинская улица, 283. 26.08.2025 в 22:00. Тел 8-912-762-92-39 Ольга"
)
_OFFLINE_TEXT_FOUND = (
    "Найден пёс в районе Закирова, ласковый, домашний. "
    "Хозяева, звоните +7 (912) 028-16-83"
)
_OFFLINE_TEXT_ADOPTION = (
    "Кошка Мася ищет дом! Стерилизована, вакцинирована, к лотку приучена. "
    "Возраст 1,5 года. [id1234|Анна Петрова]"
)
_OFFLINE_TEXT_FUNDRAISING = "Нужна помощь: сбор на лечение, перевод на карту 922 405 26 12"
_OFFLINE_TEXT_LINK = "https://vk.com/wall107929440_36"


def _default_items(owner_id: int) -> list[WallItem]:
    # Newest first, the order wall.get returns.
    return [
        WallItem(id=5, owner_id=owner_id, date=1756300000, text=_OFFLINE_TEXT_LINK),
        WallItem(id=4, owner_id=owner_id, date=1756290000, text=_OFFLINE_TEXT_FUNDRAISING),
        WallItem(
            id=3,
            owner_id=owner_id,
            date=1756280000,
            text=_OFFLINE_TEXT_ADOPTION,
            photos=("https://example.com/photo/3.jpg",),
        ),
        WallItem(id=2, owner_id=owner_id, date=1756270000, text=_OFFLINE_TEXT_FOUND),
        WallItem(
            id=1,
            owner_id=owner_id,
            date=1756260000,
            text=_OFFLINE_TEXT_LOST,
            photos=("https://example.com/photo/1.jpg",),
        ),
    ]


@dataclass
class OfflineWallFeed:
    """
    Network-free wall feed for `dry-run --offline` and tests.

    Knows exactly one group; `items` defaults to a small fixed sample of posts.
    """

    group_name: str = OFFLINE_GROUP_NAME
    group_id: int = OFFLINE_GROUP_ID
    items: Sequence[WallItem] | None = None
    fetch_calls: list[tuple[int, int]] = field(default_factory=list)

    def resolve_group(self, screen_name: str) -> int:
        if (screen_name or "").strip() != self.group_name:
            raise VKError(f"{screen_name}: screen name not found", code=113)
        return self.group_id

    def fetch_wall(self, owner_id: int, count: int) -> list[WallItem]:
        self.fetch_calls.append((int(owner_id), int(count)))
        items = list(self.items) if self.items is not None else _default_items(-abs(self.group_id))
        return items[: max(0, int(count))]
