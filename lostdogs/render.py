from __future__ import annotations

import html

from .post import Post

MAX_BODY_CHARS = 3500

TYPE_TITLES: dict[str, str] = {
    "lost": "🔎 Пропал питомец",
    "found": "✅ Найден питомец",
    "sighting": "👀 Замечен питомец",
    "adoption": "🏠 Ищет дом",
    "fundraising": "💳 Сбор помощи",
}


def type_title(post_type: str) -> str:
    return TYPE_TITLES.get(post_type, "")


def truncate_body(text: str, *, limit: int = MAX_BODY_CHARS) -> str:
    s = text or ""
    if len(s) <= limit:
        return s
    return s[:limit] + "…"


def _join(title: str, body: str, footer: str) -> str:
    lines = [part for part in (title, body) if part]
    lines.append(footer)
    return "\n".join(lines)


def render_telegram(post: Post) -> str:
    """HTML message for Telegram's parse_mode=HTML."""
    body = html.escape(truncate_body(post.text), quote=False)
    link = html.escape(post.link, quote=True)
    return _join(type_title(post.type), body, f'<a href="{link}">Источник VK</a>')


def render_vk(post: Post) -> str:
    """Plain-text message for wall.post."""
    return _join(type_title(post.type), truncate_body(post.text), f"Источник VK: {post.link}")
