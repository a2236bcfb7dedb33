from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from .config_schema import AppConfig
from .delivery import should_deliver
from .extract import classify
from .poller import WallFeed
from .post import Post

_DRY_RUN_WALL_COUNT = 20


@dataclass(frozen=True)
class DryRunResult:
    group: str
    owner_id: int
    fetched_count: int
    type_counts: dict[str, int]
    animal_counts: dict[str, int]
    deliverable: dict[str, int] = field(default_factory=dict)
    example: dict[str, Any] = field(default_factory=dict)


def _pick_group(config: AppConfig, override: str | None) -> str:
    if override and override.strip():
        return override.strip()
    return config.feed.groups[0]


def _pick_example(posts: list[Post]) -> Post | None:
    # Prefer something a channel would actually deliver.
    for wanted in ("lost", "found", "sighting"):
        for p in posts:
            if p.type == wanted:
                return p
    return posts[0] if posts else None


def run_dry_run(
    config: AppConfig,
    feed: WallFeed,
    *,
    group: str | None = None,
    count: int = _DRY_RUN_WALL_COUNT,
) -> DryRunResult:
    """
    Fetch one group's wall and classify it without touching the store.
    """
    name = _pick_group(config, group)
    group_id = feed.resolve_group(name)
    owner_id = -abs(int(group_id))

    items = feed.fetch_wall(owner_id, min(int(count), config.feed.wall_count))
    posts = [
        classify(it.id, it.text, owner_id=it.owner_id, date=it.date, photos=it.photos)
        for it in items
    ]

    rules = {
        "telegram": config.telegram.delivery.rule(),
        "vk": config.vk_repost.delivery.rule(),
    }
    deliverable = {
        channel: sum(1 for p in posts if should_deliver(p, rule))
        for channel, rule in rules.items()
    }

    example = _pick_example(posts)
    return DryRunResult(
        group=name,
        owner_id=owner_id,
        fetched_count=len(items),
        type_counts=dict(sorted(Counter(p.type for p in posts).items())),
        animal_counts=dict(sorted(Counter(p.animal for p in posts).items())),
        deliverable=deliverable,
        example=example.to_dict() if example is not None else {},
    )
