from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .post import Post

DEFAULT_DELIVERY_TYPES: frozenset[str] = frozenset({"lost", "found", "sighting"})
DEFAULT_DELIVERY_ANIMALS: frozenset[str] = frozenset({"dog"})


@dataclass(frozen=True)
class DeliveryRule:
    """Which classified posts a channel republishes: post type AND animal must match."""

    types: frozenset[str] = DEFAULT_DELIVERY_TYPES
    animals: frozenset[str] = DEFAULT_DELIVERY_ANIMALS

    @classmethod
    def of(cls, types: Iterable[str], animals: Iterable[str]) -> "DeliveryRule":
        return cls(types=frozenset(types), animals=frozenset(animals))


def should_deliver(post: Post, rule: DeliveryRule) -> bool:
    return post.type in rule.types and post.animal in rule.animals
