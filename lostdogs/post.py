from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

PostType = Literal[
    "unknown",
    "lost",
    "found",
    "sighting",
    "adoption",
    "fundraising",
    "news",
    "link",
    "empty",
]
AnimalType = Literal["unknown", "cat", "dog", "other"]
SexType = Literal["unknown", "m", "f"]
OutboxStatus = Literal["pending", "sending", "sent", "failed"]

POST_TYPES: tuple[str, ...] = (
    "unknown",
    "lost",
    "found",
    "sighting",
    "adoption",
    "fundraising",
    "news",
    "link",
    "empty",
)
ANIMAL_TYPES: tuple[str, ...] = ("unknown", "cat", "dog", "other")


def wall_link(owner_id: int, post_id: int) -> str:
    return f"https://vk.com/wall{int(owner_id)}_{int(post_id)}"


@dataclass(frozen=True)
class Extras:
    sterilized: bool = False
    vaccinated: bool = False
    chipped: bool = False
    litter_ok: bool = False


@dataclass(frozen=True)
class Post:
    """
    Classified wall post.

    Optional text facts are None when not detected; list-like facts are tuples
    in first-seen order.
    """

    owner_id: int
    post_id: int
    date: int = 0
    raw: str = ""
    text: str = ""

    type: PostType = "unknown"
    animal: AnimalType = "unknown"
    sex: SexType = "unknown"

    breed: str | None = None
    age: str | None = None
    name: str | None = None
    location: str | None = None
    when: str | None = None
    status_details: str | None = None

    phones: tuple[str, ...] = ()
    contact_names: tuple[str, ...] = ()
    vk_accounts: tuple[str, ...] = ()
    photos: tuple[str, ...] = ()

    extras: Extras = field(default_factory=Extras)

    @property
    def link(self) -> str:
        return wall_link(self.owner_id, self.post_id)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        for key in ("phones", "contact_names", "vk_accounts", "photos"):
            out[key] = list(out[key])
        out["link"] = self.link
        return out


@dataclass(frozen=True)
class WallItem:
    """A single wall post as returned by the feed, before classification."""

    id: int
    owner_id: int
    date: int
    text: str = ""
    photos: tuple[str, ...] = ()

    @property
    def link(self) -> str:
        return wall_link(self.owner_id, self.id)


@dataclass(frozen=True)
class OutboxItem:
    id: int
    owner_id: int
    post_id: int
    status: OutboxStatus
    leased_until: int | None
    retries: int
    last_error: str | None
    remote_id: int | None
    created_at: str
    updated_at: str


@dataclass
class GroupCursor:
    """Per-run scan position of one watched group. Not persisted."""

    screen_name: str
    id: int
    last_ts: int = 0

    @property
    def owner_id(self) -> int:
        return -abs(int(self.id))

    def advance(self, ts: int) -> bool:
        if ts > self.last_ts:
            self.last_ts = int(ts)
            return True
        return False
