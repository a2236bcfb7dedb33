from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Protocol, Sequence

from .delivery import DeliveryRule, should_deliver
from .errors import StorageError
from .extract import classify
from .post import GroupCursor, Post, WallItem
from .run_log import RunLogger
from .storage import SQLiteStore

Classifier = Callable[..., Post]


class WallFeed(Protocol):
    def resolve_group(self, screen_name: str) -> int: ...

    def fetch_wall(self, owner_id: int, count: int) -> list[WallItem]: ...


@dataclass(frozen=True)
class Route:
    """Deliver posts matching `rule` to the outbox of `channel`."""

    channel: str
    rule: DeliveryRule = field(default_factory=DeliveryRule)


@dataclass(frozen=True)
class PollerOptions:
    wall_count: int = 50
    inter_group_delay_seconds: float = 0.5
    pass_timeout_seconds: float = 20.0
    exists_timeout_seconds: float = 0.5


@dataclass
class ScanResult:
    fetched: int = 0
    skipped_old: int = 0
    skipped_seen: int = 0
    stored: int = 0
    store_errors: int = 0
    enqueued: int = 0
    failed_groups: int = 0
    timed_out: bool = False

    def merge(self, other: "ScanResult") -> None:
        self.fetched += other.fetched
        self.skipped_old += other.skipped_old
        self.skipped_seen += other.skipped_seen
        self.stored += other.stored
        self.store_errors += other.store_errors
        self.enqueued += other.enqueued
        self.failed_groups += other.failed_groups
        self.timed_out = self.timed_out or other.timed_out


class Poller:
    """
    Periodically reads the walls of watched groups and feeds new posts into the store.

    Per-group watermarks live in memory only; after a restart the store's
    existence check keeps already stored posts from being processed twice.
    """

    def __init__(
        self,
        store: SQLiteStore,
        feed: WallFeed,
        routes: Sequence[Route],
        *,
        options: PollerOptions | None = None,
        logger: RunLogger | None = None,
        classifier: Classifier = classify,
        sleep_fn: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        stop: threading.Event | None = None,
    ) -> None:
        self._store = store
        self._feed = feed
        self._routes = list(routes)
        self._opt = options or PollerOptions()
        self._logger = logger
        self._classify = classifier
        self._sleep_fn = sleep_fn
        self._clock = clock
        self._stop = stop

    def _log(self, level: str, event: str, **data: object) -> None:
        if self._logger is not None:
            self._logger.log(level, event, **data)

    def _pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._sleep_fn is not None:
            self._sleep_fn(seconds)
        elif self._stop is not None:
            self._stop.wait(seconds)
        else:
            time.sleep(seconds)

    def resolve_groups(self, screen_names: Iterable[str]) -> list[GroupCursor]:
        names = list(screen_names)
        self._log("INFO", "groups_resolving", requested=len(names))

        cursors: list[GroupCursor] = []
        for name in names:
            try:
                group_id = self._feed.resolve_group(name)
            except Exception as e:
                self._log("ERROR", "group_resolve_failed", screen_name=name, error=str(e))
                continue
            self._log("INFO", "group_resolved", screen_name=name, id=group_id)
            cursors.append(GroupCursor(screen_name=name, id=group_id))

        self._log("INFO", "groups_ready", count=len(cursors))
        return cursors

    def scan_all(self, cursors: Sequence[GroupCursor]) -> ScanResult:
        """One polling pass over every group, bounded by the pass timeout."""
        total = ScanResult()
        deadline = self._clock() + self._opt.pass_timeout_seconds

        for i, cursor in enumerate(cursors):
            if self._stop is not None and self._stop.is_set():
                break
            if i > 0:
                self._pause(self._opt.inter_group_delay_seconds)
            if self._clock() > deadline:
                total.timed_out = True
                self._log(
                    "WARN",
                    "scan_pass_timeout",
                    scanned=i,
                    remaining=len(cursors) - i,
                    timeout_seconds=self._opt.pass_timeout_seconds,
                )
                break

            try:
                items = self._feed.fetch_wall(cursor.owner_id, self._opt.wall_count)
            except Exception as e:
                total.failed_groups += 1
                self._log(
                    "ERROR",
                    "wall_fetch_failed",
                    screen_name=cursor.screen_name,
                    owner_id=cursor.owner_id,
                    error=str(e),
                )
                continue

            self._log("DEBUG", "wall_fetched", owner_id=cursor.owner_id, items=len(items))
            total.merge(self.process_items(items, cursor))

        self._log(
            "INFO",
            "scan_pass_done",
            groups=len(cursors),
            fetched=total.fetched,
            stored=total.stored,
            enqueued=total.enqueued,
            failed_groups=total.failed_groups,
        )
        return total

    def process_items(self, items: Sequence[WallItem], cursor: GroupCursor) -> ScanResult:
        """
        Classify, store and route new wall items, oldest first.

        Items older than the group's watermark or already in the store are skipped.
        A failed existence check counts the item as new.
        """
        result = ScanResult(fetched=len(items))

        for item in sorted(items, key=lambda it: (it.date, it.id)):
            if item.date < cursor.last_ts:
                result.skipped_old += 1
                self._log("DEBUG", "skip_old_post", post_id=item.id, date=item.date, last_ts=cursor.last_ts)
                continue

            seen = False
            try:
                seen = self._store.exists(
                    item.owner_id, item.id, timeout=self._opt.exists_timeout_seconds
                )
            except StorageError as e:
                self._log("ERROR", "exists_check_failed", owner_id=item.owner_id, post_id=item.id, error=str(e))

            if seen:
                result.skipped_seen += 1
                self._log("DEBUG", "skip_seen_post", owner_id=item.owner_id, post_id=item.id)
                cursor.advance(item.date)
                continue

            post = self._classify(
                item.id,
                item.text,
                owner_id=item.owner_id,
                date=item.date,
                photos=item.photos,
            )

            try:
                self._store.upsert_post(post)
            except StorageError as e:
                result.store_errors += 1
                self._log("ERROR", "post_store_failed", owner_id=post.owner_id, post_id=post.post_id, error=str(e))
                cursor.advance(item.date)
                continue

            result.stored += 1
            self._log(
                "INFO",
                "post_stored",
                link=post.link,
                type=post.type,
                animal=post.animal,
                date=post.date,
            )

            for route in self._routes:
                if not should_deliver(post, route.rule):
                    continue
                try:
                    if self._store.enqueue(route.channel, post.owner_id, post.post_id):
                        result.enqueued += 1
                        self._log("INFO", "outbox_enqueued", channel=route.channel, link=post.link)
                except StorageError as e:
                    self._log(
                        "ERROR",
                        "outbox_enqueue_failed",
                        channel=route.channel,
                        link=post.link,
                        error=str(e),
                    )

            cursor.advance(item.date)

        return result
