from __future__ import annotations

import io
import itertools
import json
import threading
import unittest
from typing import Any

from lostdogs.delivery import DeliveryRule
from lostdogs.errors import StorageError, VKError
from lostdogs.offline import OFFLINE_GROUP_ID, OFFLINE_GROUP_NAME, OfflineWallFeed
from lostdogs.poller import Poller, PollerOptions, Route
from lostdogs.post import GroupCursor, Post, WallItem
from lostdogs.run_log import RunLogger
from lostdogs.storage import SQLiteStore


def _events(buf: io.StringIO) -> list[dict[str, Any]]:
    return [json.loads(line) for line in buf.getvalue().splitlines() if line.strip()]


def _cursor(group_id: int = OFFLINE_GROUP_ID, name: str = OFFLINE_GROUP_NAME) -> GroupCursor:
    return GroupCursor(screen_name=name, id=group_id)


class _MultiFeed:
    def __init__(self, walls: dict[int, Any], names: dict[str, int]) -> None:
        self.walls = walls
        self.names = names
        self.fetch_calls: list[int] = []

    def resolve_group(self, screen_name: str) -> int:
        if screen_name not in self.names:
            raise VKError(f"{screen_name}: screen name not found", code=113)
        return self.names[screen_name]

    def fetch_wall(self, owner_id: int, count: int) -> list[WallItem]:
        self.fetch_calls.append(owner_id)
        wall = self.walls[owner_id]
        if isinstance(wall, Exception):
            raise wall
        return list(wall)[:count]


class _ExistsFailingStore(SQLiteStore):
    def exists(self, owner_id: int, post_id: int, *, timeout: float | None = None) -> bool:
        raise StorageError("exists: timed out")


class _UpsertFailingStore(SQLiteStore):
    def upsert_post(self, post: Post) -> None:
        raise StorageError("upsert_post: timed out")


class TestPollerProcessItems(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SQLiteStore.open(":memory:")
        self.routes = [
            Route("telegram", DeliveryRule()),
            Route("vk", DeliveryRule.of(["adoption"], ["cat"])),
        ]

    def tearDown(self) -> None:
        self.store.close()

    def test_first_pass_stores_everything_and_routes_matches(self) -> None:
        feed = OfflineWallFeed()
        poller = Poller(self.store, feed, self.routes, sleep_fn=lambda _s: None)
        cursor = _cursor()

        result = poller.scan_all([cursor])

        self.assertEqual(result.fetched, 5)
        self.assertEqual(result.stored, 5)
        self.assertEqual(result.enqueued, 3)
        self.assertEqual(self.store.post_count(), 5)
        self.assertEqual(
            [it.post_id for it in self.store.outbox_items("telegram")], [1, 2]
        )
        self.assertEqual([it.post_id for it in self.store.outbox_items("vk")], [3])
        self.assertEqual(cursor.last_ts, 1756300000)
        self.assertEqual(feed.fetch_calls, [(-OFFLINE_GROUP_ID, 50)])

        lost = self.store.get_post(-OFFLINE_GROUP_ID, 1)
        assert lost is not None
        self.assertEqual(lost.type, "lost")
        self.assertEqual(lost.animal, "dog")
        self.assertEqual(lost.photos, ("https://example.com/photo/1.jpg",))

    def test_second_pass_skips_by_watermark(self) -> None:
        poller = Poller(self.store, OfflineWallFeed(), self.routes)
        cursor = _cursor()
        poller.scan_all([cursor])

        result = poller.scan_all([cursor])

        self.assertEqual(result.skipped_old, 4)
        self.assertEqual(result.skipped_seen, 1)
        self.assertEqual(result.stored, 0)
        self.assertEqual(result.enqueued, 0)

    def test_restart_relies_on_existence_check(self) -> None:
        poller = Poller(self.store, OfflineWallFeed(), self.routes)
        poller.scan_all([_cursor()])

        fresh = _cursor()
        result = poller.scan_all([fresh])

        self.assertEqual(result.skipped_seen, 5)
        self.assertEqual(result.stored, 0)
        self.assertEqual(len(self.store.outbox_items("telegram")), 2)
        self.assertEqual(fresh.last_ts, 1756300000)

    def test_items_are_processed_oldest_first(self) -> None:
        seen: list[int] = []

        def _classify(post_id: int, raw: str, **kw: Any) -> Post:
            seen.append(post_id)
            return Post(owner_id=kw["owner_id"], post_id=post_id, date=kw["date"], raw=raw, text=raw)

        items = [
            WallItem(id=3, owner_id=-1, date=30, text="c"),
            WallItem(id=2, owner_id=-1, date=10, text="b"),
            WallItem(id=1, owner_id=-1, date=10, text="a"),
        ]
        poller = Poller(self.store, OfflineWallFeed(), [], classifier=_classify)
        poller.process_items(items, GroupCursor(screen_name="g", id=1))

        self.assertEqual(seen, [1, 2, 3])

    def test_equal_timestamp_is_not_skipped_as_old(self) -> None:
        poller = Poller(self.store, OfflineWallFeed(), [])
        cursor = GroupCursor(screen_name="g", id=1, last_ts=100)
        items = [
            WallItem(id=1, owner_id=-1, date=99, text="старый"),
            WallItem(id=2, owner_id=-1, date=100, text="новый"),
        ]

        result = poller.process_items(items, cursor)

        self.assertEqual(result.skipped_old, 1)
        self.assertEqual(result.stored, 1)
        self.assertTrue(self.store.exists(-1, 2))

    def test_existence_check_failure_treats_item_as_new(self) -> None:
        buf = io.StringIO()
        with _ExistsFailingStore.open(":memory:") as store:
            poller = Poller(store, OfflineWallFeed(), self.routes, logger=RunLogger(stream=buf))
            result = poller.scan_all([_cursor()])
            self.assertEqual(result.stored, 5)
            self.assertEqual(store.post_count(), 5)

        events = [e["event"] for e in _events(buf)]
        self.assertEqual(events.count("exists_check_failed"), 5)

    def test_store_failure_is_counted_and_watermark_advances(self) -> None:
        with _UpsertFailingStore.open(":memory:") as store:
            poller = Poller(store, OfflineWallFeed(), self.routes)
            cursor = _cursor()
            result = poller.scan_all([cursor])

            self.assertEqual(result.store_errors, 5)
            self.assertEqual(result.stored, 0)
            self.assertEqual(result.enqueued, 0)
            self.assertEqual(cursor.last_ts, 1756300000)


class TestPollerGroups(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SQLiteStore.open(":memory:")

    def tearDown(self) -> None:
        self.store.close()

    def test_resolve_groups_skips_unknown(self) -> None:
        buf = io.StringIO()
        feed = _MultiFeed({}, {"a": 1, "b": 2})
        poller = Poller(self.store, feed, [], logger=RunLogger(stream=buf))

        cursors = poller.resolve_groups(["a", "missing", "b"])

        self.assertEqual([(c.screen_name, c.owner_id) for c in cursors], [("a", -1), ("b", -2)])
        failed = [e for e in _events(buf) if e["event"] == "group_resolve_failed"]
        self.assertEqual(len(failed), 1)
        self.assertEqual(failed[0]["level"], "ERROR")
        self.assertEqual(failed[0]["data"]["screen_name"], "missing")

    def test_failing_group_does_not_stop_the_pass(self) -> None:
        pauses: list[float] = []
        feed = _MultiFeed(
            {
                -1: VKError("Internal server error", code=10),
                -2: [WallItem(id=7, owner_id=-2, date=5, text="Пропала собака, рыжий кобель у парка")],
            },
            {},
        )
        poller = Poller(
            self.store,
            feed,
            [Route("telegram")],
            options=PollerOptions(inter_group_delay_seconds=0.25),
            sleep_fn=pauses.append,
        )

        result = poller.scan_all([GroupCursor("a", 1), GroupCursor("b", 2)])

        self.assertEqual(result.failed_groups, 1)
        self.assertEqual(result.stored, 1)
        self.assertEqual(result.enqueued, 1)
        self.assertEqual(feed.fetch_calls, [-1, -2])
        self.assertEqual(pauses, [0.25])

    def test_pass_timeout_stops_before_next_group(self) -> None:
        buf = io.StringIO()
        ticks = itertools.chain([0.0, 1.0, 10.0], itertools.repeat(10.0))
        feed = _MultiFeed({-1: [], -2: [], -3: []}, {})
        poller = Poller(
            self.store,
            feed,
            [],
            options=PollerOptions(pass_timeout_seconds=5.0, inter_group_delay_seconds=0),
            clock=lambda: next(ticks),
            logger=RunLogger(stream=buf),
        )

        result = poller.scan_all([GroupCursor("a", 1), GroupCursor("b", 2), GroupCursor("c", 3)])

        self.assertTrue(result.timed_out)
        self.assertEqual(feed.fetch_calls, [-1])
        timeout = [e for e in _events(buf) if e["event"] == "scan_pass_timeout"]
        self.assertEqual(timeout[0]["data"]["remaining"], 2)

    def test_stop_event_ends_pass_early(self) -> None:
        stop = threading.Event()
        stop.set()
        feed = _MultiFeed({-1: []}, {})
        poller = Poller(self.store, feed, [], stop=stop)

        result = poller.scan_all([GroupCursor("a", 1)])

        self.assertEqual(feed.fetch_calls, [])
        self.assertEqual(result.fetched, 0)


if __name__ == "__main__":
    unittest.main()
