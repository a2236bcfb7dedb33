from __future__ import annotations

import io
import itertools
import json
import threading
import unittest
from typing import Any

from lostdogs.errors import StorageError, TelegramError
from lostdogs.outbox import OutboxWorker, WorkerOptions
from lostdogs.post import Post
from lostdogs.run_log import RunLogger
from lostdogs.storage import SQLiteStore

OWNER = -100


def _post(post_id: int) -> Post:
    return Post(owner_id=OWNER, post_id=post_id, date=post_id, raw="x", text=f"post {post_id}", type="lost", animal="dog")


def _events(buf: io.StringIO) -> list[dict[str, Any]]:
    return [json.loads(line) for line in buf.getvalue().splitlines() if line.strip()]


class _FakeChannel:
    name = "telegram"

    def __init__(self, *, fail_on: set[int] | None = None, error: Exception | None = None) -> None:
        self.sent: list[str] = []
        self.fail_on = fail_on or set()
        self.error = error or TelegramError("Bad Gateway", code=502)
        self._next_id = 100

    def render(self, post: Post) -> str:
        return f"#{post.post_id} {post.text}"

    def send(self, text: str) -> int | None:
        post_id = int(text.split()[0].lstrip("#"))
        if post_id in self.fail_on:
            raise self.error
        self.sent.append(text)
        self._next_id += 1
        return self._next_id


class _FixedClock:
    def __init__(self, *values: float) -> None:
        self._it = itertools.chain(values, itertools.repeat(values[-1]))

    def __call__(self) -> float:
        return next(self._it)


class _GetPostFailingStore(SQLiteStore):
    def get_post(self, owner_id: int, post_id: int) -> Post | None:
        if post_id == 1:
            raise StorageError("get_post: timed out")
        return super().get_post(owner_id, post_id)


class TestOutboxWorker(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SQLiteStore.open(":memory:")
        self.sleeps: list[float] = []
        self.log_buf = io.StringIO()
        self.logger = RunLogger(stream=self.log_buf)

    def tearDown(self) -> None:
        self.store.close()

    def _queue(self, *post_ids: int, store: SQLiteStore | None = None) -> None:
        s = store or self.store
        for pid in post_ids:
            s.upsert_post(_post(pid))
            s.enqueue("telegram", OWNER, pid)

    def _worker(self, channel: _FakeChannel, *, store: SQLiteStore | None = None, clock: Any = None, **opts: Any) -> OutboxWorker:
        return OutboxWorker(
            store or self.store,
            channel,
            options=WorkerOptions(**opts),
            logger=self.logger,
            clock=clock or _FixedClock(1000.0),
            sleep_fn=self.sleeps.append,
        )

    def test_delivers_batch_in_order_with_rate_pause(self) -> None:
        self._queue(1, 2, 3)
        channel = _FakeChannel()

        result = self._worker(channel, rate_seconds=1.5).tick()

        self.assertEqual(result.claimed, 3)
        self.assertEqual(result.sent, 3)
        self.assertEqual(channel.sent, ["#1 post 1", "#2 post 2", "#3 post 3"])
        self.assertEqual(self.sleeps, [1.5, 1.5])
        items = self.store.outbox_items("telegram")
        self.assertEqual([it.status for it in items], ["sent"] * 3)
        self.assertEqual([it.remote_id for it in items], [101, 102, 103])

    def test_empty_outbox_is_a_no_op(self) -> None:
        result = self._worker(_FakeChannel()).tick()
        self.assertEqual(result.claimed, 0)
        self.assertEqual(self.sleeps, [])

    def test_failed_send_goes_back_to_pending(self) -> None:
        self._queue(1, 2)
        channel = _FakeChannel(fail_on={1})

        result = self._worker(channel).tick()

        self.assertEqual(result.retried, 1)
        self.assertEqual(result.sent, 1)
        first, second = self.store.outbox_items("telegram")
        self.assertEqual(first.status, "pending")
        self.assertEqual(first.retries, 1)
        self.assertIn("Bad Gateway", first.last_error or "")
        self.assertEqual(second.status, "sent")

        warn = [e for e in _events(self.log_buf) if e["event"] == "outbox_send_failed"]
        self.assertEqual(warn[0]["level"], "WARN")
        self.assertEqual(warn[0]["data"]["link"], "https://vk.com/wall-100_1")

    def test_retry_ceiling_marks_failed(self) -> None:
        self._queue(1)
        channel = _FakeChannel(fail_on={1})
        worker = self._worker(channel, max_retries=2)

        self.assertEqual(worker.tick().retried, 1)
        self.assertEqual(worker.tick().failed, 1)
        self.assertEqual(worker.tick().claimed, 0)

        (item,) = self.store.outbox_items("telegram")
        self.assertEqual(item.status, "failed")
        self.assertEqual(item.retries, 2)

    def test_missing_post_is_dead_without_send(self) -> None:
        self.store.enqueue("telegram", OWNER, 42)
        channel = _FakeChannel()

        result = self._worker(channel).tick()

        self.assertEqual(result.failed, 1)
        self.assertEqual(channel.sent, [])
        (item,) = self.store.outbox_items("telegram")
        self.assertEqual(item.status, "failed")
        self.assertEqual(item.retries, 0)
        self.assertEqual(item.last_error, "post not found")

    def test_tick_deadline_releases_rest(self) -> None:
        self._queue(1, 2, 3)
        channel = _FakeChannel()
        clock = _FixedClock(1000.0, 1020.0)

        result = self._worker(channel, clock=clock, tick_timeout_seconds=10).tick()

        self.assertEqual(result.sent, 1)
        self.assertEqual(result.released, 2)
        statuses = [(it.status, it.retries) for it in self.store.outbox_items("telegram")]
        self.assertEqual(statuses, [("sent", 0), ("pending", 0), ("pending", 0)])
        self.assertIn("outbox_tick_deadline", [e["event"] for e in _events(self.log_buf)])

    def test_shutdown_during_pause_releases_rest(self) -> None:
        self._queue(1, 2, 3)
        channel = _FakeChannel()
        stop = threading.Event()
        waits: list[float] = []

        def _interrupted_wait(seconds: float) -> bool:
            # stop.wait() returning early because shutdown was signalled.
            waits.append(seconds)
            stop.set()
            return True

        worker = OutboxWorker(
            self.store,
            channel,
            options=WorkerOptions(rate_seconds=5),
            logger=self.logger,
            clock=_FixedClock(1000.0),
            sleep_fn=_interrupted_wait,
            stop=stop,
        )
        result = worker.tick()

        self.assertEqual(channel.sent, ["#1 post 1"])
        self.assertEqual(waits, [5])
        self.assertEqual(result.sent, 1)
        self.assertEqual(result.released, 2)
        statuses = [(it.status, it.retries) for it in self.store.outbox_items("telegram")]
        self.assertEqual(statuses, [("sent", 0), ("pending", 0), ("pending", 0)])
        self.assertIn("outbox_shutdown", [e["event"] for e in _events(self.log_buf)])

    def test_stopped_worker_sends_nothing(self) -> None:
        self._queue(1, 2)
        channel = _FakeChannel()
        stop = threading.Event()
        stop.set()

        worker = OutboxWorker(self.store, channel, logger=self.logger, clock=_FixedClock(1000.0), stop=stop)
        result = worker.tick()

        self.assertEqual(channel.sent, [])
        self.assertEqual(result.claimed, 2)
        self.assertEqual(result.released, 2)
        self.assertEqual([it.status for it in self.store.outbox_items("telegram")], ["pending", "pending"])

    def test_expired_leases_are_reaped_first(self) -> None:
        self._queue(1)
        self.store.claim("telegram", now=0.0, lease_ttl=30, limit=1)

        result = self._worker(_FakeChannel()).tick()

        self.assertEqual(result.reaped, 1)
        self.assertEqual(result.sent, 1)

    def test_lost_lease_leaves_row_alone(self) -> None:
        self._queue(1)
        store = self.store

        class _Stealing(_FakeChannel):
            def send(self, text: str) -> int | None:
                with store.conn:
                    store.conn.execute("UPDATE outbox_telegram SET leased_until = 1")
                return super().send(text)

        result = self._worker(_Stealing()).tick()

        self.assertEqual(result.sent, 0)
        (item,) = self.store.outbox_items("telegram")
        self.assertEqual(item.status, "sending")
        self.assertIn("outbox_lease_lost", [e["event"] for e in _events(self.log_buf)])

    def test_storage_error_on_one_row_keeps_batch_going(self) -> None:
        with _GetPostFailingStore.open(":memory:") as store:
            self._queue(1, 2, store=store)
            channel = _FakeChannel()

            result = self._worker(channel, store=store).tick()

            self.assertEqual(result.sent, 1)
            self.assertEqual(channel.sent, ["#2 post 2"])
            first, _ = store.outbox_items("telegram")
            self.assertEqual(first.status, "sending")

        self.assertIn("outbox_store_failed", [e["event"] for e in _events(self.log_buf)])

    def test_options_are_validated(self) -> None:
        with self.assertRaises(ValueError):
            WorkerOptions(batch=0)
        with self.assertRaises(ValueError):
            WorkerOptions(max_retries=0)
        with self.assertRaises(ValueError):
            WorkerOptions(lease_ttl_seconds=0)


if __name__ == "__main__":
    unittest.main()
