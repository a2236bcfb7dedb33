from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from .errors import StorageError
from .post import OutboxItem, Post, wall_link
from .run_log import RunLogger
from .storage import SQLiteStore


class Channel(Protocol):
    """Delivery capability of one outbound destination."""

    name: str

    def render(self, post: Post) -> str: ...

    def send(self, text: str) -> int | None: ...


@dataclass(frozen=True)
class WorkerOptions:
    rate_seconds: float = 1.0
    max_retries: int = 5
    lease_ttl_seconds: float = 30.0
    batch: int = 10
    tick_timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.rate_seconds < 0:
            raise ValueError("rate_seconds must be >= 0")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.lease_ttl_seconds <= 0:
            raise ValueError("lease_ttl_seconds must be > 0")
        if self.batch < 1:
            raise ValueError("batch must be >= 1")
        if self.tick_timeout_seconds <= 0:
            raise ValueError("tick_timeout_seconds must be > 0")


@dataclass(frozen=True)
class TickResult:
    reaped: int = 0
    claimed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    released: int = 0


class OutboxWorker:
    """
    Drains one channel's outbox table.

    Each tick reaps expired leases, claims a FIFO batch and delivers it one row at
    a time with a fixed pause between deliveries. A row's failure is recorded on
    that row only; the rest of the batch continues.
    """

    def __init__(
        self,
        store: SQLiteStore,
        channel: Channel,
        *,
        options: WorkerOptions | None = None,
        logger: RunLogger | None = None,
        clock: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], None] | None = None,
        stop: threading.Event | None = None,
    ) -> None:
        self._store = store
        self._channel = channel
        self._opt = options or WorkerOptions()
        self._logger = logger
        self._clock = clock
        self._sleep_fn = sleep_fn
        self._stop = stop

    def _log(self, level: str, event: str, **data: object) -> None:
        if self._logger is not None:
            self._logger.log(level, event, channel=self._channel.name, **data)

    def _stopping(self) -> bool:
        return self._stop is not None and self._stop.is_set()

    def _pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._sleep_fn is not None:
            self._sleep_fn(seconds)
        elif self._stop is not None:
            self._stop.wait(seconds)
        else:
            time.sleep(seconds)

    def tick(self) -> TickResult:
        name = self._channel.name
        started = self._clock()
        deadline = started + self._opt.tick_timeout_seconds

        reaped = self._store.reap_expired(name, started)
        if reaped:
            self._log("WARN", "outbox_leases_reaped", count=reaped)

        items = self._store.claim(name, started, self._opt.lease_ttl_seconds, self._opt.batch)
        if not items:
            return TickResult(reaped=reaped)

        outcomes: dict[str, int] = {"sent": 0, "pending": 0, "failed": 0}
        released = 0
        attempts = 0
        for idx, item in enumerate(items):
            if idx > 0 and self._clock() >= deadline:
                released = self._release(items[idx:], "outbox_tick_deadline")
                break

            if attempts:
                self._pause(self._opt.rate_seconds)
            if self._stopping():
                # Shutting down: the rest goes back to pending unsent.
                released = self._release(items[idx:], "outbox_shutdown")
                break

            try:
                outcome, attempted = self._deliver(item)
            except StorageError as e:
                # The row stays leased and comes back once the lease expires.
                self._log("ERROR", "outbox_store_failed", id=item.id, error=str(e))
                continue

            attempts += int(attempted)
            if outcome in outcomes:
                outcomes[outcome] += 1

        return TickResult(
            reaped=reaped,
            claimed=len(items),
            sent=outcomes["sent"],
            retried=outcomes["pending"],
            failed=outcomes["failed"],
            released=released,
        )

    def _deliver(self, item: OutboxItem) -> tuple[str | None, bool]:
        """
        Deliver one claimed row. Returns the row's new status (None when the lease
        was lost meanwhile) and whether the channel was called.
        """
        name = self._channel.name
        lease = item.leased_until or 0
        link = wall_link(item.owner_id, item.post_id)

        post = self._store.get_post(item.owner_id, item.post_id)
        if post is None:
            self._store.mark_dead(name, item.id, lease, "post not found")
            self._log("ERROR", "outbox_post_missing", id=item.id, link=link)
            return "failed", False

        try:
            remote_id = self._channel.send(self._channel.render(post))
        except Exception as e:
            error = str(e) or type(e).__name__
            status = self._store.mark_failed(name, item.id, lease, error, self._opt.max_retries)
            self._log(
                "WARN" if status == "pending" else "ERROR",
                "outbox_send_failed",
                id=item.id,
                link=link,
                status=status,
                attempt=item.retries + 1,
                error=error,
            )
            return status, True

        if not self._store.mark_sent(name, item.id, lease, remote_id):
            self._log("WARN", "outbox_lease_lost", id=item.id, link=link)
            return None, True

        self._log("INFO", "outbox_sent", id=item.id, link=link, remote_id=remote_id)
        return "sent", True

    def _release(self, rest: list[OutboxItem], event: str) -> int:
        released = 0
        lease = rest[0].leased_until or 0
        try:
            released = self._store.release(self._channel.name, [r.id for r in rest], lease)
        except StorageError as e:
            self._log("ERROR", "outbox_release_failed", count=len(rest), error=str(e))
        self._log("WARN", event, released=released, remaining=len(rest))
        return released
