from __future__ import annotations

import json
import math
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

from .errors import StorageError
from .post import Extras, OutboxItem, Post
from .storage_schema import OUTBOX_TABLES, initialize_sqlite

DEFAULT_OPERATION_TIMEOUT_SECONDS = 2.0
DEFAULT_EXISTS_TIMEOUT_SECONDS = 0.5

_MAX_ERROR_CHARS = 1000
_OUTBOX_STATUSES = ("pending", "sending", "sent", "failed")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def _json_list(raw: str | None) -> tuple[str, ...]:
    try:
        value = json.loads(raw or "[]")
    except ValueError:
        return ()
    if not isinstance(value, list):
        return ()
    return tuple(str(v) for v in value)


def _as_path(value: str | Path) -> str:
    return str(value)


def _outbox_table(channel: str) -> tuple[str, str]:
    try:
        return OUTBOX_TABLES[channel]
    except KeyError:
        raise ValueError(f"Unknown outbox channel: {channel!r}") from None


def _lease_deadline(now: float, ttl: float) -> int:
    return int(math.ceil(float(now) + float(ttl)))


def _post_from_row(row: sqlite3.Row) -> Post:
    return Post(
        owner_id=int(row["owner_id"]),
        post_id=int(row["post_id"]),
        date=int(row["date"]),
        raw=str(row["raw"]),
        text=str(row["text"]),
        type=row["type"],
        animal=row["animal"],
        sex=row["sex"],
        breed=row["breed"],
        age=row["age"],
        name=row["name"],
        location=row["location"],
        when=row["when_text"],
        status_details=row["status_details"],
        phones=_json_list(row["phones_json"]),
        contact_names=_json_list(row["contact_names_json"]),
        vk_accounts=_json_list(row["vk_accounts_json"]),
        photos=_json_list(row["photos_json"]),
        extras=Extras(
            sterilized=bool(row["sterilized"]),
            vaccinated=bool(row["vaccinated"]),
            chipped=bool(row["chipped"]),
            litter_ok=bool(row["litter_ok"]),
        ),
    )


def _outbox_from_row(row: sqlite3.Row, remote_column: str) -> OutboxItem:
    return OutboxItem(
        id=int(row["id"]),
        owner_id=int(row["owner_id"]),
        post_id=int(row["post_id"]),
        status=row["status"],
        leased_until=int(row["leased_until"]) if row["leased_until"] is not None else None,
        retries=int(row["retries"]),
        last_error=row["last_error"],
        remote_id=int(row[remote_column]) if row[remote_column] is not None else None,
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


class SQLiteStore:
    """
    Ingestion store: classified posts plus one outbox table per delivery channel.

    A single connection is shared by the poller and the outbox workers; access is
    serialized by a lock and every operation gives up with StorageError once its
    timeout elapses.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        exists_timeout: float = DEFAULT_EXISTS_TIMEOUT_SECONDS,
    ) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._operation_timeout = float(operation_timeout)
        self._exists_timeout = float(exists_timeout)

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        exists_timeout: float = DEFAULT_EXISTS_TIMEOUT_SECONDS,
    ) -> "SQLiteStore":
        db_path = _as_path(path)
        if db_path != ":memory:":
            p = Path(db_path)
            p.parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                db_path, timeout=operation_timeout, check_same_thread=False
            )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to open sqlite database: {db_path}: {e}") from e

        try:
            initialize_sqlite(conn, busy_timeout_ms=int(operation_timeout * 1000))
        except Exception as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn, operation_timeout=operation_timeout, exists_timeout=exists_timeout)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @contextmanager
    def _locked(self, what: str, timeout: float | None = None) -> Iterator[sqlite3.Connection]:
        limit = self._operation_timeout if timeout is None else float(timeout)
        if not self._lock.acquire(timeout=max(0.0, limit)):
            raise StorageError(f"{what}: timed out after {limit:g}s waiting for the store")
        try:
            yield self._conn
        finally:
            self._lock.release()

    # posts

    def exists(self, owner_id: int, post_id: int, *, timeout: float | None = None) -> bool:
        limit = self._exists_timeout if timeout is None else timeout
        try:
            with self._locked("exists", limit) as conn:
                row = conn.execute(
                    "SELECT 1 FROM posts WHERE owner_id = ? AND post_id = ?",
                    (int(owner_id), int(post_id)),
                ).fetchone()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to check post existence: {e}") from e
        return row is not None

    def upsert_post(self, post: Post) -> None:
        now = _utc_now_iso()
        params = {
            "owner_id": int(post.owner_id),
            "post_id": int(post.post_id),
            "date": int(post.date),
            "raw": post.raw,
            "text": post.text,
            "type": post.type,
            "animal": post.animal,
            "sex": post.sex,
            "breed": post.breed,
            "age": post.age,
            "name": post.name,
            "location": post.location,
            "when_text": post.when,
            "status_details": post.status_details,
            "phones_json": _json_dumps(list(post.phones)),
            "contact_names_json": _json_dumps(list(post.contact_names)),
            "vk_accounts_json": _json_dumps(list(post.vk_accounts)),
            "photos_json": _json_dumps(list(post.photos)),
            "sterilized": int(post.extras.sterilized),
            "vaccinated": int(post.extras.vaccinated),
            "chipped": int(post.extras.chipped),
            "litter_ok": int(post.extras.litter_ok),
            "created_at": now,
            "updated_at": now,
        }
        columns = list(params)
        content = [c for c in columns if c not in ("owner_id", "post_id", "created_at", "updated_at")]
        updates = ", ".join(f"{c} = excluded.{c}" for c in [*content, "updated_at"])
        # An identical re-ingest leaves the row, updated_at included, untouched.
        changed = " OR ".join(f"posts.{c} IS NOT excluded.{c}" for c in content)
        sql = (
            f"INSERT INTO posts({', '.join(columns)}) "
            f"VALUES ({', '.join(':' + c for c in columns)}) "
            f"ON CONFLICT(owner_id, post_id) DO UPDATE SET {updates} WHERE {changed}"
        )

        try:
            with self._locked("upsert_post") as conn:
                with conn:
                    conn.execute(sql, params)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to upsert post: {e}") from e

    def get_post(self, owner_id: int, post_id: int) -> Post | None:
        try:
            with self._locked("get_post") as conn:
                row = conn.execute(
                    "SELECT * FROM posts WHERE owner_id = ? AND post_id = ?",
                    (int(owner_id), int(post_id)),
                ).fetchone()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to read post: {e}") from e

        if row is None:
            return None
        return _post_from_row(row)

    def post_count(self) -> int:
        try:
            with self._locked("post_count") as conn:
                row = conn.execute("SELECT COUNT(*) FROM posts").fetchone()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to count posts: {e}") from e
        return int(row[0]) if row else 0

    # outbox

    def enqueue(self, channel: str, owner_id: int, post_id: int) -> bool:
        """Insert a pending outbox row; returns False when the post is already queued."""
        table, _ = _outbox_table(channel)
        now = _utc_now_iso()
        try:
            with self._locked("enqueue") as conn:
                with conn:
                    cur = conn.execute(
                        f"""
                        INSERT OR IGNORE INTO {table}(
                          owner_id, post_id, status, retries, created_at, updated_at
                        ) VALUES (?, ?, 'pending', 0, ?, ?)
                        """.strip(),
                        (int(owner_id), int(post_id), now, now),
                    )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to enqueue {channel} outbox item: {e}") from e
        return cur.rowcount > 0

    def reap_expired(self, channel: str, now: float) -> int:
        table, _ = _outbox_table(channel)
        try:
            with self._locked("reap_expired") as conn:
                with conn:
                    cur = conn.execute(
                        f"""
                        UPDATE {table}
                        SET status = 'pending', leased_until = NULL, updated_at = ?
                        WHERE status = 'sending' AND leased_until IS NOT NULL AND leased_until < ?
                        """.strip(),
                        (_utc_now_iso(), float(now)),
                    )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to reap expired {channel} leases: {e}") from e
        return max(0, cur.rowcount)

    def claim(self, channel: str, now: float, lease_ttl: float, limit: int) -> list[OutboxItem]:
        """
        Lease up to `limit` of the oldest pending rows.

        Selection and the flip to `sending` run in one immediate transaction, so two
        workers can never lease the same row.
        """
        table, remote_column = _outbox_table(channel)
        if limit <= 0:
            return []

        lease = _lease_deadline(now, lease_ttl)
        try:
            with self._locked("claim") as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    ids = [
                        int(r[0])
                        for r in conn.execute(
                            f"""
                            SELECT id FROM {table}
                            WHERE status = 'pending' AND (leased_until IS NULL OR leased_until < ?)
                            ORDER BY id
                            LIMIT ?
                            """.strip(),
                            (float(now), int(limit)),
                        ).fetchall()
                    ]
                    rows: list[sqlite3.Row] = []
                    if ids:
                        marks = ", ".join("?" for _ in ids)
                        conn.execute(
                            f"UPDATE {table} SET status = 'sending', leased_until = ?, updated_at = ? WHERE id IN ({marks})",
                            (lease, _utc_now_iso(), *ids),
                        )
                        rows = conn.execute(
                            f"SELECT * FROM {table} WHERE id IN ({marks}) ORDER BY id",
                            ids,
                        ).fetchall()
                    conn.commit()
                except BaseException:
                    conn.rollback()
                    raise
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to claim {channel} outbox items: {e}") from e

        return [_outbox_from_row(r, remote_column) for r in rows]

    def _update_leased(self, what: str, sql: str, params: Sequence[Any]) -> int:
        try:
            with self._locked(what) as conn:
                with conn:
                    cur = conn.execute(sql, params)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to {what.replace('_', ' ')}: {e}") from e
        return max(0, cur.rowcount)

    def mark_sent(self, channel: str, item_id: int, lease: int, remote_id: int | None) -> bool:
        table, remote_column = _outbox_table(channel)
        changed = self._update_leased(
            "mark_sent",
            f"""
            UPDATE {table}
            SET status = 'sent', leased_until = NULL, last_error = NULL,
                {remote_column} = ?, updated_at = ?
            WHERE id = ? AND status = 'sending' AND leased_until = ?
            """.strip(),
            (remote_id, _utc_now_iso(), int(item_id), int(lease)),
        )
        return changed > 0

    def mark_failed(
        self,
        channel: str,
        item_id: int,
        lease: int,
        error: str,
        max_retries: int,
    ) -> str | None:
        """
        Count one failed attempt. Returns the new status (`pending` or `failed`),
        or None when the row is no longer held under `lease`.
        """
        table, _ = _outbox_table(channel)
        changed = self._update_leased(
            "mark_failed",
            f"""
            UPDATE {table}
            SET retries = retries + 1,
                status = CASE WHEN retries + 1 >= ? THEN 'failed' ELSE 'pending' END,
                leased_until = NULL, last_error = ?, updated_at = ?
            WHERE id = ? AND status = 'sending' AND leased_until = ?
            """.strip(),
            (int(max_retries), (error or "")[:_MAX_ERROR_CHARS], _utc_now_iso(), int(item_id), int(lease)),
        )
        if not changed:
            return None

        item = self.outbox_item(channel, item_id)
        return item.status if item is not None else None

    def mark_dead(self, channel: str, item_id: int, lease: int, error: str) -> bool:
        table, _ = _outbox_table(channel)
        changed = self._update_leased(
            "mark_dead",
            f"""
            UPDATE {table}
            SET status = 'failed', leased_until = NULL, last_error = ?, updated_at = ?
            WHERE id = ? AND status = 'sending' AND leased_until = ?
            """.strip(),
            ((error or "")[:_MAX_ERROR_CHARS], _utc_now_iso(), int(item_id), int(lease)),
        )
        return changed > 0

    def release(self, channel: str, item_ids: Iterable[int], lease: int) -> int:
        table, _ = _outbox_table(channel)
        ids = [int(i) for i in item_ids]
        if not ids:
            return 0

        marks = ", ".join("?" for _ in ids)
        return self._update_leased(
            "release",
            f"""
            UPDATE {table}
            SET status = 'pending', leased_until = NULL, updated_at = ?
            WHERE id IN ({marks}) AND status = 'sending' AND leased_until = ?
            """.strip(),
            (_utc_now_iso(), *ids, int(lease)),
        )

    def outbox_item(self, channel: str, item_id: int) -> OutboxItem | None:
        table, remote_column = _outbox_table(channel)
        try:
            with self._locked("outbox_item") as conn:
                row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (int(item_id),)).fetchone()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to read {channel} outbox item: {e}") from e

        if row is None:
            return None
        return _outbox_from_row(row, remote_column)

    def outbox_items(self, channel: str) -> list[OutboxItem]:
        table, remote_column = _outbox_table(channel)
        try:
            with self._locked("outbox_items") as conn:
                rows = conn.execute(f"SELECT * FROM {table} ORDER BY id").fetchall()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to list {channel} outbox items: {e}") from e
        return [_outbox_from_row(r, remote_column) for r in rows]

    def outbox_counts(self, channel: str) -> dict[str, int]:
        table, _ = _outbox_table(channel)
        try:
            with self._locked("outbox_counts") as conn:
                rows = conn.execute(
                    f"SELECT status, COUNT(*) FROM {table} GROUP BY status"
                ).fetchall()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to count {channel} outbox items: {e}") from e

        counts = {status: 0 for status in _OUTBOX_STATUSES}
        for status, n in rows:
            counts[str(status)] = int(n)
        return counts
