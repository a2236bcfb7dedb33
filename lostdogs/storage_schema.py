from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

SCHEMA_VERSION = 1

# channel name -> (outbox table, remote id column)
OUTBOX_TABLES: dict[str, tuple[str, str]] = {
    "telegram": ("outbox_telegram", "tg_message_id"),
    "vk": ("outbox_vk", "vk_post_id"),
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def initialize_sqlite(conn: sqlite3.Connection, *, busy_timeout_ms: int = 5000) -> None:
    """
    Initialize the SQLite database with a small migration system.

    This function is idempotent: it can be called on every startup.
    """
    _configure_connection(conn, busy_timeout_ms=busy_timeout_ms)
    _apply_migrations(conn)


def _configure_connection(conn: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")

    # WAL is best-effort (e.g., in-memory DBs won't use it).
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
    except sqlite3.DatabaseError:
        pass


def _outbox_ddl(table: str, remote_column: str) -> str:
    return f"""
CREATE TABLE IF NOT EXISTS {table} (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  owner_id INTEGER NOT NULL,
  post_id INTEGER NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending'
    CHECK (status IN ('pending', 'sending', 'sent', 'failed')),
  leased_until INTEGER,
  retries INTEGER NOT NULL DEFAULT 0,
  last_error TEXT,
  {remote_column} INTEGER,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE (owner_id, post_id)
);

CREATE INDEX IF NOT EXISTS idx_{table}_status_lease
  ON {table}(status, leased_until);
""".strip()


_MIGRATIONS: dict[int, str] = {
    1: "\n\n".join(
        [
            """
CREATE TABLE IF NOT EXISTS schema_migrations (
  version INTEGER PRIMARY KEY,
  applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS posts (
  owner_id INTEGER NOT NULL,
  post_id INTEGER NOT NULL,
  date INTEGER NOT NULL,
  raw TEXT NOT NULL,
  text TEXT NOT NULL,
  type TEXT NOT NULL,
  animal TEXT NOT NULL,
  sex TEXT NOT NULL,
  breed TEXT,
  age TEXT,
  name TEXT,
  location TEXT,
  when_text TEXT,
  status_details TEXT,
  phones_json TEXT NOT NULL DEFAULT '[]',
  contact_names_json TEXT NOT NULL DEFAULT '[]',
  vk_accounts_json TEXT NOT NULL DEFAULT '[]',
  photos_json TEXT NOT NULL DEFAULT '[]',
  sterilized INTEGER NOT NULL DEFAULT 0,
  vaccinated INTEGER NOT NULL DEFAULT 0,
  chipped INTEGER NOT NULL DEFAULT 0,
  litter_ok INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  PRIMARY KEY (owner_id, post_id)
);

CREATE INDEX IF NOT EXISTS idx_posts_type_animal
  ON posts(type, animal);
""".strip(),
            *(_outbox_ddl(table, col) for table, col in OUTBOX_TABLES.values()),
        ]
    )
}


def _apply_migrations(conn: sqlite3.Connection) -> None:
    with conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
        )

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    applied: set[int] = {int(r[0]) for r in rows}

    for version in range(1, SCHEMA_VERSION + 1):
        if version in applied:
            continue

        script = _MIGRATIONS.get(version)
        if not script:
            raise RuntimeError(f"Missing migration script for version={version}")

        with conn:
            conn.executescript(script)
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES (?, ?)",
                (version, _utc_now_iso()),
            )
