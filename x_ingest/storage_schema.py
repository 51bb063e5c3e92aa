from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

SCHEMA_VERSION = 1


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def initialize_sqlite(conn: sqlite3.Connection) -> None:
    """
    Initialize the SQLite database with a small migration system.

    This function is idempotent: it can be called on every startup.
    """
    _configure_connection(conn)
    _apply_migrations(conn)


def _configure_connection(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")

    # WAL is best-effort (e.g., in-memory DBs won't use it).
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
    except sqlite3.DatabaseError:
        pass


_MIGRATIONS: dict[int, str] = {
    1: """
CREATE TABLE IF NOT EXISTS users (
  username TEXT PRIMARY KEY,
  is_bot INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS social_accounts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id TEXT NOT NULL,
  platform TEXT NOT NULL,
  platform_user_id TEXT NOT NULL,
  platform_username TEXT NOT NULL,
  profile_url TEXT,
  linking_proof TEXT NOT NULL,
  verification_method TEXT NOT NULL,
  is_active INTEGER NOT NULL DEFAULT 1,
  linked_at TEXT NOT NULL,
  last_synced_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  FOREIGN KEY (user_id) REFERENCES users(username) ON DELETE CASCADE,
  UNIQUE (user_id, platform)
);

CREATE INDEX IF NOT EXISTS idx_social_accounts_platform_user_id
  ON social_accounts(platform, platform_user_id);

CREATE TABLE IF NOT EXISTS x_activities (
  id TEXT PRIMARY KEY,
  username TEXT NOT NULL,
  activity_type TEXT NOT NULL
    CHECK (activity_type IN ('post', 'repost', 'quote', 'reply')),
  content TEXT NOT NULL,
  is_about_tracked_brand INTEGER NOT NULL,
  mentions_tracked_handle INTEGER NOT NULL,
  hashtags_used TEXT NOT NULL,
  media_count INTEGER NOT NULL,
  engagement_count INTEGER NOT NULL,
  likes_count INTEGER NOT NULL,
  reposts_count INTEGER NOT NULL,
  replies_count INTEGER NOT NULL,
  quotes_count INTEGER NOT NULL,
  views_count INTEGER NOT NULL,
  bookmarks_count INTEGER NOT NULL,
  created_at TEXT NOT NULL,
  last_updated TEXT NOT NULL,
  FOREIGN KEY (username) REFERENCES users(username) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_x_activities_username_created_at
  ON x_activities(username, created_at);

CREATE TABLE IF NOT EXISTS ingestion_runs (
  run_id TEXT PRIMARY KEY,
  started_at TEXT NOT NULL,
  ended_at TEXT,
  status TEXT NOT NULL,
  config_hash TEXT NOT NULL,
  failed_stage TEXT,
  counts_json TEXT NOT NULL
);
""".strip()
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
