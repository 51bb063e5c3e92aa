from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from .activity import ActivityRecord
from .errors import StorageError
from .scanner import LinkedAccountRecord
from .storage_schema import initialize_sqlite


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def _as_path(value: str | Path) -> str:
    return str(value)


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    started_at: str
    ended_at: str | None
    status: str
    config_hash: str
    failed_stage: str | None
    counts: dict[str, int]


@dataclass(frozen=True)
class StoredLinkedAccount:
    owner_identity: str
    platform: str
    platform_user_id: str
    platform_handle: str
    linked_at: str
    last_synced_at: str


def _activity_from_row(row: sqlite3.Row) -> ActivityRecord:
    try:
        hashtags = json.loads(row["hashtags_used"] or "[]")
    except json.JSONDecodeError:
        hashtags = []
    if not isinstance(hashtags, list):
        hashtags = []

    return ActivityRecord(
        id=str(row["id"]),
        owner_identity=str(row["username"]),
        activity_type=row["activity_type"],
        content=str(row["content"]),
        created_at=str(row["created_at"]),
        is_about_tracked_brand=bool(row["is_about_tracked_brand"]),
        mentions_tracked_handle=bool(row["mentions_tracked_handle"]),
        hashtags_used=tuple(str(h) for h in hashtags),
        media_count=int(row["media_count"]),
        engagement_count=int(row["engagement_count"]),
        likes_count=int(row["likes_count"]),
        reposts_count=int(row["reposts_count"]),
        replies_count=int(row["replies_count"]),
        quotes_count=int(row["quotes_count"]),
        views_count=int(row["views_count"]),
        bookmarks_count=int(row["bookmarks_count"]),
        last_updated=str(row["last_updated"]),
    )


class SQLiteStore:
    """
    Identity and activity store backing the ingestion pipeline.

    Every write is an idempotent upsert keyed on a natural key, so an aborted run can simply
    be re-run.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row

    @classmethod
    def open(cls, path: str | Path) -> "SQLiteStore":
        db_path = _as_path(path)
        if db_path != ":memory:":
            p = Path(db_path)
            p.parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(db_path)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to open sqlite database: {db_path}: {e}") from e

        try:
            initialize_sqlite(conn)
        except Exception as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # -- owners ---------------------------------------------------------------------------

    def upsert_owner(self, username: str, *, is_bot: bool = False) -> None:
        name = (username or "").strip()
        if not name:
            raise ValueError("username must be non-empty")

        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO users(username, is_bot, created_at) VALUES (?, ?, ?)
                    ON CONFLICT(username) DO NOTHING
                    """.strip(),
                    (name, 1 if is_bot else 0, _utc_now_iso()),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to upsert owner {name}: {e}") from e

    def list_owner_identities(self) -> list[str]:
        try:
            rows = self._conn.execute(
                "SELECT username FROM users WHERE is_bot = 0 ORDER BY username"
            ).fetchall()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to list owners: {e}") from e
        return [str(r["username"]) for r in rows]

    # -- linked accounts ------------------------------------------------------------------

    def upsert_linked_account(self, record: LinkedAccountRecord) -> None:
        """Create the owner if absent, then insert or refresh its (owner, platform) link."""
        self.upsert_owner(record.owner_identity)

        now = _utc_now_iso()
        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO social_accounts(
                      user_id, platform, platform_user_id, platform_username, profile_url,
                      linking_proof, verification_method, is_active, linked_at,
                      last_synced_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 'readme_jwt', 1, ?, ?, ?)
                    ON CONFLICT(user_id, platform) DO UPDATE SET
                      platform_user_id = excluded.platform_user_id,
                      platform_username = excluded.platform_username,
                      profile_url = excluded.profile_url,
                      linking_proof = excluded.linking_proof,
                      is_active = 1,
                      linked_at = excluded.linked_at,
                      last_synced_at = excluded.last_synced_at,
                      updated_at = excluded.updated_at
                    """.strip(),
                    (
                        record.owner_identity,
                        record.platform,
                        record.platform_user_id,
                        record.platform_handle,
                        f"https://x.com/{record.platform_handle}",
                        record.proof_token,
                        record.linked_at,
                        record.last_observed_at or now,
                        record.last_updated or now,
                    ),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(
                f"Failed to upsert linked account for {record.owner_identity}: {e}"
            ) from e

    def linked_accounts(self, *, platform: str = "x") -> list[StoredLinkedAccount]:
        rows = self._conn.execute(
            """
            SELECT user_id, platform, platform_user_id, platform_username, linked_at,
                   last_synced_at
            FROM social_accounts
            WHERE platform = ? AND is_active = 1
            ORDER BY user_id
            """.strip(),
            (platform,),
        ).fetchall()
        return [
            StoredLinkedAccount(
                owner_identity=str(r["user_id"]),
                platform=str(r["platform"]),
                platform_user_id=str(r["platform_user_id"]),
                platform_handle=str(r["platform_username"]),
                linked_at=str(r["linked_at"]),
                last_synced_at=str(r["last_synced_at"]),
            )
            for r in rows
        ]

    # -- activities -----------------------------------------------------------------------

    def upsert_activity(self, activity: ActivityRecord) -> bool:
        """
        Insert a new activity, or refresh only the engagement counters of an existing one.

        Returns True when the row was newly inserted.
        """
        key = (activity.id or "").strip()
        if not key:
            raise ValueError("activity id must be non-empty")

        updated = activity.last_updated or _utc_now_iso()
        try:
            with self._conn:
                existed = (
                    self._conn.execute(
                        "SELECT 1 FROM x_activities WHERE id = ?", (key,)
                    ).fetchone()
                    is not None
                )
                self._conn.execute(
                    """
                    INSERT INTO x_activities(
                      id, username, activity_type, content, is_about_tracked_brand,
                      mentions_tracked_handle, hashtags_used, media_count, engagement_count,
                      likes_count, reposts_count, replies_count, quotes_count, views_count,
                      bookmarks_count, created_at, last_updated
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                      engagement_count = excluded.engagement_count,
                      likes_count = excluded.likes_count,
                      reposts_count = excluded.reposts_count,
                      replies_count = excluded.replies_count,
                      quotes_count = excluded.quotes_count,
                      views_count = excluded.views_count,
                      bookmarks_count = excluded.bookmarks_count,
                      last_updated = excluded.last_updated
                    """.strip(),
                    (
                        key,
                        activity.owner_identity,
                        activity.activity_type,
                        activity.content,
                        1 if activity.is_about_tracked_brand else 0,
                        1 if activity.mentions_tracked_handle else 0,
                        json.dumps(list(activity.hashtags_used), ensure_ascii=False),
                        int(activity.media_count),
                        int(activity.engagement_count),
                        int(activity.likes_count),
                        int(activity.reposts_count),
                        int(activity.replies_count),
                        int(activity.quotes_count),
                        int(activity.views_count),
                        int(activity.bookmarks_count),
                        activity.created_at,
                        updated,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise StorageError(
                f"Failed to upsert activity {key}; ensure owner {activity.owner_identity} exists"
            ) from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to upsert activity {key}: {e}") from e

        return not existed

    def get_activity(self, activity_id: str) -> ActivityRecord | None:
        key = (activity_id or "").strip()
        if not key:
            raise ValueError("activity_id must be non-empty")

        row = self._conn.execute("SELECT * FROM x_activities WHERE id = ?", (key,)).fetchone()
        if row is None:
            return None
        return _activity_from_row(row)

    def activities_for_owner(
        self,
        username: str,
        *,
        start: str | None = None,
        end: str | None = None,
    ) -> list[ActivityRecord]:
        """
        Activities of one owner, oldest first. Bounds compare ISO-8601 UTC strings, which
        is how created_at is stored.
        """
        sql = "SELECT * FROM x_activities WHERE username = ?"
        params: list[Any] = [username]
        if start:
            sql += " AND created_at >= ?"
            params.append(start)
        if end:
            sql += " AND created_at <= ?"
            params.append(end)
        sql += " ORDER BY created_at ASC"

        try:
            rows = self._conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to read activities for {username}: {e}") from e
        return [_activity_from_row(r) for r in rows]

    def activity_count(self) -> int:
        row = self._conn.execute("SELECT COUNT(1) AS n FROM x_activities").fetchone()
        return int(row["n"]) if row is not None else 0

    # -- runs -----------------------------------------------------------------------------

    def create_run(
        self,
        *,
        config_hash: str,
        run_id: str | None = None,
        started_at: str | None = None,
    ) -> RunRecord:
        rid = (run_id or uuid.uuid4().hex).strip()
        if not rid:
            raise ValueError("run_id must be non-empty")

        cfg_hash = (config_hash or "").strip()
        if not cfg_hash:
            raise ValueError("config_hash must be non-empty")

        start = (started_at or _utc_now_iso()).strip()

        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT OR IGNORE INTO ingestion_runs(
                      run_id, started_at, ended_at, status, config_hash, failed_stage, counts_json
                    ) VALUES (?, ?, NULL, 'running', ?, NULL, '{}')
                    """.strip(),
                    (rid, start, cfg_hash),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to create run record: {e}") from e

        record = self.get_run(rid)
        if record is None:
            raise StorageError("Failed to read run record after insert")
        return record

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        counts: Mapping[str, int] | None = None,
        failed_stage: str | None = None,
        ended_at: str | None = None,
    ) -> None:
        rid = (run_id or "").strip()
        if not rid:
            raise ValueError("run_id must be non-empty")

        end = (ended_at or _utc_now_iso()).strip()

        try:
            with self._conn:
                self._conn.execute(
                    """
                    UPDATE ingestion_runs
                    SET ended_at = ?, status = ?, failed_stage = ?, counts_json = ?
                    WHERE run_id = ?
                    """.strip(),
                    (end, status, failed_stage, _json_dumps(dict(counts or {})), rid),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to finish run: {e}") from e

    def get_run(self, run_id: str) -> RunRecord | None:
        rid = (run_id or "").strip()
        if not rid:
            raise ValueError("run_id must be non-empty")

        row = self._conn.execute(
            """
            SELECT run_id, started_at, ended_at, status, config_hash, failed_stage, counts_json
            FROM ingestion_runs WHERE run_id = ?
            """.strip(),
            (rid,),
        ).fetchone()
        if row is None:
            return None

        try:
            counts = json.loads((row["counts_json"] or "{}").strip())
        except json.JSONDecodeError:
            counts = {}

        if not isinstance(counts, dict):
            counts = {}

        return RunRecord(
            run_id=str(row["run_id"]),
            started_at=str(row["started_at"]),
            ended_at=str(row["ended_at"]) if row["ended_at"] is not None else None,
            status=str(row["status"]),
            config_hash=str(row["config_hash"]),
            failed_stage=str(row["failed_stage"]) if row["failed_stage"] is not None else None,
            counts={str(k): int(v) for k, v in counts.items()},
        )
