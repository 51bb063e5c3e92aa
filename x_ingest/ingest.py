from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Mapping, Protocol, Sequence

from dateutil import parser as date_parser

from .activity import ActivityRecord, activity_from_post
from .config import config_sha256
from .config_schema import AppConfig
from .errors import IngestionError
from .normalize import normalize_post
from .post import NormalizedPost
from .retry import SleepFn, call_with_retries
from .run_log import RunLogger
from .scanner import (
    LinkedAccountRecord,
    ScanProgress,
    ScanResult,
    build_id_index,
    duplicate_platform_ids,
)
from .storage import RunRecord
from .upstream_retry import is_retryable_search_error
from .x_api import SearchPage, build_mention_query


class IngestionStage(str, Enum):
    INIT = "INIT"
    SCANNING = "SCANNING"
    MAPPING = "MAPPING"
    SEARCHING = "SEARCHING"
    ATTRIBUTING = "ATTRIBUTING"
    PERSISTING = "PERSISTING"
    DONE = "DONE"
    FAILED = "FAILED"


class IngestionStore(Protocol):
    def list_owner_identities(self) -> list[str]: ...

    def upsert_linked_account(self, record: LinkedAccountRecord) -> None: ...

    def upsert_activity(self, activity: ActivityRecord) -> bool: ...

    def create_run(self, *, config_hash: str) -> RunRecord: ...

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        counts: Mapping[str, int] | None = None,
        failed_stage: str | None = None,
    ) -> None: ...


class Scanner(Protocol):
    async def scan(
        self,
        identities: Sequence[str],
        *,
        on_progress: Callable[[ScanProgress], None] | None = None,
    ) -> ScanResult: ...


class SearchSource(Protocol):
    async def search(self, query: str, cursor: str | None = None) -> SearchPage: ...


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("date range bounds must be timezone-aware")
        if self.end < self.start:
            raise ValueError("date range end must not precede start")

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


@dataclass(frozen=True)
class IngestionResult:
    run_id: str | None
    stored: int
    inserted: int
    updated: int
    skipped: int
    total_linked_accounts: int
    total_posts_fetched: int
    pages_fetched: int

    def counts(self) -> dict[str, int]:
        data = asdict(self)
        data.pop("run_id")
        return data


def _parse_instant(value: str) -> datetime:
    parsed = date_parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _Run:
    """Tracks the current stage so failures can name where they happened."""

    def __init__(self, logger: RunLogger | None) -> None:
        self.stage = IngestionStage.INIT
        self._logger = logger

    def enter(self, stage: IngestionStage) -> None:
        self.stage = stage
        if self._logger is not None:
            self._logger.debug("ingestion_stage", stage=stage.value)


async def fetch_all_pages(
    search_client: SearchSource,
    query: str,
    *,
    config: AppConfig,
    logger: RunLogger | None = None,
    sleep_fn: SleepFn | None = None,
) -> tuple[list[NormalizedPost], int]:
    """Fetch pages strictly in sequence until the upstream runs out or max_pages is hit."""
    sleeper = sleep_fn or asyncio.sleep
    retry_cfg = config.x_api.retry.to_retry_config()

    posts: list[NormalizedPost] = []
    cursor: str | None = None
    pages = 0

    while pages < config.x_api.max_pages:
        if pages > 0 and config.x_api.page_delay_seconds > 0:
            await sleeper(float(config.x_api.page_delay_seconds))

        page_cursor = cursor

        async def _do_search() -> SearchPage:
            return await search_client.search(query, page_cursor)

        page = await call_with_retries(
            _do_search,
            cfg=retry_cfg,
            is_retryable=is_retryable_search_error,
            operation=f"x.search:page{pages + 1}",
            sleep_fn=sleep_fn,
        )
        pages += 1

        normalized = [normalize_post(raw) for raw in page.posts]
        posts.extend(normalized)

        if logger is not None:
            logger.debug("search_page_fetched", page=pages, posts=len(normalized))

        if not page.posts or not page.has_more or not page.next_cursor:
            break
        cursor = page.next_cursor

    return posts, pages


async def run_ingestion(
    config: AppConfig,
    *,
    store: IngestionStore,
    scanner: Scanner,
    search_client: SearchSource,
    date_range: DateRange | None = None,
    logger: RunLogger | None = None,
    sleep_fn: SleepFn | None = None,
) -> IngestionResult:
    """
    Scan profiles for linked accounts, run one global search, attribute posts to owners
    and upsert them as activities.

    Any failure is raised as IngestionError naming the stage; writes already made are kept.
    """
    run = _Run(logger)
    run_id: str | None = None
    try:
        run_id = store.create_run(config_hash=config_sha256(config)).run_id
        if logger is not None:
            logger.set_run_id(run_id)

        identities = store.list_owner_identities()
        if logger is not None:
            logger.info("ingestion_started", owners=len(identities))

        run.enter(IngestionStage.SCANNING)

        def _on_progress(event: ScanProgress) -> None:
            if logger is not None and event.processed % 50 == 0:
                logger.debug("profile_scan_progress", processed=event.processed, total=event.total)

        scan = await scanner.scan(identities, on_progress=_on_progress)
        if logger is not None:
            logger.info(
                "linked_accounts_found",
                linked=len(scan.linked),
                scanned=scan.scanned,
                failed=scan.failed,
            )

        if not scan.linked:
            result = IngestionResult(
                run_id=run_id,
                stored=0,
                inserted=0,
                updated=0,
                skipped=0,
                total_linked_accounts=0,
                total_posts_fetched=0,
                pages_fetched=0,
            )
            run.enter(IngestionStage.DONE)
            if logger is not None:
                logger.warning("no_linked_accounts", scanned=scan.scanned)
            store.finish_run(run_id, status="completed", counts=result.counts())
            return result

        run.enter(IngestionStage.MAPPING)
        for pid, owners in duplicate_platform_ids(scan.linked).items():
            if logger is not None:
                logger.warning("duplicate_platform_id", subject=pid, owners=owners)
        index = build_id_index(scan.linked)
        for linked in scan.linked:
            store.upsert_linked_account(linked)

        run.enter(IngestionStage.SEARCHING)
        query = build_mention_query(
            config.x_api.tracked_handle,
            exclude_replies=config.x_api.exclude_replies,
        )
        posts, pages = await fetch_all_pages(
            search_client,
            query,
            config=config,
            logger=logger,
            sleep_fn=sleep_fn,
        )
        if logger is not None:
            logger.info("search_completed", query=query, posts=len(posts), pages=pages)

        run.enter(IngestionStage.ATTRIBUTING)
        attributed: list[tuple[NormalizedPost, str]] = []
        seen_ids: set[str] = set()
        skipped = 0
        for post in posts:
            owner = index.get(post.author_id)
            if owner is None or not post.has_known_id:
                skipped += 1
                continue
            if date_range is not None and not date_range.contains(_parse_instant(post.created_at)):
                skipped += 1
                continue
            # First page wins when paging returns the same post twice.
            if post.id in seen_ids:
                skipped += 1
                if logger is not None:
                    logger.debug("duplicate_post_skipped", subject=post.id)
                continue
            seen_ids.add(post.id)
            attributed.append((post, owner))

        run.enter(IngestionStage.PERSISTING)
        inserted = updated = 0
        now = _utc_now_iso()
        for post, owner in attributed:
            activity = activity_from_post(
                post,
                owner,
                tracked_handle=config.x_api.tracked_handle,
                tracked_hashtag=config.x_api.tracked_hashtag,
                now=now,
            )
            if store.upsert_activity(activity):
                inserted += 1
            else:
                updated += 1

        run.enter(IngestionStage.DONE)
        result = IngestionResult(
            run_id=run_id,
            stored=inserted + updated,
            inserted=inserted,
            updated=updated,
            skipped=skipped,
            total_linked_accounts=len(scan.linked),
            total_posts_fetched=len(posts),
            pages_fetched=pages,
        )
        if logger is not None:
            logger.info("ingestion_completed", **result.counts())
        store.finish_run(run_id, status="completed", counts=result.counts())
        return result

    except IngestionError:
        raise
    except Exception as e:
        failed_stage = run.stage
        run.enter(IngestionStage.FAILED)
        if logger is not None:
            logger.exception("ingestion_failed", exc=e, stage=failed_stage.value)
        if run_id is not None:
            try:
                store.finish_run(run_id, status="failed", failed_stage=failed_stage.value)
            except Exception as finish_error:
                if logger is not None:
                    logger.exception("run_record_update_failed", exc=finish_error)
        raise IngestionError(failed_stage.value, e) from e

