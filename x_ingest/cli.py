from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from typing import Sequence

from dateutil import parser as date_parser

from .config import RuntimeSecrets, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .errors import ConfigError, IngestionError, StorageError, UpstreamError, UpstreamTimeout
from .github import GitHubProfileSource
from .ingest import DateRange, IngestionResult, run_ingestion
from .linking import LinkingData, extract_linking_data, upsert_linking_section
from .proof import ProofVerifier, sign_linking_proof
from .run_log import RunLogger
from .scanner import ProfileScanner
from .scoring import score_activities
from .storage import SQLiteStore
from .x_api import XSearchClient


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="x_ingest")

    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser(
        "ingest",
        help="Discover linked X accounts and store their activity around the tracked handle.",
    )
    ingest.add_argument("--config", required=True, help="Path to YAML config file.")
    ingest.add_argument("--db", required=True, help="Path to the SQLite database.")
    ingest.add_argument("--start", help="Inclusive lower bound (ISO date or datetime, UTC).")
    ingest.add_argument("--end", help="Inclusive upper bound (ISO date or datetime, UTC).")
    ingest.add_argument(
        "--log",
        help="JSONL run log path (defaults to ingest.log next to the database).",
    )
    ingest.add_argument(
        "--verbose",
        action="store_true",
        help="Also write DEBUG events to the run log.",
    )
    ingest.set_defaults(_handler=_cmd_ingest)

    score = subparsers.add_parser(
        "score",
        help="Score one owner's stored activities and print the result as JSON.",
    )
    score.add_argument("--config", required=True, help="Path to YAML config file.")
    score.add_argument("--db", required=True, help="Path to the SQLite database.")
    score.add_argument("--user", required=True, help="Owner identity (code-hosting username).")
    score.add_argument("--start", help="Inclusive lower bound (ISO date or datetime, UTC).")
    score.add_argument("--end", help="Inclusive upper bound (ISO date or datetime, UTC).")
    score.set_defaults(_handler=_cmd_score)

    link = subparsers.add_parser(
        "link",
        help="Sign a linking proof and write the linking section into a README file.",
    )
    link.add_argument("--config", required=True, help="Path to YAML config file.")
    link.add_argument("--readme", required=True, help="README file to update (created if absent).")
    link.add_argument("--github-user", required=True, help="Code-hosting username.")
    link.add_argument("--x-user-id", required=True, help="Numeric X user id.")
    link.add_argument("--x-username", required=True, help="X handle, without '@'.")
    link.set_defaults(_handler=_cmd_link)

    add_user = subparsers.add_parser(
        "add-user",
        help="Register owner identities whose profiles the scanner should read.",
    )
    add_user.add_argument("--db", required=True, help="Path to the SQLite database.")
    add_user.add_argument("usernames", nargs="+", help="Code-hosting usernames.")
    add_user.add_argument("--bot", action="store_true", help="Mark the users as bots.")
    add_user.set_defaults(_handler=_cmd_add_user)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _parse_bound(value: str | None, *, end: bool = False) -> datetime | None:
    """Parse a CLI date bound; a bare date used as an upper bound covers the whole day."""
    raw = (value or "").strip()
    if not raw:
        return None

    try:
        parsed = date_parser.isoparse(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid date bound {raw!r}: {e}") from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    parsed = parsed.astimezone(timezone.utc)

    if end and len(raw) == 10 and parsed.time() == time(0, 0):
        parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
    return parsed


def _date_range(args: argparse.Namespace) -> DateRange | None:
    start = _parse_bound(getattr(args, "start", None))
    end = _parse_bound(getattr(args, "end", None), end=True)
    if start is None and end is None:
        return None

    try:
        return DateRange(
            start=start or datetime(1970, 1, 1, tzinfo=timezone.utc),
            end=end or datetime.now(timezone.utc),
        )
    except ValueError as e:
        raise ConfigError(str(e)) from e


def _cmd_ingest(args: argparse.Namespace) -> int:
    db_path = Path(args.db)
    log_path = Path(args.log) if args.log else db_path.parent / "ingest.log"

    with RunLogger.open(log_path, min_level="DEBUG" if args.verbose else "INFO") as log:
        log.info("ingest_command_started", config_path=str(args.config), db=str(db_path))

        try:
            cfg = load_config(args.config)
            secrets = resolve_runtime_secrets(cfg)
            date_range = _date_range(args)

            log.info(
                "config_loaded",
                config_path=str(args.config),
                tracked_handle=cfg.x_api.tracked_handle,
                tracked_hashtag=cfg.x_api.tracked_hashtag,
                github_token=secrets.github_token is not None,
            )

            with SQLiteStore.open(db_path) as store:
                result = asyncio.run(
                    _ingest(cfg, secrets, store=store, date_range=date_range, log=log)
                )

            print(f"run_id={result.run_id}")
            print(f"total_linked_accounts={result.total_linked_accounts}")
            print(f"pages_fetched={result.pages_fetched}")
            print(f"total_posts_fetched={result.total_posts_fetched}")
            print(f"stored={result.stored}")
            print(f"inserted={result.inserted}")
            print(f"updated={result.updated}")
            print(f"skipped={result.skipped}")
            print(f"run_log={log_path}")
            return 0
        except Exception as e:
            log.exception("ingest_command_failed", exc=e)
            raise


async def _ingest(
    cfg: AppConfig,
    secrets: RuntimeSecrets,
    *,
    store: SQLiteStore,
    date_range: DateRange | None,
    log: RunLogger,
) -> IngestionResult:
    gh = cfg.github
    async with GitHubProfileSource(
        token=secrets.github_token,
        api_base_url=gh.api_base_url,
        user_agent=gh.user_agent,
        timeout_seconds=gh.request_timeout_seconds,
        retry=gh.retry.to_retry_config(),
        rate_limit_warn_below=gh.rate_limit_warn_below,
        logger=log,
    ) as source, XSearchClient(
        secrets.x_api_key,
        base_url=cfg.x_api.base_url,
        timeout_seconds=cfg.x_api.request_timeout_seconds,
    ) as search_client:
        scanner = ProfileScanner(
            source,
            ProofVerifier(secrets.linking_secret),
            concurrency=gh.concurrency,
            batch_pause_seconds=gh.batch_pause_seconds,
            logger=log,
        )
        return await run_ingestion(
            cfg,
            store=store,
            scanner=scanner,
            search_client=search_client,
            date_range=date_range,
            logger=log,
        )


def _cmd_score(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    start = _parse_bound(args.start)
    end = _parse_bound(args.end, end=True)

    with SQLiteStore.open(args.db) as store:
        activities = store.activities_for_owner(
            args.user,
            start=start.isoformat() if start else None,
            end=end.isoformat() if end else None,
        )

    result = score_activities(
        activities,
        cfg.scoring,
        tracked_hashtag=cfg.x_api.tracked_hashtag,
    )

    payload = {"user": args.user, "activities": len(activities), **asdict(result)}
    print(json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True))
    return 0


def _cmd_link(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    secrets = resolve_runtime_secrets(cfg, require_x_api_key=False)

    ttl_days = cfg.linking.proof_ttl_days
    token = sign_linking_proof(
        args.github_user,
        args.x_user_id,
        args.x_username.lstrip("@"),
        secrets.linking_secret,
        ttl=timedelta(days=ttl_days) if ttl_days > 0 else None,
    )

    readme = Path(args.readme)
    try:
        current = readme.read_text(encoding="utf-8") if readme.exists() else ""
    except OSError as e:
        raise ConfigError(f"Failed to read README file: {readme}") from e

    previous = extract_linking_data(current)
    data = LinkingData.for_account(
        x_username=args.x_username.lstrip("@"),
        x_user_id=args.x_user_id,
        linking_proof=token,
        linked_at=previous.x_account.linked_at if previous is not None else None,
    )

    readme.parent.mkdir(parents=True, exist_ok=True)
    readme.write_text(upsert_linking_section(current, data), encoding="utf-8")

    print(f"readme={readme}")
    print(f"x_username={data.x_account.x_username}")
    print(f"last_updated={data.last_updated}")
    return 0


def _cmd_add_user(args: argparse.Namespace) -> int:
    with SQLiteStore.open(args.db) as store:
        for name in args.usernames:
            store.upsert_owner(name, is_bot=bool(args.bot))
        print(f"owners={len(store.list_owner_identities())}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except IngestionError as e:
        if isinstance(e.cause, ConfigError):
            _eprint(str(e.cause))
            return 2
        _eprint(str(e))
        return 3
    except (UpstreamError, UpstreamTimeout, StorageError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
