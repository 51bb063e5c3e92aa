from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Mapping

from dateutil import parser as date_parser

from .post import (
    UNKNOWN_AUTHOR_HANDLE,
    UNKNOWN_AUTHOR_ID,
    UNKNOWN_POST_ID,
    EngagementCounts,
    Mention,
    NormalizedPost,
)

EPOCH_ISO = datetime(1970, 1, 1, tzinfo=timezone.utc).isoformat()


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def _coerce_id(value: Any) -> str | None:
    if isinstance(value, str):
        v = value.strip()
        return v if v else None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _coerce_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return 0
        return max(0, int(value))
    if isinstance(value, str):
        try:
            return max(0, int(value.strip().replace(",", "")))
        except ValueError:
            return 0
    return 0


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _dig(obj: Any, *path: str) -> Any:
    cur = obj
    for key in path:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(key)
    return cur


def parse_post_timestamp(value: Any) -> str:
    """
    Parse ISO-8601 or the platform's "Wed Oct 10 20:19:24 +0000 2018" form into a UTC ISO
    instant. Missing or unparseable values fall back to the Unix epoch.
    """
    raw = _coerce_str(value)
    if raw is None:
        return EPOCH_ISO

    try:
        parsed = date_parser.isoparse(raw)
    except (ValueError, TypeError, OverflowError):
        try:
            parsed = date_parser.parse(raw)
        except (ValueError, TypeError, OverflowError):
            return EPOCH_ISO

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def _hashtags(entities: Mapping[str, Any]) -> tuple[str, ...]:
    out: list[str] = []
    seen: set[str] = set()
    for item in _list(entities.get("hashtags")):
        text = _coerce_str(item.get("text")) if isinstance(item, Mapping) else _coerce_str(item)
        if not text:
            continue
        tag = text.lstrip("#").casefold()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        out.append(tag)
    return tuple(out)


def _mentions(entities: Mapping[str, Any]) -> tuple[Mention, ...]:
    out: list[Mention] = []
    seen: set[str] = set()
    for item in _list(entities.get("user_mentions")):
        if not isinstance(item, Mapping):
            continue
        handle = _coerce_str(item.get("screen_name")) or _coerce_str(item.get("userName"))
        if not handle:
            continue
        key = handle.lstrip("@").casefold()
        if key in seen:
            continue
        seen.add(key)
        mention_id = _coerce_id(item.get("id_str")) or _coerce_id(item.get("id")) or ""
        out.append(Mention(handle=key, id=mention_id))
    return tuple(out)


def _media_count(*containers: Mapping[str, Any]) -> int:
    for container in containers:
        media = _list(container.get("media"))
        if media:
            return len(media)
    return 0


def is_legacy_shape(raw: Mapping[str, Any]) -> bool:
    """The nested shape keeps the post body under a `legacy` mapping."""
    return isinstance(raw.get("legacy"), Mapping)


def _normalize_legacy(raw: Mapping[str, Any]) -> NormalizedPost:
    legacy = _mapping(raw.get("legacy"))
    entities = _mapping(legacy.get("entities"))
    extended = _mapping(legacy.get("extended_entities"))
    user = _mapping(_dig(raw, "core", "user_results", "result"))
    user_legacy = _mapping(user.get("legacy"))

    author_handle = _coerce_str(user_legacy.get("screen_name")) or UNKNOWN_AUTHOR_HANDLE

    return NormalizedPost(
        id=_coerce_id(raw.get("rest_id")) or _coerce_id(legacy.get("id_str")) or UNKNOWN_POST_ID,
        text=_coerce_str(legacy.get("full_text")) or _coerce_str(legacy.get("text")) or "",
        author_id=(
            _coerce_id(user.get("rest_id"))
            or _coerce_id(legacy.get("user_id_str"))
            or UNKNOWN_AUTHOR_ID
        ),
        author_handle=author_handle,
        author_name=_coerce_str(user_legacy.get("name")) or author_handle,
        created_at=parse_post_timestamp(legacy.get("created_at")),
        counts=EngagementCounts(
            likes=_coerce_count(legacy.get("favorite_count")),
            reposts=_coerce_count(legacy.get("retweet_count")),
            replies=_coerce_count(legacy.get("reply_count")),
            quotes=_coerce_count(legacy.get("quote_count")),
            views=_coerce_count(_dig(raw, "views", "count")),
            bookmarks=_coerce_count(legacy.get("bookmark_count")),
        ),
        is_repost=bool(_coerce_id(legacy.get("retweeted_status_id_str"))),
        is_quote=bool(_coerce_id(legacy.get("quoted_status_id_str"))),
        is_reply=bool(
            _coerce_id(legacy.get("in_reply_to_status_id_str"))
            or _coerce_id(legacy.get("in_reply_to_user_id_str"))
        ),
        hashtags=_hashtags(entities),
        mentions=_mentions(entities),
        media_count=_media_count(extended, entities),
    )


def _normalize_flat(raw: Mapping[str, Any]) -> NormalizedPost:
    entities = _mapping(raw.get("entities"))
    extended = _mapping(raw.get("extendedEntities"))
    author = _mapping(raw.get("author"))

    author_handle = (
        _coerce_str(author.get("userName"))
        or _coerce_str(author.get("screen_name"))
        or UNKNOWN_AUTHOR_HANDLE
    )

    return NormalizedPost(
        id=_coerce_id(raw.get("id")) or UNKNOWN_POST_ID,
        text=_coerce_str(raw.get("text")) or "",
        author_id=_coerce_id(author.get("id")) or UNKNOWN_AUTHOR_ID,
        author_handle=author_handle,
        author_name=_coerce_str(author.get("name")) or author_handle,
        created_at=parse_post_timestamp(raw.get("createdAt")),
        counts=EngagementCounts(
            likes=_coerce_count(raw.get("likeCount")),
            reposts=_coerce_count(raw.get("retweetCount")),
            replies=_coerce_count(raw.get("replyCount")),
            quotes=_coerce_count(raw.get("quoteCount")),
            views=_coerce_count(raw.get("viewCount")),
            bookmarks=_coerce_count(raw.get("bookmarkCount")),
        ),
        is_repost=isinstance(raw.get("retweeted_tweet"), Mapping),
        is_quote=isinstance(raw.get("quoted_tweet"), Mapping),
        is_reply=bool(raw.get("isReply") is True or _coerce_id(raw.get("inReplyToId"))),
        hashtags=_hashtags(entities),
        mentions=_mentions(entities),
        media_count=_media_count(extended, entities),
    )


def normalize_post(raw: Mapping[str, Any]) -> NormalizedPost:
    """
    Normalize a raw search result into a NormalizedPost.

    Never raises on missing optional fields: counts default to zero and identity fields to
    explicit "unknown" sentinels.
    """
    item = _mapping(raw)
    if is_legacy_shape(item):
        return _normalize_legacy(item)
    return _normalize_flat(item)
