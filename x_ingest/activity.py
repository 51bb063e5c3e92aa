from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from .post import NormalizedPost

ActivityType = Literal["post", "repost", "quote", "reply"]
ACTIVITY_TYPES: tuple[ActivityType, ...] = ("post", "repost", "quote", "reply")


@dataclass(frozen=True)
class ActivityRecord:
    """A stored X activity attributed to one owner identity, keyed by post id."""

    id: str
    owner_identity: str
    activity_type: ActivityType
    content: str
    created_at: str

    is_about_tracked_brand: bool = False
    mentions_tracked_handle: bool = False
    hashtags_used: tuple[str, ...] = ()
    media_count: int = 0

    engagement_count: int = 0
    likes_count: int = 0
    reposts_count: int = 0
    replies_count: int = 0
    quotes_count: int = 0
    views_count: int = 0
    bookmarks_count: int = 0

    last_updated: str = ""


def classify_activity(post: NormalizedPost) -> ActivityType:
    """Exactly one type per post; precedence is reply > repost > quote > post."""
    if post.is_reply:
        return "reply"
    if post.is_repost:
        return "repost"
    if post.is_quote:
        return "quote"
    return "post"


def mentions_handle(post: NormalizedPost, handle: str) -> bool:
    key = (handle or "").strip().lstrip("@").casefold()
    return bool(key) and any(m.handle == key for m in post.mentions)


def uses_hashtag(post: NormalizedPost, hashtag: str) -> bool:
    key = (hashtag or "").strip().lstrip("#").casefold()
    return bool(key) and key in post.hashtags


def activity_from_post(
    post: NormalizedPost,
    owner_identity: str,
    *,
    tracked_handle: str,
    tracked_hashtag: str,
    now: str | None = None,
) -> ActivityRecord:
    mentioned = mentions_handle(post, tracked_handle)
    counts = post.counts

    return ActivityRecord(
        id=post.id,
        owner_identity=owner_identity,
        activity_type=classify_activity(post),
        content=post.text,
        created_at=post.created_at,
        is_about_tracked_brand=mentioned or uses_hashtag(post, tracked_hashtag),
        mentions_tracked_handle=mentioned,
        hashtags_used=tuple(post.hashtags),
        media_count=post.media_count,
        engagement_count=counts.engagement_total,
        likes_count=counts.likes,
        reposts_count=counts.reposts,
        replies_count=counts.replies,
        quotes_count=counts.quotes,
        views_count=counts.views,
        bookmarks_count=counts.bookmarks,
        last_updated=now or datetime.now(timezone.utc).isoformat(),
    )
