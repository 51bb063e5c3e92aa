from __future__ import annotations

from dataclasses import dataclass

UNKNOWN_POST_ID = "unknown_post"
UNKNOWN_AUTHOR_ID = "unknown_author"
UNKNOWN_AUTHOR_HANDLE = "unknown_username"


@dataclass(frozen=True)
class Mention:
    handle: str
    id: str


@dataclass(frozen=True)
class EngagementCounts:
    likes: int = 0
    reposts: int = 0
    replies: int = 0
    quotes: int = 0
    views: int = 0
    bookmarks: int = 0

    @property
    def engagement_total(self) -> int:
        return self.likes + self.reposts + self.replies + self.quotes


@dataclass(frozen=True)
class NormalizedPost:
    """A post in one canonical shape, whichever upstream schema produced it."""

    id: str
    text: str
    author_id: str
    author_handle: str
    created_at: str
    counts: EngagementCounts = EngagementCounts()

    author_name: str = ""
    is_repost: bool = False
    is_quote: bool = False
    is_reply: bool = False

    hashtags: tuple[str, ...] = ()
    mentions: tuple[Mention, ...] = ()
    media_count: int = 0

    @property
    def has_known_id(self) -> bool:
        return self.id != UNKNOWN_POST_ID

    @property
    def has_known_author(self) -> bool:
        return self.author_id != UNKNOWN_AUTHOR_ID
