from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from dateutil import parser as date_parser

from .activity import ActivityRecord
from .config_schema import DEFAULT_TRACKED_HASHTAG, ScoringConfig

_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class ActivityCounts:
    total: int = 0
    posts: int = 0
    quotes: int = 0
    replies: int = 0
    reposts: int = 0


@dataclass(frozen=True)
class ScoreResult:
    total_score: float
    counts: ActivityCounts = ActivityCounts()
    mentions: int = 0
    with_hashtag: int = 0
    with_media: int = 0
    daily_scores: dict[str, float] = field(default_factory=dict)


def round_points(value: float) -> float:
    """Round to 2 decimals, halves away from zero."""
    quantized = Decimal(repr(float(value))).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return float(quantized)


def _created_at(activity: ActivityRecord) -> datetime:
    parsed = date_parser.isoparse(activity.created_at)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _uses_hashtag(activity: ActivityRecord, hashtag: str) -> bool:
    return hashtag in {h.casefold() for h in activity.hashtags_used}


def base_points(activity: ActivityRecord, config: ScoringConfig) -> float:
    if activity.activity_type == "post":
        return config.post.base
    if activity.activity_type == "quote":
        return config.quote.base
    if activity.activity_type == "reply":
        return config.reply.base
    if activity.activity_type == "repost":
        return config.repost.base
    return 0.0


def activity_points(
    activity: ActivityRecord,
    position: int,
    config: ScoringConfig,
    *,
    tracked_hashtag: str = DEFAULT_TRACKED_HASHTAG,
) -> float:
    """
    Points for one activity at its 1-based position within its day.

    Multipliers only apply to plain posts; positions past the threshold decay by
    penalty ** (position - threshold).
    """
    if position < 1:
        raise ValueError("position must be >= 1")

    points = base_points(activity, config)

    if activity.activity_type == "post":
        if activity.mentions_tracked_handle:
            points *= config.post.mentions_tracked_handle
        if _uses_hashtag(activity, tracked_hashtag.casefold()):
            points *= config.post.uses_tracked_hashtag
        if activity.media_count > 0:
            points *= config.post.has_media

    threshold = config.daily.diminishing_returns_threshold
    if position > threshold:
        points *= config.daily.diminishing_returns_penalty ** (position - threshold)

    return points


def group_by_day(activities: Iterable[ActivityRecord]) -> dict[str, list[ActivityRecord]]:
    """Group by UTC calendar day; each day is sorted oldest first."""
    days: defaultdict[str, list[tuple[datetime, ActivityRecord]]] = defaultdict(list)
    for activity in activities:
        ts = _created_at(activity)
        days[ts.date().isoformat()].append((ts, activity))

    return {
        day: [a for _, a in sorted(items, key=lambda pair: pair[0])]
        for day, items in sorted(days.items())
    }


def score_activities(
    activities: Iterable[ActivityRecord],
    config: ScoringConfig | None = None,
    *,
    tracked_hashtag: str = DEFAULT_TRACKED_HASHTAG,
) -> ScoreResult:
    """
    Score a user's activities for a period.

    Per day: keep the first max_posts_per_day by time, sum the per-position points, clamp to
    max_points_per_day. Metrics are counted over the same kept activities.
    """
    cfg = config or ScoringConfig()
    hashtag = (tracked_hashtag or "").strip().lstrip("#").casefold()

    total = 0.0
    daily: dict[str, float] = {}
    kinds = {"post": 0, "quote": 0, "reply": 0, "repost": 0}
    kept_total = mentions = with_hashtag = with_media = 0

    for day, day_activities in group_by_day(activities).items():
        kept = day_activities[: cfg.daily.max_posts_per_day]

        day_score = 0.0
        for position, activity in enumerate(kept, start=1):
            day_score += activity_points(activity, position, cfg, tracked_hashtag=hashtag)

            kept_total += 1
            if activity.activity_type in kinds:
                kinds[activity.activity_type] += 1
            if activity.mentions_tracked_handle:
                mentions += 1
            if _uses_hashtag(activity, hashtag):
                with_hashtag += 1
            if activity.media_count > 0:
                with_media += 1

        day_score = min(day_score, cfg.daily.max_points_per_day)
        daily[day] = round_points(day_score)
        total += day_score

    return ScoreResult(
        total_score=round_points(total),
        counts=ActivityCounts(
            total=kept_total,
            posts=kinds["post"],
            quotes=kinds["quote"],
            replies=kinds["reply"],
            reposts=kinds["repost"],
        ),
        mentions=mentions,
        with_hashtag=with_hashtag,
        with_media=with_media,
        daily_scores=daily,
    )
