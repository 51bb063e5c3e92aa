from __future__ import annotations

import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .retry import RetryConfig

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


def _normalize_handle(value: str, *, prefix: str) -> str:
    handle = (value or "").strip()
    if handle.startswith(prefix):
        handle = handle[len(prefix) :].strip()
    if not handle:
        raise ValueError("must be non-empty")
    return handle


DEFAULT_TRACKED_HANDLE = "SendoMarket"
DEFAULT_TRACKED_HASHTAG = "sendo"

PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]
NonNegativeFloat = Annotated[float, Field(ge=0.0)]
PositiveFloat = Annotated[float, Field(gt=0.0)]


class RetrySettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: PositiveInt = 4
    base_delay_seconds: NonNegativeFloat = 1.0
    max_delay_seconds: NonNegativeFloat = 5.0

    @model_validator(mode="after")
    def _max_must_cover_base(self) -> "RetrySettings":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
        )


class LinkingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    secret_env: str = "X_LINKING_SECRET"
    proof_ttl_days: NonNegativeInt = 0  # 0 issues proofs without expiry

    @field_validator("secret_env")
    @classmethod
    def _secret_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)


class GitHubConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    token_env: str = "GITHUB_TOKEN"
    api_base_url: str = "https://api.github.com"
    user_agent: str = "x-ingest-profile-scanner"
    concurrency: PositiveInt = 10
    batch_pause_seconds: NonNegativeFloat = 0.2
    request_timeout_seconds: PositiveFloat = 30.0
    rate_limit_warn_below: NonNegativeInt = 10
    retry: RetrySettings = Field(default_factory=RetrySettings)

    @field_validator("token_env")
    @classmethod
    def _token_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)


class XApiConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    api_key_env: str = "TWITTER_API_IO_KEY"
    base_url: str = "https://api.twitterapi.io"
    request_timeout_seconds: PositiveFloat = 60.0
    tracked_handle: str = DEFAULT_TRACKED_HANDLE
    tracked_hashtag: str = DEFAULT_TRACKED_HASHTAG
    exclude_replies: bool = False
    max_pages: PositiveInt = 5
    page_delay_seconds: NonNegativeFloat = 1.0
    retry: RetrySettings = Field(
        default_factory=lambda: RetrySettings(
            max_attempts=3, base_delay_seconds=2.0, max_delay_seconds=20.0
        )
    )

    @field_validator("api_key_env")
    @classmethod
    def _api_key_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)

    @field_validator("tracked_handle")
    @classmethod
    def _strip_at(cls, v: str) -> str:
        return _normalize_handle(v, prefix="@")

    @field_validator("tracked_hashtag")
    @classmethod
    def _strip_hash(cls, v: str) -> str:
        return _normalize_handle(v, prefix="#").casefold()


class PostPoints(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    base: NonNegativeFloat = 5.0
    mentions_tracked_handle: PositiveFloat = 1.5
    uses_tracked_hashtag: PositiveFloat = 1.1
    has_media: PositiveFloat = 1.2


class BasePoints(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    base: NonNegativeFloat


class DailyLimits(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_posts_per_day: PositiveInt = 15
    diminishing_returns_threshold: NonNegativeInt = 3
    diminishing_returns_penalty: float = Field(0.7, gt=0.0, lt=1.0)
    max_points_per_day: NonNegativeFloat = 25.0


class ScoringConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    post: PostPoints = Field(default_factory=PostPoints)
    quote: BasePoints = Field(default_factory=lambda: BasePoints(base=4.0))
    reply: BasePoints = Field(default_factory=lambda: BasePoints(base=2.0))
    repost: BasePoints = Field(default_factory=lambda: BasePoints(base=1.0))
    daily: DailyLimits = Field(default_factory=DailyLimits)


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    linking: LinkingConfig = Field(default_factory=LinkingConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    x_api: XApiConfig = Field(default_factory=XApiConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
