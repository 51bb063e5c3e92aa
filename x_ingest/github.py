from __future__ import annotations

import base64
import binascii
from typing import Any
from urllib.parse import quote

import httpx

from .errors import UpstreamError, UpstreamTimeout
from .retry import OnRetryFn, RetryConfig, RetryEvent, SleepFn, call_with_retries
from .run_log import RunLogger
from .upstream_retry import is_retryable_profile_error
from .x_api import error_message_from_body

DEFAULT_API_BASE_URL = "https://api.github.com"

_NOT_FOUND = object()


def _decode_readme(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    content = payload.get("content")
    if not isinstance(content, str) or payload.get("encoding") != "base64":
        return None
    try:
        return base64.b64decode(content).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return None


class GitHubProfileSource:
    """
    Fetches `{user}/{user}/README.md`, the profile README, from the GitHub REST API.

    A 404 means "no profile README" and returns None without consuming a retry.
    """

    def __init__(
        self,
        *,
        token: str | None = None,
        api_base_url: str = DEFAULT_API_BASE_URL,
        user_agent: str = "x-ingest-profile-scanner",
        timeout_seconds: float = 30.0,
        retry: RetryConfig | None = None,
        rate_limit_warn_below: int = 10,
        client: httpx.AsyncClient | None = None,
        logger: RunLogger | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        self._base_url = (api_base_url or DEFAULT_API_BASE_URL).rstrip("/")
        self._timeout = float(timeout_seconds)
        self._retry = retry or RetryConfig()
        self._warn_below = int(rate_limit_warn_below)
        self._logger = logger
        self._on_retry = on_retry
        self._sleep_fn = sleep_fn

        self._headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": user_agent,
        }
        tok = (token or "").strip()
        if tok:
            self._headers["Authorization"] = f"Bearer {tok}"

        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "GitHubProfileSource":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def readme_url(self, identity: str) -> str:
        user = quote((identity or "").strip(), safe="")
        return f"{self._base_url}/repos/{user}/{user}/contents/README.md"

    async def fetch_profile_readme(self, identity: str) -> str | None:
        if not (identity or "").strip():
            raise ValueError("identity must be non-empty")

        client = self._ensure_client()
        url = self.readme_url(identity)

        async def _do_get() -> Any:
            return await self._get_once(client, url, identity)

        result = await call_with_retries(
            _do_get,
            cfg=self._retry,
            is_retryable=is_retryable_profile_error,
            operation=f"github.readme:{identity}",
            on_retry=self._on_retry or self._log_retry,
            sleep_fn=self._sleep_fn,
        )
        if result is _NOT_FOUND:
            return None
        return _decode_readme(result)

    async def _get_once(self, client: httpx.AsyncClient, url: str, identity: str) -> Any:
        try:
            response = await client.get(url, headers=self._headers, timeout=self._timeout)
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(self._timeout, url=url) from e

        if response.status_code == 404:
            return _NOT_FOUND

        self._check_rate_limit(response, identity)

        if not response.is_success:
            raise UpstreamError(response.status_code, error_message_from_body(response), url=url)

        try:
            return response.json()
        except ValueError:
            return None

    def _check_rate_limit(self, response: httpx.Response, identity: str) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is None or self._logger is None:
            return
        try:
            left = int(remaining)
        except ValueError:
            return
        if left < self._warn_below:
            self._logger.warning("github_rate_limit_low", subject=identity, remaining=left)

    def _log_retry(self, event: RetryEvent) -> None:
        if self._logger is None:
            return
        self._logger.debug(
            "github_fetch_retry",
            operation=event.operation,
            attempt=event.failure_attempt,
            next_attempt=event.next_attempt,
            delay_seconds=event.delay_seconds,
            reason=event.reason,
            error=event.error_message,
        )
