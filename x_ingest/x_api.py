from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from .errors import UpstreamError, UpstreamTimeout

DEFAULT_BASE_URL = "https://api.twitterapi.io"
SEARCH_PATH = "/twitter/tweet/advanced_search"


@dataclass(frozen=True)
class SearchPage:
    posts: list[dict[str, Any]]
    next_cursor: str | None
    has_more: bool


def build_mention_query(handle: str, *, exclude_replies: bool = False) -> str:
    """
    Build the single global query: mentions of the tracked handle OR posts from it,
    including native reposts.
    """
    h = (handle or "").strip().lstrip("@")
    if not h:
        raise ValueError("tracked handle must be non-empty")

    parts = [f"(@{h} OR from:{h})", "include:nativeretweets"]
    if exclude_replies:
        parts.append("-filter:replies")
    return " ".join(parts)


def error_message_from_body(response: httpx.Response) -> str:
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        return (response.text or "").strip()[:500]

    if isinstance(body, Mapping):
        for key in ("error", "message", "msg"):
            val = body.get(key)
            if isinstance(val, str) and val.strip():
                return val.strip()
    return json.dumps(body, ensure_ascii=False, default=str)[:500]


def _page_from_body(body: Any) -> SearchPage:
    payload = body if isinstance(body, Mapping) else {}
    data = payload.get("data")
    if isinstance(data, Mapping):
        payload = data

    tweets = payload.get("tweets")
    posts = [t for t in tweets if isinstance(t, dict)] if isinstance(tweets, list) else []

    cursor = payload.get("next_cursor")
    next_cursor = cursor.strip() if isinstance(cursor, str) and cursor.strip() else None

    has_more = bool(payload.get("has_next_page")) and next_cursor is not None
    return SearchPage(posts=posts, next_cursor=next_cursor, has_more=has_more)


class XSearchClient:
    """
    Thin async wrapper around the twitterapi.io advanced search endpoint.

    One call per page; pagination and retries belong to the caller.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = float(timeout_seconds)
        self._headers = {
            "x-api-key": api_key,
            "Accept": "application/json",
        }
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "XSearchClient":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def search(self, query: str, cursor: str | None = None) -> SearchPage:
        q = (query or "").strip()
        if not q:
            raise ValueError("query must be non-empty")

        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)

        url = f"{self._base_url}{SEARCH_PATH}"
        params = {"query": q, "queryType": "Latest", "cursor": cursor or ""}

        try:
            response = await self._client.get(
                url,
                params=params,
                headers=self._headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(self._timeout, url=url) from e

        if not response.is_success:
            raise UpstreamError(
                response.status_code,
                error_message_from_body(response),
                url=url,
            )

        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise UpstreamError(response.status_code, f"invalid JSON body: {e}", url=url) from e

        return _page_from_body(body)
