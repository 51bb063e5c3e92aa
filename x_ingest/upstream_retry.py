from __future__ import annotations

import httpx

from .errors import UpstreamError, UpstreamTimeout


def is_retryable_profile_error(exc: BaseException) -> tuple[bool, str | None]:
    """
    Profile fetch policy: every non-2xx answer that reaches us is transient (404 is
    turned into "no profile" before it gets here), as are timeouts and transport errors.
    """
    if isinstance(exc, UpstreamError):
        return True, f"http_{exc.status_code}"
    if isinstance(exc, UpstreamTimeout):
        return True, "timeout"
    if isinstance(exc, httpx.TransportError):
        return True, "network_error"
    return False, None


def is_retryable_search_error(exc: BaseException) -> tuple[bool, str | None]:
    """
    Search policy:
    - HTTP 429 and 500+
    - network/connection errors
    Timeouts surface to the caller unchanged.
    """
    if isinstance(exc, UpstreamError):
        code = exc.status_code
        if code == 429 or code >= 500:
            return True, f"http_{code}"
        return False, f"http_{code}"
    if isinstance(exc, UpstreamTimeout):
        return False, "timeout"
    if isinstance(exc, httpx.TransportError):
        return True, "network_error"
    return False, None
