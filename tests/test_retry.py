from __future__ import annotations

import asyncio
import unittest

import httpx

from x_ingest.errors import UpstreamError, UpstreamTimeout
from x_ingest.retry import RetryConfig, RetryEvent, call_with_retries, compute_backoff_seconds
from x_ingest.upstream_retry import is_retryable_profile_error, is_retryable_search_error


class _Flaky:
    def __init__(self, failures: list[BaseException], result: str = "ok") -> None:
        self._failures = list(failures)
        self._result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
        return self._result


class TestBackoff(unittest.TestCase):
    def test_exponential_and_clamped(self) -> None:
        cfg = RetryConfig(max_attempts=5, base_delay_seconds=1.0, max_delay_seconds=5.0)
        delays = [compute_backoff_seconds(n, cfg) for n in range(1, 5)]
        self.assertEqual(delays, [1.0, 2.0, 4.0, 5.0])

    def test_rejects_invalid_config(self) -> None:
        with self.assertRaises(ValueError):
            RetryConfig(max_attempts=0)
        with self.assertRaises(ValueError):
            RetryConfig(base_delay_seconds=3.0, max_delay_seconds=1.0)
        with self.assertRaises(ValueError):
            RetryConfig(jitter_ratio=1.5)


class TestCallWithRetries(unittest.TestCase):
    def test_retries_transient_errors_then_succeeds(self) -> None:
        fn = _Flaky([UpstreamError(500), UpstreamError(502)])
        slept: list[float] = []
        events: list[RetryEvent] = []

        async def _sleep(seconds: float) -> None:
            slept.append(seconds)

        result = asyncio.run(
            call_with_retries(
                fn,
                cfg=RetryConfig(max_attempts=4, base_delay_seconds=1.0, max_delay_seconds=5.0),
                is_retryable=is_retryable_search_error,
                operation="test",
                on_retry=events.append,
                sleep_fn=_sleep,
            )
        )

        self.assertEqual(result, "ok")
        self.assertEqual(fn.calls, 3)
        self.assertEqual(slept, [1.0, 2.0])
        self.assertEqual([e.reason for e in events], ["http_500", "http_502"])
        self.assertEqual(events[0].next_attempt, 2)

    def test_gives_up_after_max_attempts(self) -> None:
        fn = _Flaky([UpstreamError(503)] * 10)

        async def _sleep(seconds: float) -> None:
            return None

        with self.assertRaises(UpstreamError):
            asyncio.run(
                call_with_retries(
                    fn,
                    cfg=RetryConfig(max_attempts=4),
                    is_retryable=is_retryable_search_error,
                    operation="test",
                    sleep_fn=_sleep,
                )
            )
        self.assertEqual(fn.calls, 4)

    def test_non_retryable_error_raises_immediately(self) -> None:
        fn = _Flaky([UpstreamError(400, "bad query")])

        async def _sleep(seconds: float) -> None:
            raise AssertionError("must not sleep")

        with self.assertRaises(UpstreamError) as ctx:
            asyncio.run(
                call_with_retries(
                    fn,
                    cfg=RetryConfig(max_attempts=4),
                    is_retryable=is_retryable_search_error,
                    operation="test",
                    sleep_fn=_sleep,
                )
            )
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(fn.calls, 1)


class TestRetryPolicies(unittest.TestCase):
    def test_search_policy(self) -> None:
        self.assertTrue(is_retryable_search_error(UpstreamError(429))[0])
        self.assertTrue(is_retryable_search_error(UpstreamError(500))[0])
        self.assertTrue(is_retryable_search_error(httpx.ConnectError("refused"))[0])
        self.assertFalse(is_retryable_search_error(UpstreamError(401))[0])
        self.assertFalse(is_retryable_search_error(UpstreamTimeout(60))[0])
        self.assertFalse(is_retryable_search_error(ValueError("x"))[0])

    def test_profile_policy(self) -> None:
        self.assertTrue(is_retryable_profile_error(UpstreamError(403))[0])
        self.assertTrue(is_retryable_profile_error(UpstreamError(500))[0])
        self.assertTrue(is_retryable_profile_error(UpstreamTimeout(30))[0])
        self.assertTrue(is_retryable_profile_error(httpx.ReadError("reset"))[0])
        self.assertFalse(is_retryable_profile_error(KeyError("x"))[0])


if __name__ == "__main__":
    unittest.main()
