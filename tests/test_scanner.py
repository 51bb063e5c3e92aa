from __future__ import annotations

import asyncio
import unittest

from x_ingest.linking import LinkingData, upsert_linking_section
from x_ingest.proof import ProofVerifier, sign_linking_proof
from x_ingest.scanner import (
    LinkedAccountRecord,
    ProfileScanner,
    ScanProgress,
    build_id_index,
    duplicate_platform_ids,
)

_SECRET = "scanner-test-secret-0123456789abcdef"


def _linked_readme(github_user: str, x_user_id: str, x_username: str, *, secret: str = _SECRET) -> str:
    token = sign_linking_proof(github_user, x_user_id, x_username, secret)
    data = LinkingData.for_account(
        x_username=x_username,
        x_user_id=x_user_id,
        linking_proof=token,
        linked_at="2024-05-01T10:00:00.000Z",
        last_updated="2024-05-02T10:00:00.000Z",
    )
    return upsert_linking_section(f"# {github_user}\n", data)


class _FakeSource:
    def __init__(self, readmes: dict[str, str | None], failing: set[str] | None = None) -> None:
        self._readmes = readmes
        self._failing = failing or set()
        self.calls: list[str] = []

    async def fetch_profile_readme(self, identity: str) -> str | None:
        self.calls.append(identity)
        if identity in self._failing:
            raise RuntimeError(f"upstream exploded for {identity}")
        return self._readmes.get(identity)


class _RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _scanner(source: _FakeSource, *, concurrency: int = 2, sleep: _RecordingSleep | None = None) -> ProfileScanner:
    return ProfileScanner(
        source,
        ProofVerifier(_SECRET),
        concurrency=concurrency,
        batch_pause_seconds=0.2,
        sleep_fn=sleep or _RecordingSleep(),
        clock=lambda: "2024-06-01T00:00:00+00:00",
    )


class TestScanProfile(unittest.TestCase):
    def test_valid_claim_yields_record(self) -> None:
        source = _FakeSource({"alice": _linked_readme("alice", "123", "alice_x")})
        record = asyncio.run(_scanner(source).scan_profile("alice"))

        assert record is not None
        self.assertEqual(record.owner_identity, "alice")
        self.assertEqual(record.platform, "x")
        self.assertEqual(record.platform_user_id, "123")
        self.assertEqual(record.platform_handle, "alice_x")
        self.assertEqual(record.linked_at, "2024-05-01T10:00:00.000Z")
        self.assertEqual(record.last_updated, "2024-05-02T10:00:00.000Z")
        self.assertEqual(record.last_observed_at, "2024-06-01T00:00:00+00:00")
        self.assertTrue(record.proof_token)

    def test_missing_profile_or_section_is_absent(self) -> None:
        source = _FakeSource({"bob": "# Bob\n\nNo claims here."})
        scanner = _scanner(source)

        self.assertIsNone(asyncio.run(scanner.scan_profile("bob")))
        self.assertIsNone(asyncio.run(scanner.scan_profile("nobody")))

    def test_malformed_section_is_absent(self) -> None:
        readme = "<!-- X-LINKING-BEGIN\n{oops\nX-LINKING-END -->"
        source = _FakeSource({"carol": readme})
        self.assertIsNone(asyncio.run(_scanner(source).scan_profile("carol")))

    def test_claim_copied_from_another_profile_is_rejected(self) -> None:
        source = _FakeSource({"mallory": _linked_readme("alice", "123", "alice_x")})
        self.assertIsNone(asyncio.run(_scanner(source).scan_profile("mallory")))

    def test_claim_signed_with_other_secret_is_rejected(self) -> None:
        readme = _linked_readme("alice", "123", "alice_x", secret="another-secret-0123456789abcdef01")
        source = _FakeSource({"alice": readme})
        self.assertIsNone(asyncio.run(_scanner(source).scan_profile("alice")))


class TestScan(unittest.TestCase):
    def test_isolates_failures(self) -> None:
        source = _FakeSource(
            {
                "alice": _linked_readme("alice", "1", "alice_x"),
                "bob": _linked_readme("bob", "2", "bob_x"),
                "dave": _linked_readme("dave", "4", "dave_x"),
            },
            failing={"carol"},
        )
        result = asyncio.run(_scanner(source).scan(["alice", "bob", "carol", "dave"]))

        self.assertEqual([r.owner_identity for r in result.linked], ["alice", "bob", "dave"])
        self.assertEqual(result.scanned, 4)
        self.assertEqual(result.failed, 1)
        self.assertEqual(result.errors[0].identity, "carol")
        self.assertIn("exploded", result.errors[0].error)

    def test_batches_pause_between_but_not_after(self) -> None:
        sleep = _RecordingSleep()
        source = _FakeSource({})
        asyncio.run(_scanner(source, concurrency=2, sleep=sleep).scan(["a", "b", "c", "d", "e"]))

        self.assertEqual(sorted(source.calls), ["a", "b", "c", "d", "e"])
        self.assertEqual(sleep.calls, [0.2, 0.2])

    def test_duplicate_identities_are_scanned_once(self) -> None:
        source = _FakeSource({})
        result = asyncio.run(_scanner(source).scan(["alice", "Alice", " alice ", "bob"]))

        self.assertEqual(source.calls, ["alice", "bob"])
        self.assertEqual(result.scanned, 2)

    def test_progress_events_are_ordered(self) -> None:
        source = _FakeSource({"b": _linked_readme("b", "2", "b_x")})
        events: list[ScanProgress] = []

        asyncio.run(_scanner(source, concurrency=2).scan(["a", "b", "c"], on_progress=events.append))

        self.assertEqual([e.processed for e in events], [1, 2, 3])
        self.assertTrue(all(e.total == 3 for e in events))
        self.assertEqual([e.identity for e in events], ["a", "b", "c"])
        self.assertIsNotNone(events[1].record)

    def test_iter_scan_yields_progress(self) -> None:
        source = _FakeSource({"a": _linked_readme("a", "1", "a_x")})

        async def _collect() -> list[ScanProgress]:
            return [event async for event in _scanner(source).iter_scan(["a", "b"])]

        events = asyncio.run(_collect())
        self.assertEqual(len(events), 2)
        self.assertEqual(events[0].record.platform_user_id if events[0].record else None, "1")
        self.assertIsNone(events[1].record)

    def test_empty_input(self) -> None:
        result = asyncio.run(_scanner(_FakeSource({})).scan([]))
        self.assertEqual(result.linked, [])
        self.assertEqual(result.scanned, 0)

    def test_rejects_invalid_concurrency(self) -> None:
        with self.assertRaises(ValueError):
            ProfileScanner(_FakeSource({}), ProofVerifier(_SECRET), concurrency=0)


class TestIdIndex(unittest.TestCase):
    def _record(self, owner: str, pid: str) -> LinkedAccountRecord:
        return LinkedAccountRecord(
            owner_identity=owner,
            platform_user_id=pid,
            platform_handle=f"{owner}_x",
            linked_at="2024-05-01T10:00:00Z",
            proof_token="t",
            last_updated="2024-05-01T10:00:00Z",
            last_observed_at="2024-05-01T10:00:00Z",
        )

    def test_last_write_wins_and_duplicates_reported(self) -> None:
        linked = [self._record("alice", "1"), self._record("bob", "2"), self._record("eve", "1")]

        self.assertEqual(build_id_index(linked), {"1": "eve", "2": "bob"})
        self.assertEqual(duplicate_platform_ids(linked), {"1": ["alice", "eve"]})


if __name__ == "__main__":
    unittest.main()
