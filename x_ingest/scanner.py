from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Iterator, Protocol, Sequence

from .linking import MalformedLinkingData, parse_linking_data
from .proof import ProofVerifier
from .retry import SleepFn
from .run_log import RunLogger

PLATFORM_X = "x"


class ProfileTextSource(Protocol):
    async def fetch_profile_readme(self, identity: str) -> str | None: ...


@dataclass(frozen=True)
class LinkedAccountRecord:
    owner_identity: str
    platform_user_id: str
    platform_handle: str
    linked_at: str
    proof_token: str
    last_updated: str
    last_observed_at: str
    platform: str = PLATFORM_X


@dataclass(frozen=True)
class ScanError:
    identity: str
    error: str


@dataclass(frozen=True)
class ScanProgress:
    processed: int
    total: int
    identity: str
    record: LinkedAccountRecord | None = None
    error: ScanError | None = None


@dataclass
class ScanResult:
    linked: list[LinkedAccountRecord] = field(default_factory=list)
    scanned: int = 0
    failed: int = 0
    errors: list[ScanError] = field(default_factory=list)


OnProgressFn = Callable[[ScanProgress], None]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _chunked(values: Sequence[str], size: int) -> Iterator[list[str]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")

    batch: list[str] = []
    for item in values:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def _normalize_identities(identities: Sequence[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for raw in identities:
        ident = (raw or "").strip()
        if not ident:
            continue
        key = ident.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(ident)
    return out


class ProfileScanner:
    """
    Discovers linked X accounts by reading and verifying profile README claims.

    Identities are processed in fixed-size batches; fetches inside a batch run concurrently
    and a fixed pause separates batches.
    """

    def __init__(
        self,
        source: ProfileTextSource,
        verifier: ProofVerifier,
        *,
        concurrency: int = 5,
        batch_pause_seconds: float = 0.2,
        logger: RunLogger | None = None,
        sleep_fn: SleepFn | None = None,
        clock: Callable[[], str] | None = None,
    ) -> None:
        if int(concurrency) < 1:
            raise ValueError("concurrency must be >= 1")
        if batch_pause_seconds < 0:
            raise ValueError("batch_pause_seconds must be >= 0")

        self._source = source
        self._verifier = verifier
        self._concurrency = int(concurrency)
        self._pause = float(batch_pause_seconds)
        self._logger = logger
        self._sleep = sleep_fn or asyncio.sleep
        self._clock = clock or _utc_now_iso

    async def scan_profile(self, identity: str) -> LinkedAccountRecord | None:
        readme = await self._source.fetch_profile_readme(identity)
        if not readme:
            return None

        try:
            data = parse_linking_data(readme)
        except MalformedLinkingData as e:
            if self._logger is not None:
                self._logger.warning("linking_data_malformed", subject=identity, reason=str(e))
            return None

        if data is None:
            return None

        account = data.x_account
        if not self._verifier.verify(
            identity,
            account.x_user_id,
            account.x_username,
            account.linking_proof,
        ):
            if self._logger is not None:
                self._logger.warning(
                    "linking_proof_invalid",
                    subject=identity,
                    x_username=account.x_username,
                )
            return None

        return LinkedAccountRecord(
            owner_identity=identity,
            platform_user_id=account.x_user_id,
            platform_handle=account.x_username,
            linked_at=account.linked_at,
            proof_token=account.linking_proof,
            last_updated=data.last_updated,
            last_observed_at=self._clock(),
        )

    async def iter_scan(self, identities: Sequence[str]) -> AsyncIterator[ScanProgress]:
        """
        Yield one ScanProgress per identity, in input order within each batch.

        Closing the iterator early cancels the remaining batches.
        """
        targets = _normalize_identities(identities)
        total = len(targets)
        processed = 0

        if self._logger is not None:
            self._logger.info("profile_scan_started", total=total, concurrency=self._concurrency)

        batches = list(_chunked(targets, self._concurrency))
        for index, batch in enumerate(batches):
            results = await asyncio.gather(
                *(self.scan_profile(identity) for identity in batch),
                return_exceptions=True,
            )

            for identity, outcome in zip(batch, results):
                processed += 1
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    message = str(outcome) or type(outcome).__name__
                    if self._logger is not None:
                        self._logger.error(
                            "profile_scan_failed",
                            subject=identity,
                            error_type=type(outcome).__name__,
                            error=message,
                        )
                    yield ScanProgress(
                        processed=processed,
                        total=total,
                        identity=identity,
                        error=ScanError(identity=identity, error=message),
                    )
                    continue

                if outcome is not None and self._logger is not None:
                    self._logger.debug(
                        "linked_account_found",
                        subject=identity,
                        x_username=outcome.platform_handle,
                    )
                yield ScanProgress(
                    processed=processed,
                    total=total,
                    identity=identity,
                    record=outcome,
                )

            if index + 1 < len(batches) and self._pause > 0:
                await self._sleep(self._pause)

    async def scan(
        self,
        identities: Sequence[str],
        *,
        on_progress: OnProgressFn | None = None,
    ) -> ScanResult:
        result = ScanResult()

        async for event in self.iter_scan(identities):
            result.scanned = event.processed
            if event.error is not None:
                result.failed += 1
                result.errors.append(event.error)
            elif event.record is not None:
                result.linked.append(event.record)

            if on_progress is not None:
                on_progress(event)

        if self._logger is not None:
            self._logger.info(
                "profile_scan_completed",
                linked=len(result.linked),
                scanned=result.scanned,
                failed=result.failed,
            )
        return result


def build_id_index(linked: Sequence[LinkedAccountRecord]) -> dict[str, str]:
    """Map platform user id -> owner identity; the last record wins on duplicates."""
    index: dict[str, str] = {}
    for record in linked:
        index[record.platform_user_id] = record.owner_identity
    return index


def duplicate_platform_ids(linked: Sequence[LinkedAccountRecord]) -> dict[str, list[str]]:
    owners: defaultdict[str, list[str]] = defaultdict(list)
    for record in linked:
        owners[record.platform_user_id].append(record.owner_identity)
    return {pid: names for pid, names in owners.items() if len(names) > 1}
