from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration or a required secret is missing or invalid."""


class UpstreamError(RuntimeError):
    """Raised when an upstream HTTP API answers with a non-2xx status."""

    def __init__(self, status_code: int, message: str = "", *, url: str | None = None) -> None:
        self.status_code = int(status_code)
        self.message = (message or "").strip()
        self.url = url
        detail = f": {self.message}" if self.message else ""
        super().__init__(f"upstream error ({self.status_code}){detail}")


class UpstreamTimeout(RuntimeError):
    """Raised when a single upstream request exceeds its timeout."""

    def __init__(self, timeout_seconds: float, *, url: str | None = None) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self.url = url
        super().__init__(f"upstream request timed out after {self.timeout_seconds:g}s")


class StorageError(RuntimeError):
    """Raised when reading or writing state in SQLite fails."""


class IngestionError(RuntimeError):
    """Raised when an ingestion run aborts; carries the stage that failed."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"ingestion failed during {stage}: {type(cause).__name__}: {cause}")
