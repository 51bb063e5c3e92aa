from __future__ import annotations

from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .errors import ConfigError, IngestionError
from .ingest import IngestionResult, run_ingestion
from .linking import LinkingData, parse_linking_data, upsert_linking_section
from .scoring import ScoreResult, score_activities

__all__ = [
    "AppConfig",
    "ConfigError",
    "IngestionError",
    "IngestionResult",
    "LinkingData",
    "ScoreResult",
    "config_sha256",
    "load_config",
    "parse_linking_data",
    "resolve_runtime_secrets",
    "run_ingestion",
    "score_activities",
    "upsert_linking_section",
]
