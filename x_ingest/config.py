from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import yaml
from pydantic import ValidationError

from .config_schema import AppConfig
from .errors import ConfigError


@dataclass(frozen=True)
class RuntimeSecrets:
    linking_secret: str
    x_api_key: str
    github_token: str | None = None


def load_config(path: str | Path) -> AppConfig:
    """
    Load a YAML config file and validate it into a typed AppConfig.

    Raises ConfigError with a readable validation message on failure.
    """
    p = Path(path)

    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")

    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {p}") from e

    try:
        data = yaml.safe_load(raw_text)
    except Exception as e:  # PyYAML can raise multiple exception types
        raise ConfigError(f"Failed to parse YAML in {p}: {e}") from e

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML in {p} must be a mapping/object")

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_pydantic_errors(e, p)) from e


def resolve_runtime_secrets(
    config: AppConfig,
    *,
    environ: Mapping[str, str] | None = None,
    require_x_api_key: bool = True,
) -> RuntimeSecrets:
    """
    Resolve secrets once at startup.

    The linking secret is always required; the X API key is required for ingestion;
    the GitHub token is optional and only raises the upstream rate limit.
    """
    env = os.environ if environ is None else environ

    secret_env = config.linking.secret_env
    x_key_env = config.x_api.api_key_env

    missing: list[str] = []
    if not (env.get(secret_env) or "").strip():
        missing.append(secret_env)
    if require_x_api_key and not (env.get(x_key_env) or "").strip():
        missing.append(x_key_env)

    if missing:
        joined = ", ".join(missing)
        raise ConfigError(f"Missing required environment variables: {joined}")

    github_token = (env.get(config.github.token_env) or "").strip() or None

    return RuntimeSecrets(
        linking_secret=env[secret_env].strip(),
        x_api_key=(env.get(x_key_env) or "").strip(),
        github_token=github_token,
    )


def config_sha256(config: AppConfig) -> str:
    """
    Compute a stable SHA-256 hash of the config values, recorded with each run.
    """
    payload = json.dumps(
        config.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _format_pydantic_errors(err: ValidationError, path: Path) -> str:
    lines: list[str] = [f"Invalid configuration in {path}:"]
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", [])) or "<root>"
        msg = item.get("msg", "invalid value")
        lines.append(f"- {loc}: {msg}")
    return "\n".join(lines)
