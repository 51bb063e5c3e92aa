from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt

from .errors import ConfigError

PROOF_ALGORITHM = "HS256"

_SUBJECT_CLAIMS = ("githubUsername", "xUserId", "xUsername")


def sign_linking_proof(
    github_username: str,
    x_user_id: str,
    x_username: str,
    secret: str,
    *,
    issued_at: datetime | None = None,
    ttl: timedelta | None = None,
) -> str:
    """Issue a signed proof binding a code-hosting identity to an X account."""
    if not (secret or "").strip():
        raise ConfigError("A linking secret is required to sign proofs")

    iat = issued_at or datetime.now(timezone.utc)
    payload: dict[str, object] = {
        "githubUsername": github_username,
        "xUserId": x_user_id,
        "xUsername": x_username,
        "iat": iat,
    }
    if ttl is not None:
        payload["exp"] = iat + ttl

    return jwt.encode(payload, secret, algorithm=PROOF_ALGORITHM)


def verify_linking_proof(
    github_username: str,
    x_user_id: str,
    x_username: str,
    token: str,
    secret: str,
) -> bool:
    """
    Check the proof signature and that its subject claims match the supplied triple exactly.

    Every verification failure (bad signature, expiry, malformed token, mismatch) returns False.
    """
    if not (token or "").strip():
        return False

    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[PROOF_ALGORITHM],
            options={"require": list(_SUBJECT_CLAIMS)},
        )
    except jwt.PyJWTError:
        return False

    expected = {
        "githubUsername": github_username,
        "xUserId": x_user_id,
        "xUsername": x_username,
    }
    return all(claims.get(name) == value for name, value in expected.items())


class ProofVerifier:
    """Verifies linking proofs against the secret resolved at startup."""

    def __init__(self, secret: str) -> None:
        value = (secret or "").strip()
        if not value:
            raise ConfigError("No linking secret configured")
        self._secret = value

    def verify(
        self,
        github_username: str,
        x_user_id: str,
        x_username: str,
        token: str,
        *,
        secret: str | None = None,
    ) -> bool:
        return verify_linking_proof(
            github_username,
            x_user_id,
            x_username,
            token,
            (secret or "").strip() or self._secret,
        )
