"""Token and submission-key helpers."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone

TOKEN_BYTES = 24
TOKEN_TTL_SECONDS = 30 * 60


def generate_token() -> str:
    """Generate a URL-safe session token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def derive_submission_key(session_key: str, at: float) -> str:
    """Key a final report by meeting and UTC day so a retried report is accepted once."""
    day = datetime.fromtimestamp(at, tz=timezone.utc).date().isoformat()
    return f"{session_key.strip().lower()}:{day}"


def is_expired(expires_at: float | None, now: float) -> bool:
    return expires_at is None or now >= expires_at
