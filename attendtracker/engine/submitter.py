"""HTTP delivery of progress and final attendance reports."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

PROGRESS_ENDPOINT = "/api/attendance/progress"
FINAL_ENDPOINT = "/api/attendance"
REQUEST_TIMEOUT_SECONDS = 30.0

# Ordered: the first fragment found in the error message decides the type.
_AUTH_ERROR_RULES: tuple[tuple[tuple[str, ...], str, str], ...] = (
    (
        ("subject_id does not match",),
        "token_mismatch_subject",
        "Token was generated for a different subject. Rejoin the meeting through the dashboard.",
    ),
    (
        ("meeting_id does not match",),
        "token_mismatch_meeting",
        "Token was generated for a different meeting. Rejoin the meeting through the dashboard.",
    ),
    (
        ("student_id does not match",),
        "token_mismatch_student",
        "Token was generated for a different student. Rejoin the meeting through the dashboard.",
    ),
    (
        ("jwt verification failed",),
        "jwt_verification_failed",
        "Token verification failed. Generate a new token from the dashboard.",
    ),
    (
        ("token validation failed",),
        "token_validation_failed",
        "Token validation failed. Generate a new token from the dashboard.",
    ),
    (
        ("already been used", "has been used", "already used"),
        "token_consumed",
        "Token was already used. Generate a new token from the dashboard.",
    ),
    (("expired",), "token_expired", "Token has expired. Generate a new token from the dashboard."),
    (
        ("invalid", "not found"),
        "token_invalid",
        "Token is invalid or not found. Join the meeting through the dashboard to get a valid token.",
    ),
)


def classify_auth_error(message: str | None) -> tuple[str, str]:
    """Map a 401 response message to (error_type, user_message)."""
    lowered = (message or "").lower()
    for fragments, error_type, user_message in _AUTH_ERROR_RULES:
        if any(fragment in lowered for fragment in fragments):
            return error_type, user_message
    return "unauthorized", "Authentication failed. Rejoin the meeting through the dashboard."


def mark_unauthenticated(payload: dict[str, Any]) -> dict[str, Any]:
    """Submissions without a token go through flagged instead of being blocked."""
    prepared = dict(payload)
    if not prepared.get("verificationToken"):
        prepared["verificationToken"] = None
        prepared["isUnauthenticated"] = True
    else:
        prepared.setdefault("isUnauthenticated", False)
    return prepared


@dataclass(frozen=True)
class SubmissionOutcome:
    ok: bool
    status: int
    data: dict[str, Any] | None = None
    error_type: str | None = None
    user_message: str | None = None
    fallback_used: bool = False

    @property
    def is_auth_failure(self) -> bool:
        return self.status == 401


class ReportSubmitter:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def post(self, endpoint: str, payload: dict[str, Any]) -> SubmissionOutcome:
        try:
            response = await self.client.post(endpoint, json=payload, timeout=REQUEST_TIMEOUT_SECONDS)
        except httpx.TransportError as exc:
            logger.warning("[submitter] network error posting to %s: %s", endpoint, exc)
            return SubmissionOutcome(ok=False, status=0, error_type="network", user_message=str(exc))
        except httpx.HTTPError as exc:
            # Body decoding, redirect loops and similar protocol-level failures.
            logger.warning("[submitter] %s failed posting to %s: %s", type(exc).__name__, endpoint, exc)
            return SubmissionOutcome(ok=False, status=0, error_type="protocol", user_message=str(exc))

        data = _json_body(response)
        if response.is_success:
            return SubmissionOutcome(ok=True, status=response.status_code, data=data)

        message = str(data.get("message") or data.get("error") or "") if data else response.text
        if response.status_code == 401:
            error_type, user_message = classify_auth_error(message)
            logger.error("[submitter] %s rejected with 401 (%s): %s", endpoint, error_type, message)
            return SubmissionOutcome(
                ok=False,
                status=401,
                data=data,
                error_type=error_type,
                user_message=user_message,
            )

        error_type = "server" if response.status_code >= 500 else "client"
        logger.warning("[submitter] %s failed with %d: %s", endpoint, response.status_code, message)
        return SubmissionOutcome(ok=False, status=response.status_code, data=data, error_type=error_type)

    async def submit_progress(self, payload: dict[str, Any]) -> SubmissionOutcome:
        return await self.post(PROGRESS_ENDPOINT, mark_unauthenticated(payload))

    async def submit_final(self, payload: dict[str, Any]) -> SubmissionOutcome:
        prepared = mark_unauthenticated(payload)
        outcome = await self.post(FINAL_ENDPOINT, prepared)
        if not outcome.is_auth_failure or prepared.get("isUnauthenticated"):
            return outcome

        logger.warning("[submitter] retrying final report without token after %s", outcome.error_type)
        fallback = dict(prepared)
        fallback["verificationToken"] = None
        fallback["isUnauthenticated"] = True
        retried = await self.post(FINAL_ENDPOINT, fallback)
        return SubmissionOutcome(
            ok=retried.ok,
            status=retried.status,
            data=retried.data,
            error_type=outcome.error_type,
            user_message=outcome.user_message,
            fallback_used=True,
        )

    async def deliver(self, endpoint: str, payload: dict[str, Any]) -> bool:
        if endpoint == FINAL_ENDPOINT:
            outcome = await self.submit_final(payload)
        else:
            outcome = await self.post(endpoint, mark_unauthenticated(payload))
        return outcome.ok


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
