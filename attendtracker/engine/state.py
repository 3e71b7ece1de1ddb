"""Builders for the live snapshot and the outbound report payloads."""

from __future__ import annotations

from typing import Any, Iterable

from attendtracker.engine.models import HostLock, ParticipantRecord, Session, to_iso
from attendtracker.engine.security import is_expired
from attendtracker.engine.status import format_status_label


def locked_host_info(lock: HostLock) -> dict[str, Any] | None:
    if lock.locked_identity is None:
        return None
    return {
        "identityKey": lock.locked_identity.identity_key,
        "displayName": lock.locked_identity.display_name,
        "lockedAt": to_iso(lock.locked_at),
        "hasLeft": lock.has_left,
        "leftAt": to_iso(lock.left_at),
    }


def build_live_snapshot(
    session_key: str | None,
    now: float,
    records: Iterable[ParticipantRecord],
    lock: HostLock,
    session_state: str,
) -> dict[str, Any]:
    """Return the record display surfaces read after every tick."""
    participants = [dict(record.to_dict(), statusLabel=format_status_label(record.status)) for record in records]
    return {
        "sessionKey": session_key,
        "updatedAt": to_iso(now),
        "participantCount": sum(1 for item in participants if item["isLive"]),
        "participants": participants,
        "hostLocked": lock.is_locked,
        "lockedHostInfo": locked_host_info(lock),
        "sessionState": session_state,
    }


def token_fields(session: Session | None, now: float) -> dict[str, Any]:
    if session is None or not session.token_id or is_expired(session.token_expires_at, now):
        return {"verificationToken": None, "tokenExpiresAt": None, "isUnauthenticated": True}
    return {
        "verificationToken": session.token_id,
        "tokenExpiresAt": to_iso(session.token_expires_at),
        "isUnauthenticated": False,
    }


def build_progress_report(
    session_key: str,
    now: float,
    records: Iterable[ParticipantRecord],
    session: Session | None,
) -> dict[str, Any]:
    report = {
        "sessionKey": session_key,
        "updatedAt": to_iso(now),
        "participants": [record.to_dict() for record in records],
    }
    report.update(token_fields(session, now))
    return report


def build_final_report(
    session_key: str,
    now: float,
    records: Iterable[ParticipantRecord],
    host_info: dict[str, Any] | None,
    session: Session | None,
    *,
    submission_key: str,
    ended_by: str,
) -> dict[str, Any]:
    participants = [record.to_dict() for record in records]
    report = {
        "sessionKey": session_key,
        "submissionKey": submission_key,
        "startedAt": to_iso(session.started_at) if session is not None else None,
        "finalizedAt": to_iso(now),
        "endedBy": ended_by,
        "participantCount": len(participants),
        "participants": participants,
        "hostInfo": host_info,
    }
    report.update(token_fields(session, now))
    return report
