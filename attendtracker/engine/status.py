"""Attendance status rules applied to participant records on every tick."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from attendtracker.engine.config import GRACE_WINDOW_SECONDS, LATE_THRESHOLD_SECONDS
from attendtracker.engine.models import HostLock, ParticipantRecord, ParticipantStatus

# A new participant shows "pending" until this much attendance has accrued.
PRESENT_AFTER_SECONDS = 60
# Consecutive unobserved ticks before a participant counts as gone.
PARTICIPANT_MISSED_THRESHOLD = 2

_STATUS_LABELS = {
    ParticipantStatus.PENDING: "Just Joined",
    ParticipantStatus.PRESENT: "Present",
    ParticipantStatus.LATE: "Late",
    ParticipantStatus.ABSENT: "Absent",
    ParticipantStatus.LEFT: "Left Meeting",
}


@dataclass(frozen=True)
class HostPresence:
    identity_key: str | None
    present: bool
    left_at: float | None = None

    @classmethod
    def from_lock(cls, lock: HostLock) -> HostPresence:
        key = lock.locked_identity.identity_key if lock.locked_identity else None
        if lock.has_left:
            return cls(identity_key=key, present=False, left_at=lock.left_at)
        # No host confirmed yet counts as an ongoing meeting.
        return cls(identity_key=key, present=True)


def format_status_label(status: ParticipantStatus | str | None) -> str:
    try:
        return _STATUS_LABELS[ParticipantStatus(status)]
    except ValueError:
        return "Unknown"


def departure_status(record: ParticipantRecord, host: HostPresence) -> ParticipantStatus:
    """Terminal status for a participant whose departure was just confirmed."""
    if record.is_host:
        status = ParticipantStatus.PRESENT
    elif host.present or host.left_at is None or record.left_at is None:
        status = ParticipantStatus.ABSENT
    elif abs(record.left_at - host.left_at) <= GRACE_WINDOW_SECONDS:
        status = ParticipantStatus.PRESENT
    else:
        status = ParticipantStatus.LEFT

    if status is ParticipantStatus.PRESENT and record.joined_late and not record.is_host:
        return ParticipantStatus.LATE
    return status


def classify_tick(
    records: Iterable[ParticipantRecord],
    observed_keys: set[str],
    now: float,
    *,
    meeting_started_at: float | None,
    host: HostPresence,
) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for record in records:
        if record.identity_key in observed_keys:
            events.extend(_observe(record, now, meeting_started_at))
        else:
            events.extend(_miss(record, now, host))
    return events


def apply_host_departure(records: Iterable[ParticipantRecord], host_left_at: float) -> list[dict[str, Any]]:
    """Participants who dropped within the grace window of the host left together with it."""
    events: list[dict[str, Any]] = []
    for record in records:
        if record.is_live or record.status is not ParticipantStatus.ABSENT or record.left_at is None:
            continue
        if abs(record.left_at - host_left_at) > GRACE_WINDOW_SECONDS:
            continue
        record.status = ParticipantStatus.LATE if record.joined_late else ParticipantStatus.PRESENT
        events.append({"kind": "status_changed", "identityKey": record.identity_key, "status": record.status.value})
    return events


def close_all(records: Iterable[ParticipantRecord], now: float, host: HostPresence) -> list[dict[str, Any]]:
    """Close every live record at ``now`` and make every open status terminal."""
    records = list(records)
    host_left_at = now if host.present or host.left_at is None else host.left_at
    departed_host = HostPresence(identity_key=host.identity_key, present=False, left_at=host_left_at)

    events: list[dict[str, Any]] = []
    for record in records:
        if not record.is_live:
            continue
        if record.last_seen_at is not None:
            record.attended_seconds += max(0.0, now - record.last_seen_at)
            record.last_seen_at = now
        record.is_live = False
        record.left_at = now
        record.missed_ticks = 0
        record.status = departure_status(record, departed_host)
        events.append({"kind": "participant_closed", "identityKey": record.identity_key, "status": record.status.value})

    events.extend(apply_host_departure(records, host_left_at))
    return events


def _observe(record: ParticipantRecord, now: float, meeting_started_at: float | None) -> list[dict[str, Any]]:
    record.missed_ticks = 0

    if not record.is_live:
        # Returning participant: accrual resumes from the stored total.
        record.is_live = True
        record.left_at = None
        record.last_seen_at = now
        record.status = ParticipantStatus.PRESENT
        return [{"kind": "participant_returned", "identityKey": record.identity_key}]

    if record.last_seen_at is None:
        record.last_seen_at = now
        if meeting_started_at is not None and now - meeting_started_at > LATE_THRESHOLD_SECONDS:
            record.joined_late = True
        return [{"kind": "participant_joined", "identityKey": record.identity_key, "late": record.joined_late}]

    record.attended_seconds += max(0.0, now - record.last_seen_at)
    record.last_seen_at = now
    if record.status is ParticipantStatus.PENDING and record.attended_seconds >= PRESENT_AFTER_SECONDS:
        record.status = ParticipantStatus.PRESENT
        return [{"kind": "status_changed", "identityKey": record.identity_key, "status": record.status.value}]
    return []


def _miss(record: ParticipantRecord, now: float, host: HostPresence) -> list[dict[str, Any]]:
    if not record.is_live:
        return []
    record.missed_ticks += 1
    if record.missed_ticks < PARTICIPANT_MISSED_THRESHOLD:
        return []

    record.is_live = False
    record.left_at = record.last_seen_at if record.last_seen_at is not None else now
    record.status = departure_status(record, host)
    return [
        {
            "kind": "participant_left",
            "identityKey": record.identity_key,
            "status": record.status.value,
            "leftAt": record.left_at,
        }
    ]
