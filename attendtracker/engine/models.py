"""Domain models for attendance reconciliation and persistence contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class AttendTrackerError(Exception):
    """Base class for engine errors."""


class StoreError(AttendTrackerError):
    """Raised when the persisted state store cannot complete an operation."""


class SessionBlockedError(AttendTrackerError):
    """Raised when a session start collides with another active session."""

    def __init__(self, requested_key: str, active_key: str) -> None:
        super().__init__(f"session {active_key!r} is active; cannot start {requested_key!r}")
        self.requested_key = requested_key
        self.active_key = active_key


class ParticipantStatus(str, Enum):
    PENDING = "pending"
    PRESENT = "present"
    LATE = "late"
    ABSENT = "absent"
    LEFT = "left"


class SessionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"


class Scope(str, Enum):
    SYNC = "sync"
    LOCAL = "local"


def to_iso(timestamp: float | None) -> str | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class Observation:
    """One raw "participant seen" event from the observation source."""

    display_name: str
    identity_hint: str | None = None
    is_host: bool = False
    is_self: bool = False
    role: str | None = None
    is_presenter: bool = False

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Observation:
        hint = payload.get("identityHint")
        role = payload.get("role")
        return cls(
            display_name=str(payload.get("displayName") or ""),
            identity_hint=str(hint) if hint else None,
            is_host=bool(payload.get("isHost", False)),
            is_self=bool(payload.get("isSelf", False)),
            role=str(role) if role else None,
            is_presenter=bool(payload.get("isPresenter", False)),
        )


@dataclass(frozen=True)
class HostSignals:
    """Structural hints about the operator's view for one tick."""

    host_controls_visible: bool = False

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> HostSignals:
        if not payload:
            return cls()
        return cls(host_controls_visible=bool(payload.get("hostControlsVisible", False)))


@dataclass
class ParticipantRecord:
    identity_key: str
    display_name: str
    joined_at: float
    identity_hint: str | None = None
    is_host: bool = False
    left_at: float | None = None
    attended_seconds: float = 0.0
    status: ParticipantStatus = ParticipantStatus.PENDING
    is_live: bool = True
    last_seen_at: float | None = None
    missed_ticks: int = 0
    joined_late: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "identityKey": self.identity_key,
            "displayName": self.display_name,
            "isHost": self.is_host,
            "joinedAt": to_iso(self.joined_at),
            "leftAt": to_iso(self.left_at),
            "attendedSeconds": int(self.attended_seconds),
            "status": self.status.value,
            "isLive": self.is_live,
        }


@dataclass(frozen=True)
class LockedIdentity:
    identity_key: str
    display_name: str

    def to_dict(self) -> dict[str, str]:
        return {"identityKey": self.identity_key, "displayName": self.display_name}

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> LockedIdentity | None:
        if not payload or not payload.get("identityKey"):
            return None
        return cls(identity_key=str(payload["identityKey"]), display_name=str(payload.get("displayName", "")))


@dataclass
class HostLock:
    session_key: str | None = None
    locked_identity: LockedIdentity | None = None
    locked_at: float | None = None
    confirmation_count: int = 0
    missed_count: int = 0
    candidate_identity: LockedIdentity | None = None
    has_left: bool = False
    left_at: float | None = None
    last_seen_at: float | None = None

    @property
    def is_locked(self) -> bool:
        return self.locked_identity is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionKey": self.session_key,
            "lockedIdentity": self.locked_identity.to_dict() if self.locked_identity else None,
            "lockedAt": self.locked_at,
            "confirmationCount": self.confirmation_count,
            "missedCount": self.missed_count,
            "candidateIdentity": self.candidate_identity.to_dict() if self.candidate_identity else None,
            "hasLeft": self.has_left,
            "leftAt": self.left_at,
            "lastSeenAt": self.last_seen_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HostLock:
        return cls(
            session_key=payload.get("sessionKey"),
            locked_identity=LockedIdentity.from_dict(payload.get("lockedIdentity")),
            locked_at=payload.get("lockedAt"),
            confirmation_count=int(payload.get("confirmationCount", 0)),
            missed_count=int(payload.get("missedCount", 0)),
            candidate_identity=LockedIdentity.from_dict(payload.get("candidateIdentity")),
            has_left=bool(payload.get("hasLeft", False)),
            left_at=payload.get("leftAt"),
            last_seen_at=payload.get("lastSeenAt"),
        )


@dataclass
class Session:
    state: SessionState = SessionState.IDLE
    session_key: str | None = None
    started_at: float | None = None
    token_id: str | None = None
    token_expires_at: float | None = None
    participant_count: int = 0
    last_updated_at: float | None = None
    state_changed_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "sessionKey": self.session_key,
            "startedAt": self.started_at,
            "tokenId": self.token_id,
            "tokenExpiresAt": self.token_expires_at,
            "participantCount": self.participant_count,
            "lastUpdatedAt": self.last_updated_at,
            "stateChangedAt": self.state_changed_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Session:
        return cls(
            state=SessionState(payload.get("state", SessionState.IDLE.value)),
            session_key=payload.get("sessionKey"),
            started_at=payload.get("startedAt"),
            token_id=payload.get("tokenId"),
            token_expires_at=payload.get("tokenExpiresAt"),
            participant_count=int(payload.get("participantCount", 0)),
            last_updated_at=payload.get("lastUpdatedAt"),
            state_changed_at=payload.get("stateChangedAt"),
        )


@dataclass
class RetryQueueEntry:
    id: str
    payload: dict[str, Any]
    endpoint: str
    attempt_count: int
    next_retry_at: float
    created_at: float
    submission_key: str | None = None
    kind: str = "final"
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "payload": self.payload,
            "endpoint": self.endpoint,
            "attemptCount": self.attempt_count,
            "nextRetryAt": self.next_retry_at,
            "createdAt": self.created_at,
            "submissionKey": self.submission_key,
            "kind": self.kind,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RetryQueueEntry:
        return cls(
            id=str(payload["id"]),
            payload=dict(payload.get("payload") or {}),
            endpoint=str(payload["endpoint"]),
            attempt_count=int(payload.get("attemptCount", 0)),
            next_retry_at=float(payload.get("nextRetryAt", 0.0)),
            created_at=float(payload.get("createdAt", 0.0)),
            submission_key=payload.get("submissionKey"),
            kind=str(payload.get("kind", "final")),
            last_error=payload.get("lastError"),
        )


@dataclass(frozen=True)
class DetectionResult:
    matched: bool
    reason: str | None = None


@dataclass(frozen=True)
class TickResult:
    snapshot: dict[str, Any]
    engine_events: list[dict[str, Any]] = field(default_factory=list)
    blocked: bool = False
