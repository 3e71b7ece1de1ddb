"""Host lock: pins one participant as the meeting host across flickering ticks."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from attendtracker.engine.identity import BoundObservation
from attendtracker.engine.models import DetectionResult, HostLock, HostSignals, LockedIdentity, Scope, StoreError
from attendtracker.engine.store import StateStore

logger = logging.getLogger(__name__)

HOST_LOCK_KEY = "host_lock"
HOST_LOCK_STALE_SECONDS = 30 * 60
DEFAULT_CONFIRMATION_THRESHOLD = 2
DEFAULT_MISSED_THRESHOLD = 3

HOST_ROLES = frozenset({"host", "co-host", "cohost", "organizer", "organiser", "presenter"})
_HOST_NAME_MARKER = re.compile(r"\b(?:meeting host|co-host|host|organi[sz]er)\b", re.IGNORECASE)


@dataclass(frozen=True)
class DetectionContext:
    signals: HostSignals
    participant_count: int


@dataclass(frozen=True)
class HostDetection:
    identity: LockedIdentity
    reason: str


DetectionStrategy = Callable[[BoundObservation, DetectionContext], DetectionResult]

_NO_MATCH = DetectionResult(matched=False)


def flagged_by_source(item: BoundObservation, context: DetectionContext) -> DetectionResult:
    if item.observation.is_host:
        return DetectionResult(matched=True, reason="source_flag")
    return _NO_MATCH


def operator_host_controls(item: BoundObservation, context: DetectionContext) -> DetectionResult:
    if context.signals.host_controls_visible and item.observation.is_self:
        return DetectionResult(matched=True, reason="operator_host_controls")
    return _NO_MATCH


def name_marker(item: BoundObservation, context: DetectionContext) -> DetectionResult:
    if _HOST_NAME_MARKER.search(item.observation.display_name or ""):
        return DetectionResult(matched=True, reason="name_marker")
    return _NO_MATCH


def role_flag(item: BoundObservation, context: DetectionContext) -> DetectionResult:
    role = (item.observation.role or "").strip().lower()
    if role in HOST_ROLES or item.observation.is_presenter:
        return DetectionResult(matched=True, reason="role_flag")
    return _NO_MATCH


def sole_participant(item: BoundObservation, context: DetectionContext) -> DetectionResult:
    if context.participant_count == 1:
        return DetectionResult(matched=True, reason="sole_participant")
    return _NO_MATCH


HOST_DETECTION_STRATEGIES: tuple[DetectionStrategy, ...] = (
    flagged_by_source,
    operator_host_controls,
    name_marker,
    role_flag,
    sole_participant,
)


def detect_host(
    bound: Sequence[BoundObservation],
    signals: HostSignals | None = None,
    strategies: Sequence[DetectionStrategy] = HOST_DETECTION_STRATEGIES,
) -> HostDetection | None:
    """Return the first observation matched by the highest-priority strategy."""
    context = DetectionContext(signals=signals or HostSignals(), participant_count=len(bound))
    for strategy in strategies:
        for item in bound:
            result = strategy(item, context)
            if result.matched:
                return HostDetection(
                    identity=LockedIdentity(identity_key=item.identity_key, display_name=item.display_name),
                    reason=result.reason or strategy.__name__,
                )
    return None


class HostLockManager:
    def __init__(
        self,
        store: StateStore,
        *,
        confirmation_threshold: int = DEFAULT_CONFIRMATION_THRESHOLD,
        missed_threshold: int = DEFAULT_MISSED_THRESHOLD,
        permanent: bool = False,
        stale_after: float = HOST_LOCK_STALE_SECONDS,
    ) -> None:
        self.store = store
        self.confirmation_threshold = max(1, confirmation_threshold)
        self.missed_threshold = max(1, missed_threshold)
        self.permanent = permanent
        self.stale_after = stale_after
        self.lock = HostLock()

    @property
    def is_locked(self) -> bool:
        return self.lock.is_locked

    @property
    def host_present(self) -> bool:
        return self.lock.is_locked and not self.lock.has_left

    def restore(self, session_key: str, now: float) -> bool:
        """Load the persisted lock when it is recent and belongs to session_key."""
        try:
            payload = self.store.get(Scope.SYNC, HOST_LOCK_KEY)
        except StoreError as exc:
            logger.warning("[host-lock] could not read persisted lock: %s", exc)
            return False
        if not isinstance(payload, dict):
            return False

        saved_at = payload.get("savedAt")
        restored = HostLock.from_dict(payload.get("lock") or {})
        stale = not isinstance(saved_at, (int, float)) or now - float(saved_at) >= self.stale_after
        if stale or restored.session_key != session_key:
            logger.info("[host-lock] discarding persisted lock for %s (stale=%s)", restored.session_key, stale)
            self._delete()
            return False

        self.lock = restored
        logger.info("[host-lock] restored lock for %s", session_key)
        return True

    def reset(self, session_key: str | None, now: float) -> None:
        self.lock = HostLock(session_key=session_key)
        self._save(now)

    def clear(self) -> None:
        self.lock = HostLock()
        self._delete()

    def rekey(self, old_key: str, new_key: str, now: float) -> None:
        """Follow an identity merge so the lock keeps pointing at a live record."""
        lock = self.lock
        changed = False
        if lock.locked_identity is not None and lock.locked_identity.identity_key == old_key:
            lock.locked_identity = LockedIdentity(new_key, lock.locked_identity.display_name)
            changed = True
        if lock.candidate_identity is not None and lock.candidate_identity.identity_key == old_key:
            lock.candidate_identity = LockedIdentity(new_key, lock.candidate_identity.display_name)
            changed = True
        if changed:
            self._save(now)

    def tick(
        self,
        session_key: str,
        detection: HostDetection | None,
        observed_keys: set[str],
        now: float,
    ) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        if self.lock.session_key != session_key:
            if self.lock.session_key is not None:
                logger.info("[host-lock] session changed %s -> %s, resetting", self.lock.session_key, session_key)
                events.append({"kind": "host_lock_reset", "previousSessionKey": self.lock.session_key})
            self.lock = HostLock(session_key=session_key)

        if self.lock.is_locked:
            events.extend(self._tick_locked(detection, observed_keys, now))
        else:
            events.extend(self._tick_unlocked(detection, now))

        self._save(now)
        return events

    def _tick_locked(
        self,
        detection: HostDetection | None,
        observed_keys: set[str],
        now: float,
    ) -> list[dict[str, Any]]:
        lock = self.lock
        locked = lock.locked_identity
        assert locked is not None
        events: list[dict[str, Any]] = []

        if detection is not None and detection.identity.identity_key != locked.identity_key:
            log = logger.warning if detection.reason == "source_flag" else logger.debug
            log(
                "[host-lock] %s looks like host (%s) but %s holds the lock; keeping first lock",
                detection.identity.identity_key,
                detection.reason,
                locked.identity_key,
            )
            events.append(
                {
                    "kind": "host_conflict_ignored",
                    "identityKey": detection.identity.identity_key,
                    "lockedIdentityKey": locked.identity_key,
                }
            )

        if locked.identity_key in observed_keys:
            lock.missed_count = 0
            lock.last_seen_at = now
            if lock.has_left:
                lock.has_left = False
                lock.left_at = None
                events.append({"kind": "host_returned", "identityKey": locked.identity_key})
            return events

        lock.missed_count += 1
        if lock.missed_count < self.missed_threshold:
            return events

        departed_at = lock.last_seen_at if lock.last_seen_at is not None else now
        if self.permanent:
            if not lock.has_left:
                lock.has_left = True
                lock.left_at = departed_at
                logger.info("[host-lock] host %s left (lock kept)", locked.identity_key)
                events.append({"kind": "host_left", "identityKey": locked.identity_key, "leftAt": departed_at})
            return events

        logger.info("[host-lock] host %s missed %d ticks, unlocking", locked.identity_key, lock.missed_count)
        lock.locked_identity = None
        lock.locked_at = None
        lock.candidate_identity = None
        lock.confirmation_count = 0
        lock.missed_count = 0
        lock.has_left = True
        lock.left_at = departed_at
        events.append({"kind": "host_left", "identityKey": locked.identity_key, "leftAt": departed_at})
        events.append({"kind": "host_unlocked", "identityKey": locked.identity_key})
        return events

    def _tick_unlocked(self, detection: HostDetection | None, now: float) -> list[dict[str, Any]]:
        lock = self.lock
        if detection is None:
            lock.candidate_identity = None
            lock.confirmation_count = 0
            return []

        candidate = detection.identity
        if lock.candidate_identity is not None and lock.candidate_identity.identity_key == candidate.identity_key:
            lock.confirmation_count += 1
        else:
            lock.candidate_identity = candidate
            lock.confirmation_count = 1

        if lock.confirmation_count < self.confirmation_threshold:
            return []

        lock.locked_identity = candidate
        lock.locked_at = now
        lock.last_seen_at = now
        lock.missed_count = 0
        lock.has_left = False
        lock.left_at = None
        logger.info("[host-lock] locked host %s (%s)", candidate.identity_key, detection.reason)
        return [
            {
                "kind": "host_locked",
                "identityKey": candidate.identity_key,
                "displayName": candidate.display_name,
                "reason": detection.reason,
            }
        ]

    def _save(self, now: float) -> None:
        try:
            self.store.set(Scope.SYNC, HOST_LOCK_KEY, {"savedAt": now, "lock": self.lock.to_dict()})
        except StoreError as exc:
            logger.warning("[host-lock] could not persist lock: %s", exc)

    def _delete(self) -> None:
        try:
            self.store.delete(Scope.SYNC, HOST_LOCK_KEY)
        except StoreError as exc:
            logger.warning("[host-lock] could not delete persisted lock: %s", exc)
