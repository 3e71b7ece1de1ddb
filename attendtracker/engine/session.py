"""Recording session lifecycle: idle -> active -> ending -> ended."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from attendtracker.engine.models import Scope, Session, SessionState, StoreError
from attendtracker.engine.security import TOKEN_TTL_SECONDS, generate_token, is_expired
from attendtracker.engine.store import StateStore

logger = logging.getLogger(__name__)

SESSION_KEY = "session"
TOKEN_KEY_PREFIX = "token_"


def token_storage_key(session_key: str) -> str:
    return f"{TOKEN_KEY_PREFIX}{session_key.strip().lower()}"


@dataclass(frozen=True)
class SessionStartResult:
    accepted: bool
    session: Session
    blocked_by: str | None = None

    @property
    def blocked(self) -> bool:
        return not self.accepted


class SessionManager:
    """Owns the per-client Session record; the store is the source of truth."""

    def __init__(self, store: StateStore, *, token_ttl: float = TOKEN_TTL_SECONDS) -> None:
        self.store = store
        self.token_ttl = token_ttl
        self._cached = Session()

    def load(self) -> Session:
        try:
            payload = self.store.get(Scope.SYNC, SESSION_KEY)
        except StoreError as exc:
            logger.warning("[session] could not read session, using cached copy: %s", exc)
            return Session.from_dict(self._cached.to_dict())
        if not isinstance(payload, dict):
            return Session()
        return Session.from_dict(payload)

    def status(self, now: float) -> Session | None:
        """Current session, or None when idle or once its token has expired."""
        session = self._expire_if_needed(self.load(), now)
        if session.state is SessionState.IDLE:
            return None
        return session

    def start(self, session_key: str, now: float, token: str | None = None) -> SessionStartResult:
        session = self._expire_if_needed(self.load(), now)
        if session.state is SessionState.ACTIVE:
            if session.session_key == session_key:
                return SessionStartResult(accepted=True, session=session)
            logger.warning(
                "[session] start for %s blocked: session %s is active",
                session_key,
                session.session_key,
            )
            return SessionStartResult(accepted=False, session=session, blocked_by=session.session_key)

        expires_at = now + self.token_ttl
        if token is None:
            stored = self.get_stored_token(session_key, now)
            if stored is not None:
                token = str(stored["token"])
                expires_at = float(stored["expiresAt"])
        if token is None:
            token = generate_token()

        resumed = session.state is SessionState.IDLE and session.session_key == session_key
        started = Session(
            state=SessionState.ACTIVE,
            session_key=session_key,
            started_at=session.started_at if resumed and session.started_at is not None else now,
            token_id=token,
            token_expires_at=expires_at,
            participant_count=session.participant_count if resumed else 0,
            last_updated_at=now,
            state_changed_at=now,
        )
        self._save(started)
        logger.info("[session] %s session %s", "resumed" if resumed else "started", session_key)
        return SessionStartResult(accepted=True, session=started)

    def touch(self, participant_count: int, now: float) -> Session:
        session = self.load()
        if session.state in (SessionState.ACTIVE, SessionState.ENDING):
            session.participant_count = participant_count
            session.last_updated_at = now
            self._save(session)
        return session

    def begin_ending(self, now: float) -> bool:
        return self._transition(SessionState.ACTIVE, SessionState.ENDING, now)

    def mark_ended(self, now: float) -> bool:
        return self._transition(SessionState.ENDING, SessionState.ENDED, now)

    def clear(self, now: float) -> None:
        self._save(Session(state=SessionState.IDLE, last_updated_at=now, state_changed_at=now))
        logger.info("[session] cleared")

    def store_token(self, session_key: str, token: str, expires_at: float, now: float) -> None:
        """Keep a dashboard-issued token for a meeting until it expires."""
        if is_expired(expires_at, now):
            logger.warning("[session] refusing to store already expired token for %s", session_key)
            return
        entry = {"token": token, "sessionKey": session_key, "expiresAt": expires_at, "storedAt": now}
        try:
            self.store.set(Scope.SYNC, token_storage_key(session_key), entry)
        except StoreError as exc:
            logger.warning("[session] could not store token for %s: %s", session_key, exc)

    def get_stored_token(self, session_key: str, now: float) -> dict[str, Any] | None:
        try:
            entry = self.store.get(Scope.SYNC, token_storage_key(session_key))
        except StoreError as exc:
            logger.warning("[session] could not read stored token: %s", exc)
            return None
        if not isinstance(entry, dict) or not entry.get("token"):
            return None
        if is_expired(entry.get("expiresAt"), now):
            return None
        return entry

    def cleanup_expired_tokens(self, now: float) -> list[str]:
        try:
            removed: list[str] = []
            for key in self.store.keys(Scope.SYNC, prefix=TOKEN_KEY_PREFIX):
                entry = self.store.get(Scope.SYNC, key)
                expires_at = entry.get("expiresAt") if isinstance(entry, dict) else None
                if not isinstance(expires_at, (int, float)) or is_expired(float(expires_at), now):
                    self.store.delete(Scope.SYNC, key)
                    removed.append(key)
        except StoreError as exc:
            logger.warning("[session] token cleanup failed: %s", exc)
            return []
        if removed:
            logger.info("[session] removed %d expired token(s)", len(removed))
        return removed

    def _expire_if_needed(self, session: Session, now: float) -> Session:
        if session.state is not SessionState.ACTIVE or not is_expired(session.token_expires_at, now):
            return session
        logger.info("[session] token for %s expired, session back to idle", session.session_key)
        session.state = SessionState.IDLE
        session.token_id = None
        session.token_expires_at = None
        session.state_changed_at = now
        self._save(session)
        return session

    def _transition(self, source: SessionState, target: SessionState, now: float) -> bool:
        session = self.load()
        if session.state is not source:
            return False
        session.state = target
        session.state_changed_at = now
        session.last_updated_at = now
        self._save(session)
        logger.info("[session] %s -> %s (%s)", source.value, target.value, session.session_key)
        return True

    def _save(self, session: Session) -> None:
        self._cached = session
        try:
            self.store.set(Scope.SYNC, SESSION_KEY, session.to_dict())
        except StoreError as exc:
            logger.warning("[session] could not persist session: %s", exc)
