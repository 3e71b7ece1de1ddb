"""Reconciliation engine: one tick of observations in, one live snapshot out."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from attendtracker.engine.config import EngineSettings
from attendtracker.engine.finalize import (
    FinalizationCoordinator,
    FinalizeOutcome,
    FinalizeSignal,
    FinalizeState,
    detect_end_marker,
)
from attendtracker.engine.host_lock import HostLockManager, detect_host
from attendtracker.engine.identity import ParticipantDirectory, resolve_observations
from attendtracker.engine.models import (
    HostSignals,
    Observation,
    Scope,
    SessionState,
    StoreError,
    TickResult,
    to_iso,
)
from attendtracker.engine.retry_queue import SubmissionRetryQueue
from attendtracker.engine.scheduler import Scheduler, TimerHandle
from attendtracker.engine.security import derive_submission_key
from attendtracker.engine.session import SessionManager, SessionStartResult
from attendtracker.engine.state import (
    build_final_report,
    build_live_snapshot,
    build_progress_report,
    locked_host_info,
)
from attendtracker.engine.status import HostPresence, apply_host_departure, classify_tick, close_all
from attendtracker.engine.store import StateStore
from attendtracker.engine.submitter import FINAL_ENDPOINT, PROGRESS_ENDPOINT, ReportSubmitter

logger = logging.getLogger(__name__)

LIVE_SNAPSHOT_KEY = "live_snapshot"
FINAL_REPORT_KEY = "final_report"

LIVENESS_CHECK_INTERVAL_SECONDS = 10.0
NO_PARTICIPANTS_TIMEOUT_SECONDS = 120.0
ENDING_TIMEOUT_SECONDS = 60.0
TOKEN_CLEANUP_INTERVAL_SECONDS = 10 * 60.0
RETRY_DRAIN_INTERVAL_SECONDS = 2.0
PROGRESS_INTERVAL_SECONDS = 10.0


class AttendanceEngine:
    def __init__(
        self,
        store: StateStore,
        scheduler: Scheduler,
        *,
        submitter: ReportSubmitter | None = None,
        confirmation_threshold: int = 2,
        missed_threshold: int = 3,
        permanent_host_lock: bool = False,
        progress_interval: float = PROGRESS_INTERVAL_SECONDS,
        retry_drain_interval: float = RETRY_DRAIN_INTERVAL_SECONDS,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.submitter = submitter
        self.progress_interval = progress_interval
        self.retry_drain_interval = retry_drain_interval

        self.directory = ParticipantDirectory()
        self.host_lock = HostLockManager(
            store,
            confirmation_threshold=confirmation_threshold,
            missed_threshold=missed_threshold,
            permanent=permanent_host_lock,
        )
        self.sessions = SessionManager(store)
        self.retry_queue = SubmissionRetryQueue(store, submitter.deliver if submitter is not None else None)
        self.finalizer = FinalizationCoordinator(scheduler, self._finalize, on_exhausted=self._finalize_exhausted)

        self.session_key: str | None = None
        self.meeting_started_at: float | None = None
        self.last_participant_seen_at: float | None = None
        self.final_report: dict[str, Any] | None = None
        self.notices: list[dict[str, Any]] = []
        self._notice_kinds: set[str] = set()
        self._last_host_info: dict[str, Any] | None = None
        self._final_submission_key: str | None = None
        self._timers: list[TimerHandle] = []

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        store: StateStore,
        scheduler: Scheduler,
        submitter: ReportSubmitter | None = None,
    ) -> AttendanceEngine:
        return cls(
            store,
            scheduler,
            submitter=submitter,
            confirmation_threshold=settings.host_confirmation_threshold,
            missed_threshold=settings.host_missed_threshold,
            permanent_host_lock=settings.permanent_host_lock,
            progress_interval=settings.progress_interval_seconds,
            retry_drain_interval=settings.retry_drain_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Observation ticks
    # ------------------------------------------------------------------

    def process_tick(
        self,
        session_key: str,
        observations: Iterable[Observation],
        signals: HostSignals | None = None,
    ) -> TickResult:
        now = self.scheduler.now()
        events: list[dict[str, Any]] = []

        session = self.sessions.status(now)
        if session is not None and session.state is SessionState.ACTIVE and session.session_key != session_key:
            logger.warning("[engine] tick for %s blocked by active session %s", session_key, session.session_key)
            return TickResult(
                snapshot=self.snapshot(now),
                engine_events=[{"kind": "tick_blocked", "sessionKey": session_key, "activeKey": session.session_key}],
                blocked=True,
            )

        if session_key == self.session_key and self.finalizer.started:
            return TickResult(
                snapshot=self.snapshot(now),
                engine_events=[{"kind": "tick_ignored", "reason": self.finalizer.state.value}],
            )

        if session_key != self.session_key:
            events.extend(self._begin_meeting(session_key, now))

        resolution = resolve_observations(observations)
        bind = self.directory.bind(resolution, now)
        for old_key, new_key in bind.merged:
            self.host_lock.rekey(old_key, new_key, now)
            events.append({"kind": "identity_merged", "from": old_key, "into": new_key})
        if bind.created:
            events.append({"kind": "participants_created", "identityKeys": list(bind.created)})
        if bind.unidentified_count:
            events.append({"kind": "unidentified_observations", "count": bind.unidentified_count})

        detection = detect_host(bind.bound, signals)
        lock_events = self.host_lock.tick(session_key, detection, bind.observed_keys, now)
        events.extend(lock_events)
        self._apply_host_flags()

        kinds = {event["kind"] for event in lock_events}
        if "host_locked" in kinds:
            self._last_host_info = locked_host_info(self.host_lock.lock)
            events.extend(self._start_session(session_key, now))
        elif self.host_lock.is_locked:
            events.extend(self._ensure_session(session_key, now))

        records = self.directory.records.values()
        events.extend(
            classify_tick(
                records,
                bind.observed_keys,
                now,
                meeting_started_at=self.meeting_started_at,
                host=HostPresence.from_lock(self.host_lock.lock),
            )
        )
        for event in lock_events:
            if event["kind"] == "host_left":
                events.extend(apply_host_departure(records, float(event["leftAt"])))
        if "host_unlocked" in kinds:
            self.finalizer.signal(FinalizeSignal.HOST_ABSENT)

        if bind.bound:
            self.last_participant_seen_at = now
        live_count = sum(1 for record in records if record.is_live)
        self.sessions.touch(live_count, now)

        snapshot = self.snapshot(now)
        self._write(LIVE_SNAPSHOT_KEY, snapshot)
        return TickResult(snapshot=snapshot, engine_events=events)

    def snapshot(self, now: float | None = None) -> dict[str, Any]:
        now = self.scheduler.now() if now is None else now
        return build_live_snapshot(
            self.session_key,
            now,
            self.directory.records.values(),
            self.host_lock.lock,
            self.sessions.load().state.value,
        )

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def start_session(self, session_key: str, token: str | None = None) -> SessionStartResult:
        """Explicit start from the operator surface."""
        now = self.scheduler.now()
        result = self.sessions.start(session_key, now, token=token)
        if result.accepted:
            if session_key != self.session_key:
                self._begin_meeting(session_key, now)
            if self.meeting_started_at is None:
                self.meeting_started_at = result.session.started_at
        return result

    def store_token(self, session_key: str, token: str, expires_at: float) -> None:
        self.sessions.store_token(session_key, token, expires_at, self.scheduler.now())

    def clear(self) -> None:
        now = self.scheduler.now()
        self.finalizer.reset()
        self.host_lock.clear()
        self.sessions.clear(now)
        self.directory = ParticipantDirectory()
        self.session_key = None
        self.meeting_started_at = None
        self.last_participant_seen_at = None
        self.final_report = None
        self._last_host_info = None
        self._final_submission_key = None
        self._reset_notices()
        try:
            self.store.delete(Scope.LOCAL, LIVE_SNAPSHOT_KEY)
        except StoreError as exc:
            logger.warning("[engine] could not delete live snapshot: %s", exc)

    # ------------------------------------------------------------------
    # End-of-meeting signals
    # ------------------------------------------------------------------

    def request_end(self) -> bool:
        return self.finalizer.signal(FinalizeSignal.EXPLICIT_CLOSE)

    def visibility_changed(self, hidden: bool) -> None:
        self.finalizer.visibility_changed(hidden)

    def observe_page_text(self, text: str) -> bool:
        marker = detect_end_marker(text)
        if marker is None:
            return False
        logger.info("[engine] end-of-meeting marker seen: %r", marker)
        return self.finalizer.signal(FinalizeSignal.END_MARKER)

    async def end_now(self) -> dict[str, Any] | None:
        return await self.finalizer.finalize_now(FinalizeSignal.EXPLICIT_CLOSE)

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._timers:
            return
        self._timers = [
            self.scheduler.call_every(self.progress_interval, self.broadcast_progress),
            self.scheduler.call_every(self.retry_drain_interval, self.drain_retry_queue),
            self.scheduler.call_every(LIVENESS_CHECK_INTERVAL_SECONDS, self.check_liveness),
            self.scheduler.call_every(TOKEN_CLEANUP_INTERVAL_SECONDS, self.cleanup_tokens),
        ]

    def stop(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers = []

    async def broadcast_progress(self) -> bool:
        now = self.scheduler.now()
        session = self.sessions.status(now)
        if self.submitter is None or session is None or session.state is not SessionState.ACTIVE:
            return False
        if not self.directory.records or session.session_key is None:
            return False

        payload = build_progress_report(session.session_key, now, self.directory.records.values(), session)
        if payload["isUnauthenticated"]:
            self.raise_notice("unauthenticated", "No valid session token; submitting attendance as unauthenticated.")

        outcome = await self.submitter.submit_progress(payload)
        if outcome.ok:
            return True
        if outcome.is_auth_failure:
            self.raise_notice("auth_failure", outcome.user_message or "Authentication failed.")
        self.retry_queue.enqueue(
            payload,
            PROGRESS_ENDPOINT,
            self.scheduler.now(),
            submission_key=f"progress:{session.session_key}",
            kind="progress",
        )
        return False

    async def drain_retry_queue(self) -> None:
        result = await self.retry_queue.drain(self.scheduler.now())
        if not (result.delivered or result.dropped or result.skipped):
            return
        if self._final_submission_key is None or self._final_pending():
            return
        if self.retry_queue.is_delivered(self._final_submission_key):
            logger.info("[engine] final report delivered from retry queue")
        else:
            self.raise_notice("final_report_dropped", "Final attendance report could not be delivered.")
        self.sessions.mark_ended(self.scheduler.now())

    def check_liveness(self) -> None:
        now = self.scheduler.now()
        session = self.sessions.status(now)
        if session is None:
            return

        if session.state is SessionState.ACTIVE:
            last_seen = self.last_participant_seen_at or session.started_at
            if last_seen is not None and now - last_seen > NO_PARTICIPANTS_TIMEOUT_SECONDS:
                logger.info("[engine] no participants for %.0fs", now - last_seen)
                self.finalizer.signal(FinalizeSignal.LIVENESS_STALE)
            return

        if session.state is SessionState.ENDING:
            changed_at = session.state_changed_at or now
            if now - changed_at <= ENDING_TIMEOUT_SECONDS:
                return
            if self.finalizer.state in (FinalizeState.FINALIZED, FinalizeState.EXHAUSTED) and not self._final_pending():
                logger.warning("[engine] session stuck in ending, marking ended")
                self.sessions.mark_ended(now)
            else:
                self.finalizer.signal(FinalizeSignal.LIVENESS_STALE)

    def cleanup_tokens(self) -> list[str]:
        return self.sessions.cleanup_expired_tokens(self.scheduler.now())

    def raise_notice(self, kind: str, message: str) -> bool:
        """Record a user-facing notice once per kind."""
        if kind in self._notice_kinds:
            return False
        self._notice_kinds.add(kind)
        self.notices.append({"kind": kind, "message": message, "at": to_iso(self.scheduler.now())})
        logger.warning("[engine] notice %s: %s", kind, message)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reset_notices(self) -> None:
        self.notices = []
        self._notice_kinds = set()

    def _begin_meeting(self, session_key: str, now: float) -> list[dict[str, Any]]:
        logger.info("[engine] tracking meeting %s", session_key)
        self.session_key = session_key
        self.directory = ParticipantDirectory()
        self.finalizer.reset()
        self.final_report = None
        self.last_participant_seen_at = None
        self._last_host_info = None
        self._final_submission_key = None
        self._reset_notices()

        stored = self.sessions.load()
        active_here = stored.session_key == session_key and stored.state is SessionState.ACTIVE
        self.meeting_started_at = stored.started_at if active_here else None

        if self.host_lock.restore(session_key, now):
            self._last_host_info = locked_host_info(self.host_lock.lock)
        else:
            self.host_lock.reset(session_key, now)
        return [{"kind": "meeting_tracked", "sessionKey": session_key, "hostRestored": self.host_lock.is_locked}]

    def _start_session(self, session_key: str, now: float) -> list[dict[str, Any]]:
        result = self.sessions.start(session_key, now)
        if result.blocked:
            return [{"kind": "session_blocked", "sessionKey": session_key, "activeKey": result.blocked_by}]
        if self.meeting_started_at is None:
            self.meeting_started_at = result.session.started_at
        return [{"kind": "session_started", "sessionKey": session_key}]

    def _ensure_session(self, session_key: str, now: float) -> list[dict[str, Any]]:
        session = self.sessions.status(now)
        if session is not None:
            return []
        # Token expired while the host is still here: issue a fresh one.
        return self._start_session(session_key, now)

    def _apply_host_flags(self) -> None:
        lock = self.host_lock.lock
        host_key = lock.locked_identity.identity_key if lock.locked_identity else None
        for record in self.directory.records.values():
            record.is_host = record.identity_key == host_key

    def _final_pending(self) -> bool:
        return any(
            entry.kind == "final" and entry.submission_key == self._final_submission_key
            for entry in self.retry_queue.entries()
        )

    async def _finalize(self, signal: FinalizeSignal) -> FinalizeOutcome:
        now = self.scheduler.now()
        session_key = self.session_key
        if session_key is None:
            logger.info("[engine] finalize requested with no tracked meeting")
            return FinalizeOutcome(completed=True)

        self.sessions.begin_ending(now)
        session = self.sessions.load()
        if session.session_key != session_key:
            session = None

        if self.final_report is None:
            close_all(self.directory.records.values(), now, HostPresence.from_lock(self.host_lock.lock))
            self._apply_host_flags()
            if self._last_host_info is not None:
                host_key = self._last_host_info["identityKey"]
                host_record = self.directory.get(host_key)
                if host_record is not None:
                    host_record.is_host = True
            started_at = session.started_at if session is not None and session.started_at is not None else now
            self._final_submission_key = derive_submission_key(session_key, started_at)
            self.final_report = build_final_report(
                session_key,
                now,
                self.directory.records.values(),
                locked_host_info(self.host_lock.lock) or self._last_host_info,
                session,
                submission_key=self._final_submission_key,
                ended_by=signal.value,
            )
            self._write(FINAL_REPORT_KEY, self.final_report)
            self._write(LIVE_SNAPSHOT_KEY, self.snapshot(now))

        report = self.final_report
        submission_key = self._final_submission_key
        assert submission_key is not None

        if self.retry_queue.is_delivered(submission_key):
            logger.info("[engine] final report %s already delivered", submission_key)
            self.sessions.mark_ended(now)
            return FinalizeOutcome(completed=True, report=report)

        if self.submitter is None:
            logger.info("[engine] no backend configured, final report kept locally")
            self.sessions.mark_ended(now)
            return FinalizeOutcome(completed=True, report=report)

        if report["isUnauthenticated"]:
            self.raise_notice("unauthenticated", "No valid session token; submitting attendance as unauthenticated.")

        outcome = await self.submitter.submit_final(report)
        now = self.scheduler.now()
        if outcome.fallback_used:
            self.raise_notice("auth_failure", outcome.user_message or "Authentication failed.")
        if outcome.ok:
            self.retry_queue.record_delivery(submission_key, now)
            self.sessions.mark_ended(now)
            logger.info("[engine] final report %s accepted", submission_key)
            return FinalizeOutcome(completed=True, report=report)

        # The queue owns delivery from here; the session stays ENDING until it settles.
        self.retry_queue.enqueue(report, FINAL_ENDPOINT, now, submission_key=submission_key, kind="final")
        return FinalizeOutcome(completed=True, report=report)

    def _finalize_exhausted(self, signal: FinalizeSignal) -> None:
        """Every finalize attempt raised: queue what was built, or log the loss, then settle the session."""
        now = self.scheduler.now()
        submission_key = self._final_submission_key
        if submission_key is not None and self.retry_queue.is_delivered(submission_key):
            self.sessions.mark_ended(now)
            return

        if self.final_report is not None and submission_key is not None and self.submitter is not None:
            self.retry_queue.enqueue(self.final_report, FINAL_ENDPOINT, now, submission_key=submission_key, kind="final")
            logger.warning("[engine] finalize exhausted, final report %s handed to retry queue", submission_key)
            return

        self.retry_queue.record_failure(
            submission_key,
            FINAL_ENDPOINT,
            now,
            kind="final",
            attempt_count=self.finalizer.attempts,
            error=f"finalize exhausted ({signal.value})",
        )
        self.raise_notice("final_report_dropped", "Final attendance report could not be delivered.")
        self.sessions.mark_ended(now)

    def _write(self, key: str, value: Any) -> None:
        try:
            self.store.set(Scope.LOCAL, key, value)
        except StoreError as exc:
            logger.warning("[engine] could not persist %s: %s", key, exc)
