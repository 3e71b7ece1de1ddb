"""Persisted queue of failed submissions with capped exponential backoff."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from attendtracker.engine.models import RetryQueueEntry, Scope, StoreError
from attendtracker.engine.store import StateStore

logger = logging.getLogger(__name__)

RETRY_QUEUE_KEY = "retry_queue"
DELIVERED_KEY = "delivered_submissions"
FAILURES_KEY = "retry_failures"

MAX_RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = 2.0
MAX_FAILURE_LOG = 50
DELIVERED_RETENTION_SECONDS = 2 * 24 * 60 * 60.0

Deliver = Callable[[str, dict[str, Any]], Awaitable[bool]]


@dataclass
class DrainResult:
    delivered: list[str] = field(default_factory=list)
    rescheduled: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class SubmissionRetryQueue:
    def __init__(
        self,
        store: StateStore,
        deliver: Deliver | None = None,
        *,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        base_delay: float = RETRY_BASE_DELAY_SECONDS,
    ) -> None:
        self.store = store
        self.deliver = deliver
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._draining = False

    def entries(self) -> list[RetryQueueEntry]:
        return self._load()

    def enqueue(
        self,
        payload: dict[str, Any],
        endpoint: str,
        now: float,
        *,
        submission_key: str | None = None,
        kind: str = "final",
    ) -> RetryQueueEntry | None:
        if kind == "final" and submission_key and self.is_delivered(submission_key):
            logger.info("[retry-queue] %s already delivered, not queueing", submission_key)
            return None

        entries = self._load()
        if submission_key:
            for entry in entries:
                if entry.submission_key == submission_key and entry.kind == kind:
                    entry.payload = dict(payload)
                    entry.endpoint = endpoint
                    self._save(entries)
                    logger.debug("[retry-queue] refreshed payload of %s", entry.id)
                    return entry

        entry = RetryQueueEntry(
            id=str(uuid.uuid4()),
            payload=dict(payload),
            endpoint=endpoint,
            attempt_count=0,
            next_retry_at=now + self.base_delay,
            created_at=now,
            submission_key=submission_key,
            kind=kind,
        )
        entries.append(entry)
        self._save(entries)
        logger.info("[retry-queue] queued %s submission %s for %s", kind, entry.id, endpoint)
        return entry

    def is_delivered(self, submission_key: str) -> bool:
        return submission_key in self._delivered()

    def record_delivery(self, submission_key: str, now: float) -> None:
        cutoff = now - DELIVERED_RETENTION_SECONDS
        # Keys carry the meeting date, so older entries can never be submitted again.
        delivered = {key: at for key, at in self._delivered().items() if at >= cutoff}
        delivered[submission_key] = now
        self._write(DELIVERED_KEY, delivered)

    async def drain(self, now: float) -> DrainResult:
        """Attempt every due entry once. Concurrent drains are no-ops."""
        result = DrainResult()
        if self._draining or self.deliver is None:
            return result
        self._draining = True
        try:
            due = [entry for entry in self._load() if entry.next_retry_at <= now]
            for entry in due:
                await self._attempt(entry, now, result)
        finally:
            self._draining = False
        return result

    def failures(self) -> list[dict[str, Any]]:
        value = self._read(FAILURES_KEY)
        return list(value) if isinstance(value, list) else []

    def stats(self) -> dict[str, Any]:
        entries = self._load()
        failures = self.failures()
        return {
            "pending": len(entries),
            "delivered": len(self._delivered()),
            "failed": len(failures),
            "nextRetryAt": min((entry.next_retry_at for entry in entries), default=None),
            "lastFailure": failures[-1] if failures else None,
        }

    async def _attempt(self, entry: RetryQueueEntry, now: float, result: DrainResult) -> None:
        assert self.deliver is not None
        if entry.kind == "final" and entry.submission_key and self.is_delivered(entry.submission_key):
            self._remove(entry.id)
            result.skipped.append(entry.id)
            return

        error = "delivery failed"
        try:
            ok = await self.deliver(entry.endpoint, entry.payload)
        except Exception as exc:
            logger.exception("[retry-queue] delivery of %s raised", entry.id)
            ok = False
            error = f"{type(exc).__name__}: {exc}"

        # Re-read: the queue may have changed while the request was in flight.
        entries = self._load()
        current = next((item for item in entries if item.id == entry.id), None)
        if current is None:
            return

        if ok:
            entries.remove(current)
            self._save(entries)
            if current.kind == "final" and current.submission_key:
                self.record_delivery(current.submission_key, now)
            result.delivered.append(current.id)
            logger.info("[retry-queue] delivered %s after %d retries", current.id, current.attempt_count + 1)
            return

        current.attempt_count += 1
        current.last_error = error
        if current.attempt_count >= self.max_attempts:
            entries.remove(current)
            self._save(entries)
            self.record_failure(
                current.submission_key,
                current.endpoint,
                now,
                kind=current.kind,
                attempt_count=current.attempt_count,
                error=current.last_error,
                entry_id=current.id,
            )
            result.dropped.append(current.id)
            logger.error(
                "[retry-queue] dropping %s submission %s after %d attempts",
                current.kind,
                current.id,
                current.attempt_count,
            )
            return

        current.next_retry_at = now + self.base_delay * (2**current.attempt_count)
        self._save(entries)
        result.rescheduled.append(current.id)
        logger.warning(
            "[retry-queue] attempt %d/%d failed for %s, next at %.1f",
            current.attempt_count,
            self.max_attempts,
            current.id,
            current.next_retry_at,
        )

    def record_failure(
        self,
        submission_key: str | None,
        endpoint: str,
        now: float,
        *,
        kind: str,
        attempt_count: int,
        error: str | None = None,
        entry_id: str | None = None,
    ) -> None:
        """Append to the dropped-submission log read by ``failures()``."""
        failures = self.failures()
        failures.append(
            {
                "id": entry_id,
                "endpoint": endpoint,
                "submissionKey": submission_key,
                "kind": kind,
                "attemptCount": attempt_count,
                "lastError": error,
                "status": "dropped",
                "droppedAt": now,
            }
        )
        self._write(FAILURES_KEY, failures[-MAX_FAILURE_LOG:])

    def _remove(self, entry_id: str) -> None:
        entries = [entry for entry in self._load() if entry.id != entry_id]
        self._save(entries)

    def _load(self) -> list[RetryQueueEntry]:
        value = self._read(RETRY_QUEUE_KEY)
        if not isinstance(value, list):
            return []
        return [RetryQueueEntry.from_dict(item) for item in value if isinstance(item, dict)]

    def _save(self, entries: list[RetryQueueEntry]) -> None:
        self._write(RETRY_QUEUE_KEY, [entry.to_dict() for entry in entries])

    def _delivered(self) -> dict[str, float]:
        value = self._read(DELIVERED_KEY)
        return dict(value) if isinstance(value, dict) else {}

    def _read(self, key: str) -> Any | None:
        try:
            return self.store.get(Scope.LOCAL, key)
        except StoreError as exc:
            logger.warning("[retry-queue] could not read %s: %s", key, exc)
            return None

    def _write(self, key: str, value: Any) -> None:
        try:
            self.store.set(Scope.LOCAL, key, value)
        except StoreError as exc:
            logger.warning("[retry-queue] could not write %s: %s", key, exc)
