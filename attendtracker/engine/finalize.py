"""Turns competing "meeting ended" signals into one finalize call."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from attendtracker.engine.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

CRITICAL_DELAY_SECONDS = 0.2
NORMAL_DELAY_SECONDS = 2.0
MAX_FINALIZE_ATTEMPTS = 3
VISIBILITY_LOSS_THRESHOLD_SECONDS = 60.0

END_OF_MEETING_MARKERS = (
    "you left the meeting",
    "you've left the meeting",
    "the meeting has ended",
    "this meeting has ended",
    "meeting ended",
    "you've been removed from the meeting",
    "you have been removed from the meeting",
    "return to home screen",
)


class FinalizeSignal(str, Enum):
    EXPLICIT_CLOSE = "explicit_close"
    END_MARKER = "end_marker"
    VISIBILITY_LOST = "visibility_lost"
    HOST_ABSENT = "host_absent"
    LIVENESS_STALE = "liveness_stale"


CRITICAL_SIGNALS = frozenset({FinalizeSignal.EXPLICIT_CLOSE, FinalizeSignal.END_MARKER})


class FinalizeState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class FinalizeOutcome:
    completed: bool
    report: dict[str, Any] | None = None


FinalizeAction = Callable[[FinalizeSignal], Awaitable[FinalizeOutcome]]


def detect_end_marker(text: str | None) -> str | None:
    lowered = (text or "").lower()
    for marker in END_OF_MEETING_MARKERS:
        if marker in lowered:
            return marker
    return None


class FinalizationCoordinator:
    def __init__(
        self,
        scheduler: Scheduler,
        action: FinalizeAction,
        *,
        critical_delay: float = CRITICAL_DELAY_SECONDS,
        normal_delay: float = NORMAL_DELAY_SECONDS,
        max_attempts: int = MAX_FINALIZE_ATTEMPTS,
        visibility_threshold: float = VISIBILITY_LOSS_THRESHOLD_SECONDS,
        on_exhausted: Callable[[FinalizeSignal], None] | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.action = action
        self.critical_delay = critical_delay
        self.normal_delay = normal_delay
        self.max_attempts = max_attempts
        self.visibility_threshold = visibility_threshold
        self.on_exhausted = on_exhausted
        self.state = FinalizeState.IDLE
        self.attempts = 0
        self.report: dict[str, Any] | None = None
        self.trigger: FinalizeSignal | None = None
        self._pending_signal: FinalizeSignal | None = None
        self._timer: TimerHandle | None = None
        self._visibility_timer: TimerHandle | None = None

    @property
    def started(self) -> bool:
        return self.state in (FinalizeState.FINALIZING, FinalizeState.FINALIZED, FinalizeState.EXHAUSTED)

    def signal(self, signal: FinalizeSignal) -> bool:
        """Schedule a debounced finalize; returns False once finalization has begun."""
        if self.started:
            logger.debug("[finalize] ignoring %s, already %s", signal.value, self.state.value)
            return False

        delay = self.critical_delay if signal in CRITICAL_SIGNALS else self.normal_delay
        if self._timer is not None and self._timer.active:
            # A normal signal never postpones a pending critical one.
            if self._pending_signal in CRITICAL_SIGNALS and signal not in CRITICAL_SIGNALS:
                logger.debug("[finalize] keeping critical deadline over %s", signal.value)
                return True
            self._timer.cancel()
            # The first signal stays the trigger unless a critical one replaces a normal one.
            upgrade = signal in CRITICAL_SIGNALS and self._pending_signal not in CRITICAL_SIGNALS
            if self._pending_signal is not None and not upgrade:
                signal = self._pending_signal

        self._pending_signal = signal
        self._timer = self.scheduler.call_later(delay, self._fire)
        self.state = FinalizeState.SCHEDULED
        logger.info("[finalize] %s signal, finalizing in %.1fs", signal.value, delay)
        return True

    def visibility_changed(self, hidden: bool) -> None:
        if not hidden:
            if self._visibility_timer is not None:
                self._visibility_timer.cancel()
                self._visibility_timer = None
            return
        if self._visibility_timer is None or not self._visibility_timer.active:
            self._visibility_timer = self.scheduler.call_later(
                self.visibility_threshold,
                lambda: self.signal(FinalizeSignal.VISIBILITY_LOST),
            )

    async def finalize_now(self, signal: FinalizeSignal = FinalizeSignal.EXPLICIT_CLOSE) -> dict[str, Any] | None:
        return await self.run(signal)

    async def run(self, signal: FinalizeSignal) -> dict[str, Any] | None:
        if self.started:
            return self.report
        self._cancel_timer()

        self.state = FinalizeState.FINALIZING
        self.attempts += 1
        self.trigger = self.trigger or signal
        logger.info("[finalize] attempt %d/%d (%s)", self.attempts, self.max_attempts, signal.value)
        try:
            outcome = await self.action(signal)
        except Exception:
            logger.exception("[finalize] attempt %d raised", self.attempts)
            outcome = FinalizeOutcome(completed=False)

        if outcome.completed:
            self.state = FinalizeState.FINALIZED
            self.report = outcome.report
            return self.report

        if self.attempts >= self.max_attempts:
            self.state = FinalizeState.EXHAUSTED
            logger.error("[finalize] giving up after %d attempts", self.attempts)
            if self.on_exhausted is not None:
                self.on_exhausted(signal)
            return self.report

        self.state = FinalizeState.FAILED
        self.signal(signal)
        return None

    def reset(self) -> None:
        self._cancel_timer()
        if self._visibility_timer is not None:
            self._visibility_timer.cancel()
            self._visibility_timer = None
        self.state = FinalizeState.IDLE
        self.attempts = 0
        self.report = None
        self.trigger = None

    async def _fire(self) -> None:
        self._timer = None
        signal = self._pending_signal or FinalizeSignal.LIVENESS_STALE
        await self.run(signal)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
