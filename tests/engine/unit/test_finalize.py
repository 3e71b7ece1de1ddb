import pytest

from attendtracker.engine.finalize import (
    FinalizationCoordinator,
    FinalizeOutcome,
    FinalizeSignal,
    FinalizeState,
    detect_end_marker,
)
from attendtracker.engine.scheduler import ManualScheduler


class _Action:
    def __init__(self, outcomes: list[FinalizeOutcome] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: list[tuple[FinalizeSignal, float]] = []
        self.scheduler: ManualScheduler | None = None

    async def __call__(self, signal: FinalizeSignal) -> FinalizeOutcome:
        self.calls.append((signal, self.scheduler.now()))
        if self.outcomes:
            return self.outcomes.pop(0)
        return FinalizeOutcome(completed=True, report={"endedBy": signal.value})


def _coordinator(outcomes: list[FinalizeOutcome] | None = None) -> tuple[FinalizationCoordinator, _Action, ManualScheduler]:
    scheduler = ManualScheduler()
    action = _Action(outcomes)
    action.scheduler = scheduler
    return FinalizationCoordinator(scheduler, action), action, scheduler


def test_detect_end_marker_matches_case_insensitively() -> None:
    assert detect_end_marker("You left the meeting\nRejoin") == "you left the meeting"
    assert detect_end_marker("Return to home screen") == "return to home screen"
    assert detect_end_marker("Alice is presenting") is None
    assert detect_end_marker(None) is None


@pytest.mark.asyncio
async def test_critical_signal_finalizes_after_short_delay() -> None:
    coordinator, action, scheduler = _coordinator()

    coordinator.signal(FinalizeSignal.EXPLICIT_CLOSE)
    assert coordinator.state is FinalizeState.SCHEDULED
    await scheduler.advance(0.2)

    assert action.calls == [(FinalizeSignal.EXPLICIT_CLOSE, pytest.approx(0.2))]
    assert coordinator.state is FinalizeState.FINALIZED


@pytest.mark.asyncio
async def test_normal_signal_does_not_push_back_critical_deadline() -> None:
    coordinator, action, scheduler = _coordinator()

    coordinator.signal(FinalizeSignal.END_MARKER)
    coordinator.signal(FinalizeSignal.HOST_ABSENT)
    await scheduler.advance(5)

    assert action.calls == [(FinalizeSignal.END_MARKER, pytest.approx(0.2))]


@pytest.mark.asyncio
async def test_later_normal_signal_reschedules_pending_normal_signal() -> None:
    coordinator, action, scheduler = _coordinator()

    coordinator.signal(FinalizeSignal.HOST_ABSENT)
    await scheduler.advance(1.5)
    coordinator.signal(FinalizeSignal.VISIBILITY_LOST)
    await scheduler.advance(1)
    assert action.calls == []

    await scheduler.advance(5)

    assert action.calls == [(FinalizeSignal.HOST_ABSENT, pytest.approx(3.5))]


@pytest.mark.asyncio
async def test_critical_signal_preempts_pending_normal_signal() -> None:
    coordinator, action, scheduler = _coordinator()

    coordinator.signal(FinalizeSignal.HOST_ABSENT)
    await scheduler.advance(1)
    coordinator.signal(FinalizeSignal.EXPLICIT_CLOSE)
    await scheduler.advance(5)

    assert action.calls == [(FinalizeSignal.EXPLICIT_CLOSE, pytest.approx(1.2))]


@pytest.mark.asyncio
async def test_finalize_runs_once_for_overlapping_signals() -> None:
    coordinator, action, scheduler = _coordinator()

    first = await coordinator.finalize_now()
    assert coordinator.signal(FinalizeSignal.END_MARKER) is False
    second = await coordinator.finalize_now()
    await scheduler.advance(10)

    assert len(action.calls) == 1
    assert first == second == {"endedBy": "explicit_close"}


@pytest.mark.asyncio
async def test_failed_attempt_is_rescheduled_until_exhausted() -> None:
    failure = FinalizeOutcome(completed=False)
    coordinator, action, scheduler = _coordinator([failure, failure, failure])

    coordinator.signal(FinalizeSignal.HOST_ABSENT)
    await scheduler.advance(30)

    assert len(action.calls) == 3
    assert coordinator.state is FinalizeState.EXHAUSTED
    assert coordinator.attempts == 3


@pytest.mark.asyncio
async def test_exhaustion_hook_runs_once_with_last_signal() -> None:
    failure = FinalizeOutcome(completed=False)
    scheduler = ManualScheduler()
    action = _Action([failure, failure, failure])
    action.scheduler = scheduler
    exhausted: list[FinalizeSignal] = []
    coordinator = FinalizationCoordinator(scheduler, action, on_exhausted=exhausted.append)

    coordinator.signal(FinalizeSignal.END_MARKER)
    await scheduler.advance(30)

    assert exhausted == [FinalizeSignal.END_MARKER]
    assert coordinator.signal(FinalizeSignal.EXPLICIT_CLOSE) is False


@pytest.mark.asyncio
async def test_action_exception_counts_as_failed_attempt() -> None:
    coordinator, action, scheduler = _coordinator()

    async def explode(signal: FinalizeSignal) -> FinalizeOutcome:
        raise RuntimeError("backend exploded")

    coordinator.action = explode
    await coordinator.finalize_now(FinalizeSignal.END_MARKER)

    assert coordinator.state is FinalizeState.SCHEDULED
    assert coordinator.attempts == 1


@pytest.mark.asyncio
async def test_visibility_loss_signals_after_threshold_unless_visible_again() -> None:
    coordinator, action, scheduler = _coordinator()

    coordinator.visibility_changed(hidden=True)
    await scheduler.advance(30)
    coordinator.visibility_changed(hidden=False)
    await scheduler.advance(120)
    assert action.calls == []

    coordinator.visibility_changed(hidden=True)
    await scheduler.advance(62.5)

    assert [call[0] for call in action.calls] == [FinalizeSignal.VISIBILITY_LOST]


def test_reset_returns_to_idle() -> None:
    coordinator, _, scheduler = _coordinator()
    coordinator.signal(FinalizeSignal.HOST_ABSENT)

    coordinator.reset()

    assert coordinator.state is FinalizeState.IDLE
    assert scheduler.pending() == 0
