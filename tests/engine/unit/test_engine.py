import httpx
import pytest

from attendtracker.engine.engine import FINAL_REPORT_KEY, LIVE_SNAPSHOT_KEY, AttendanceEngine
from attendtracker.engine.models import Observation, Scope, SessionState
from attendtracker.engine.scheduler import ManualScheduler
from attendtracker.engine.store import InMemoryStateStore
from attendtracker.engine.submitter import FINAL_ENDPOINT, ReportSubmitter

HOST = Observation(display_name="Hannah", identity_hint="avatar-host", is_host=True)
ALICE = Observation(display_name="Alice", identity_hint="avatar-alice")
BOB = Observation(display_name="Bob", identity_hint="avatar-bob")


def _engine(store: InMemoryStateStore | None = None, submitter: ReportSubmitter | None = None, **options):
    scheduler = ManualScheduler()
    engine = AttendanceEngine(store or InMemoryStateStore(), scheduler, submitter=submitter, **options)
    return engine, scheduler


def _statuses(snapshot: dict) -> dict[str, str]:
    return {item["displayName"]: item["status"] for item in snapshot["participants"]}


async def _run(engine: AttendanceEngine, scheduler: ManualScheduler, start: int, stop: int, frame: list, key="meet-1"):
    result = None
    for at in range(start, stop + 1, 10):
        await scheduler.advance_to(at)
        result = engine.process_tick(key, frame)
    return result


class _Backend:
    def __init__(self, statuses: list[int]) -> None:
        self.statuses = list(statuses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if status == 401:
            return httpx.Response(401, json={"message": "Token expired"})
        return httpx.Response(status, json={})

    def submitter(self) -> ReportSubmitter:
        return ReportSubmitter(httpx.AsyncClient(base_url="http://backend.test", transport=httpx.MockTransport(self)))


def test_host_lock_with_threshold_two_starts_session_on_second_tick() -> None:
    engine, scheduler = _engine(confirmation_threshold=2)

    first = engine.process_tick("meet-1", [HOST, ALICE])

    assert first.snapshot["hostLocked"] is False
    assert first.snapshot["sessionState"] == "idle"

    second = engine.process_tick("meet-1", [HOST, ALICE])

    kinds = [event["kind"] for event in second.engine_events]
    assert "host_locked" in kinds
    assert "session_started" in kinds
    assert second.snapshot["hostLocked"] is True
    assert second.snapshot["lockedHostInfo"]["identityKey"] == "avatar-host"
    assert second.snapshot["sessionState"] == "active"


def test_host_lock_with_threshold_one_starts_session_immediately() -> None:
    engine, _ = _engine(confirmation_threshold=1)

    result = engine.process_tick("meet-1", [HOST, ALICE])

    assert result.snapshot["hostLocked"] is True
    assert result.snapshot["sessionState"] == "active"
    assert engine.store.get(Scope.LOCAL, LIVE_SNAPSHOT_KEY) == result.snapshot


def test_at_most_one_participant_is_marked_host() -> None:
    engine, _ = _engine(confirmation_threshold=1)
    impostor = Observation(display_name="Bob", identity_hint="avatar-bob", is_host=True)

    engine.process_tick("meet-1", [HOST, impostor])
    result = engine.process_tick("meet-1", [Observation(display_name="Hannah", identity_hint="avatar-host"), impostor])

    hosts = [item["displayName"] for item in result.snapshot["participants"] if item["isHost"]]
    assert hosts == ["Hannah"]
    assert "host_conflict_ignored" in [event["kind"] for event in result.engine_events]


def test_second_meeting_is_blocked_while_first_session_is_active() -> None:
    engine, _ = _engine(confirmation_threshold=1)
    engine.process_tick("meet-1", [HOST])

    blocked = engine.process_tick("meet-2", [ALICE])
    start = engine.start_session("meet-2")

    assert blocked.blocked is True
    assert blocked.snapshot["sessionKey"] == "meet-1"
    assert start.blocked is True
    assert start.blocked_by == "meet-1"


@pytest.mark.asyncio
async def test_participant_missing_two_ticks_is_absent_by_fourth_tick() -> None:
    engine, scheduler = _engine(confirmation_threshold=1)

    await _run(engine, scheduler, 0, 10, [HOST, ALICE])
    third = await _run(engine, scheduler, 20, 20, [HOST])
    assert third.snapshot["participants"][1]["isLive"] is True

    fourth = await _run(engine, scheduler, 30, 30, [HOST])

    assert _statuses(fourth.snapshot)["Alice"] == "absent"


@pytest.mark.asyncio
async def test_leaving_shortly_after_host_counts_as_present() -> None:
    engine, scheduler = _engine(confirmation_threshold=1, missed_threshold=3, permanent_host_lock=True)

    await _run(engine, scheduler, 0, 100, [HOST, ALICE, BOB])
    await _run(engine, scheduler, 110, 150, [ALICE, BOB])
    await _run(engine, scheduler, 160, 500, [BOB])
    result = await _run(engine, scheduler, 510, 520, [])

    statuses = _statuses(result.snapshot)
    assert statuses == {"Hannah": "present", "Alice": "present", "Bob": "left"}
    assert result.snapshot["lockedHostInfo"]["hasLeft"] is True


@pytest.mark.asyncio
async def test_reappearing_participant_resumes_accrual_from_stored_total() -> None:
    engine, scheduler = _engine(confirmation_threshold=1)

    await _run(engine, scheduler, 0, 120, [HOST, ALICE])
    gone = await _run(engine, scheduler, 130, 190, [HOST])
    alice = engine.directory.get("avatar-alice")
    assert gone.snapshot["participants"][1]["attendedSeconds"] == 120
    assert alice.is_live is False

    await _run(engine, scheduler, 200, 200, [HOST, ALICE])
    assert alice.attended_seconds == 120
    back = await _run(engine, scheduler, 210, 210, [HOST, ALICE])

    assert alice.attended_seconds == 130
    assert _statuses(back.snapshot)["Alice"] == "present"


@pytest.mark.asyncio
async def test_hint_seen_later_keeps_record_lock_and_attendance() -> None:
    engine, scheduler = _engine(confirmation_threshold=1)
    anonymous_host = Observation(display_name="Hannah", is_host=True)

    await _run(engine, scheduler, 0, 30, [anonymous_host])
    result = await _run(engine, scheduler, 40, 40, [Observation(display_name="Hannah", identity_hint="avatar-host")])

    assert [item["identityKey"] for item in result.snapshot["participants"]] == ["name:hannah"]
    assert result.snapshot["participants"][0]["attendedSeconds"] == 40
    assert result.snapshot["hostLocked"] is True


@pytest.mark.asyncio
async def test_overlapping_end_signals_finalize_once() -> None:
    engine, scheduler = _engine(confirmation_threshold=1)
    await _run(engine, scheduler, 0, 60, [HOST, ALICE])

    engine.request_end()
    assert engine.observe_page_text("The meeting has ended") is True
    await scheduler.advance(1)
    report = engine.final_report
    again = await engine.end_now()
    ignored = engine.process_tick("meet-1", [HOST, ALICE])

    assert report is not None
    assert again is report
    assert engine.finalizer.attempts == 1
    assert report["endedBy"] == "explicit_close"
    assert report["submissionKey"] == "meet-1:1970-01-01"
    assert _statuses(report) == {"Hannah": "present", "Alice": "present"}
    assert all(item["isLive"] is False for item in report["participants"])
    assert engine.sessions.load().state is SessionState.ENDED
    assert engine.store.get(Scope.LOCAL, FINAL_REPORT_KEY) == report
    assert ignored.engine_events[0]["kind"] == "tick_ignored"


@pytest.mark.asyncio
async def test_page_text_without_marker_does_not_finalize() -> None:
    engine, scheduler = _engine(confirmation_threshold=1)
    engine.process_tick("meet-1", [HOST])

    assert engine.observe_page_text("Alice is presenting") is False
    await scheduler.advance(10)

    assert engine.final_report is None


@pytest.mark.asyncio
async def test_host_unlock_triggers_finalize_with_last_known_host() -> None:
    engine, scheduler = _engine(confirmation_threshold=1, missed_threshold=3)

    await _run(engine, scheduler, 0, 20, [HOST, ALICE])
    unlocked = await _run(engine, scheduler, 30, 50, [ALICE])
    assert "host_unlocked" in [event["kind"] for event in unlocked.engine_events]

    await scheduler.advance(2)

    report = engine.final_report
    assert report is not None
    assert report["endedBy"] == "host_absent"
    assert report["hostInfo"]["identityKey"] == "avatar-host"
    assert _statuses(report) == {"Hannah": "present", "Alice": "present"}
    hosts = [item["displayName"] for item in report["participants"] if item["isHost"]]
    assert hosts == ["Hannah"]


@pytest.mark.asyncio
async def test_liveness_check_finalizes_when_nobody_is_seen() -> None:
    engine, scheduler = _engine(confirmation_threshold=1)
    engine.process_tick("meet-1", [HOST])

    await scheduler.advance_to(100)
    engine.check_liveness()
    assert engine.finalizer.state.value == "idle"

    await scheduler.advance_to(121)
    engine.check_liveness()
    await scheduler.advance(2)

    assert engine.final_report["endedBy"] == "liveness_stale"


@pytest.mark.asyncio
async def test_failed_final_submission_is_delivered_from_retry_queue() -> None:
    backend = _Backend([503, 200])
    engine, scheduler = _engine(submitter=backend.submitter(), confirmation_threshold=1)
    await _run(engine, scheduler, 0, 30, [HOST, ALICE])

    report = await engine.end_now()

    assert report is not None
    assert engine.sessions.load().state is SessionState.ENDING
    assert len(engine.retry_queue.entries()) == 1

    await scheduler.advance(2)
    await engine.drain_retry_queue()

    assert engine.retry_queue.entries() == []
    assert engine.retry_queue.is_delivered(report["submissionKey"]) is True
    assert engine.sessions.load().state is SessionState.ENDED
    assert [request.url.path for request in backend.requests] == [FINAL_ENDPOINT, FINAL_ENDPOINT]


@pytest.mark.asyncio
async def test_final_submission_dropped_after_three_retries() -> None:
    backend = _Backend([503])
    engine, scheduler = _engine(submitter=backend.submitter(), confirmation_threshold=1)
    await _run(engine, scheduler, 0, 30, [HOST, ALICE])
    await engine.end_now()

    for at in (32, 36, 44):
        await scheduler.advance_to(at)
        await engine.drain_retry_queue()

    assert len(backend.requests) == 4
    assert engine.retry_queue.entries() == []
    assert len(engine.retry_queue.failures()) == 1
    assert engine.sessions.load().state is SessionState.ENDED
    assert "final_report_dropped" in [notice["kind"] for notice in engine.notices]


@pytest.mark.asyncio
async def test_progress_auth_failure_raises_notice_once_and_queues_retry() -> None:
    backend = _Backend([401])
    engine, _ = _engine(submitter=backend.submitter(), confirmation_threshold=1)
    engine.process_tick("meet-1", [HOST, ALICE])

    assert await engine.broadcast_progress() is False
    assert await engine.broadcast_progress() is False

    assert [notice["kind"] for notice in engine.notices] == ["auth_failure"]
    entries = engine.retry_queue.entries()
    assert len(entries) == 1
    assert entries[0].kind == "progress"
    assert entries[0].submission_key == "progress:meet-1"


def test_restarted_engine_restores_host_lock_for_same_meeting() -> None:
    store = InMemoryStateStore()
    first, _ = _engine(store=store, confirmation_threshold=2)
    first.process_tick("meet-1", [HOST, ALICE])
    first.process_tick("meet-1", [HOST, ALICE])

    second, _ = _engine(store=store, confirmation_threshold=2)
    result = second.process_tick("meet-1", [HOST, ALICE])

    assert result.engine_events[0] == {"kind": "meeting_tracked", "sessionKey": "meet-1", "hostRestored": True}
    assert result.snapshot["hostLocked"] is True
    assert result.snapshot["sessionState"] == "active"


def test_clear_resets_tracking_state() -> None:
    engine, _ = _engine(confirmation_threshold=1)
    engine.process_tick("meet-1", [HOST, ALICE])

    engine.clear()
    snapshot = engine.snapshot()

    assert snapshot["sessionKey"] is None
    assert snapshot["participants"] == []
    assert snapshot["hostLocked"] is False
    assert snapshot["sessionState"] == "idle"
    assert engine.store.get(Scope.LOCAL, LIVE_SNAPSHOT_KEY) is None


@pytest.mark.asyncio
async def test_periodic_timers_sweep_expired_tokens_until_stopped() -> None:
    engine, scheduler = _engine()
    engine.store_token("meet-x", "dashboard-token", expires_at=100)

    engine.start()
    await scheduler.advance_to(601)

    assert engine.store.keys(Scope.SYNC, prefix="token_") == []

    engine.stop()
    assert scheduler.pending() == 0


class _CorruptBody:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(200, headers={"content-encoding": "gzip"}, content=b"plain text, not gzip")


class _ExplodingSubmitter(ReportSubmitter):
    async def submit_final(self, payload: dict):
        raise RuntimeError("serializer exploded")


@pytest.mark.asyncio
async def test_undecodable_final_response_is_queued_then_dropped_and_settled() -> None:
    backend = _CorruptBody()
    submitter = ReportSubmitter(
        httpx.AsyncClient(base_url="http://backend.test", transport=httpx.MockTransport(backend))
    )
    engine, scheduler = _engine(submitter=submitter, confirmation_threshold=1)
    await _run(engine, scheduler, 0, 30, [HOST, ALICE])
    engine.request_end()
    await scheduler.advance(1)

    assert engine.finalizer.state.value == "finalized"
    assert engine.sessions.load().state is SessionState.ENDING
    assert len(engine.retry_queue.entries()) == 1

    await scheduler.advance_to(33)
    await engine.drain_retry_queue()
    assert engine.retry_queue.entries()[0].attempt_count == 1

    for at in (37, 45):
        await scheduler.advance_to(at)
        await engine.drain_retry_queue()

    assert len(backend.requests) == 4
    assert engine.retry_queue.entries() == []
    assert len(engine.retry_queue.failures()) == 1
    assert engine.sessions.load().state is SessionState.ENDED


@pytest.mark.asyncio
async def test_exhausted_finalize_hands_report_to_retry_queue() -> None:
    submitter = _ExplodingSubmitter(
        httpx.AsyncClient(base_url="http://backend.test", transport=httpx.MockTransport(_CorruptBody()))
    )
    engine, scheduler = _engine(submitter=submitter, confirmation_threshold=1)
    await _run(engine, scheduler, 0, 30, [HOST, ALICE])

    await engine.end_now()
    await scheduler.advance(1)

    assert engine.finalizer.state.value == "exhausted"
    assert engine.finalizer.attempts == 3
    entries = engine.retry_queue.entries()
    assert len(entries) == 1
    assert entries[0].submission_key == engine.final_report["submissionKey"]
    assert engine.sessions.load().state is SessionState.ENDING

    for at in (33, 37, 45):
        await scheduler.advance_to(at)
        await engine.drain_retry_queue()

    assert engine.retry_queue.entries() == []
    assert engine.retry_queue.failures()[0]["lastError"] == "RuntimeError: serializer exploded"
    assert engine.sessions.load().state is SessionState.ENDED
    assert "final_report_dropped" in [notice["kind"] for notice in engine.notices]


@pytest.mark.asyncio
async def test_notices_are_raised_again_for_the_next_meeting() -> None:
    engine, _ = _engine(confirmation_threshold=1)
    engine.process_tick("meet-1", [HOST])

    assert engine.raise_notice("unauthenticated", "No token") is True
    assert engine.raise_notice("unauthenticated", "No token") is False

    engine.clear()
    engine.process_tick("meet-2", [HOST])

    assert engine.raise_notice("unauthenticated", "No token") is True
    assert [notice["kind"] for notice in engine.notices] == ["unauthenticated"]


def test_tick_reports_new_and_unidentified_participants() -> None:
    engine, _ = _engine(confirmation_threshold=1)
    nameless = Observation(display_name="")

    first = engine.process_tick("meet-1", [HOST, ALICE, nameless])
    second = engine.process_tick("meet-1", [HOST, ALICE])

    first_kinds = {event["kind"]: event for event in first.engine_events}
    assert first_kinds["participants_created"]["identityKeys"] == ["avatar-host", "avatar-alice"]
    assert first_kinds["unidentified_observations"]["count"] == 1
    assert "participants_created" not in [event["kind"] for event in second.engine_events]
    assert first.snapshot["participants"][1]["statusLabel"] == "Just Joined"
