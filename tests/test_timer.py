import time
from datetime import timedelta

from assessment_service import crud
from assessment_service.session import (
    AssessmentSession, SessionTimer, TimerRegistry, make_expiry_handler, rearm_timers,
)

from .conftest import MC_OPTIONS, build_test


def wait_for(predicate, timeout=3.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def status_of(SessionLocal, assignment_id):
    s = SessionLocal()
    try:
        return crud.get_assignment(s, assignment_id).status
    finally:
        s.close()


def test_timer_fires_once_when_deadline_has_passed():
    fired = []
    timer = SessionTimer(5, crud.utcnow() - timedelta(seconds=1), fired.append, tick_seconds=0.05)
    timer.start()
    timer.join(timeout=1)
    assert fired == [5]
    assert timer.expired is True


def test_timer_recomputes_from_wall_clock():
    now = [crud.utcnow()]
    fired = []
    timer = SessionTimer(1, now[0] + timedelta(seconds=30), fired.append, tick_seconds=0.02, clock=lambda: now[0])
    timer.start()
    time.sleep(0.1)
    assert fired == []
    assert timer.remaining() == 30

    # the respondent was away; the clock jumped past the deadline
    now[0] += timedelta(minutes=5)
    timer.join(timeout=1)
    assert fired == [1]


def test_cancelled_timer_never_fires():
    fired = []
    timer = SessionTimer(2, crud.utcnow() + timedelta(hours=1), fired.append, tick_seconds=0.02)
    timer.start()
    timer.cancel()
    timer.join(timeout=1)
    assert not timer.is_alive()
    assert fired == []
    assert timer.expired is False


def test_registry_schedule_is_idempotent_and_cancellable():
    registry = TimerRegistry(lambda aid: None, tick_seconds=0.02)
    deadline = crud.utcnow() + timedelta(hours=1)
    first = registry.schedule(3, deadline)
    assert registry.schedule(3, deadline) is first
    assert registry.active() == [3]

    assert registry.cancel(3) is True
    assert registry.cancel(3) is False
    assert registry.active() == []
    first.join(timeout=1)


def test_expiry_submits_with_responses_saved_before_it(SessionLocal, db):
    _, qs, a = build_test(db, [
        ("multiple_choice", {"options": MC_OPTIONS}),
        ("likert_scale", {"scale": 5}),
    ], duration_minutes=1)
    start = crud.utcnow()
    AssessmentSession(db, a.id, clock=lambda: start).open()
    AssessmentSession(db, a.id, clock=lambda: start).answer(qs[0].id, "c")

    notified = []

    class RecordingNotifier:
        def notify(self, assignment, breakdown, *, reason):
            notified.append((assignment.id, breakdown.final_percentage, reason))

    registry = TimerRegistry(
        make_expiry_handler(SessionLocal, RecordingNotifier()),
        tick_seconds=0.02,
        clock=lambda: start + timedelta(minutes=2),
    )
    timer = registry.schedule(a.id, start + timedelta(minutes=1))
    timer.join(timeout=2)

    db.refresh(a)
    assert a.status == "completed"
    assert [(r.question_id, r.value) for r in crud.list_responses(db, a.id)] == [(qs[0].id, "c")]
    # 10 of (10 + 5)
    assert notified == [(a.id, 67, "submitted")]
    assert registry.active() == []


def test_expiry_after_manual_submit_is_a_no_op(SessionLocal, db):
    _, _, a = build_test(db, [("likert_scale", {"scale": 5})], duration_minutes=1)
    session = AssessmentSession(db, a.id)
    session.open()
    session.submit(5)

    notified = []

    class RecordingNotifier:
        def notify(self, assignment, breakdown, *, reason):
            notified.append(reason)

    make_expiry_handler(SessionLocal, RecordingNotifier())(a.id)
    db.refresh(a)
    assert a.time_spent_seconds == 5
    assert notified == []


def test_rearm_schedules_running_timed_sessions(SessionLocal, db):
    _, _, timed = build_test(db, [("likert_scale", {})], duration_minutes=0)
    _, _, untimed = build_test(db, [("likert_scale", {})])
    AssessmentSession(db, timed.id).open()
    AssessmentSession(db, untimed.id).open()

    registry = TimerRegistry(make_expiry_handler(SessionLocal), tick_seconds=0.02)
    assert rearm_timers(SessionLocal, registry) == 1

    assert wait_for(lambda: status_of(SessionLocal, timed.id) == "completed")
    db.refresh(untimed)
    assert untimed.status == "in_progress"
