from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .errors import AssignmentClosed, AssignmentNotStarted, EmptyTest, QuestionNotFound
from .models import Assignment, Response
from .scoring import ScoreBreakdown

logger = logging.getLogger("assessment-service.session")


# -------------------------
# Deadline arithmetic
# -------------------------

def deadline_for(started_at: Optional[datetime], duration_minutes: Optional[int]) -> Optional[datetime]:
    if started_at is None or duration_minutes is None:
        return None
    return started_at + timedelta(minutes=duration_minutes)


def seconds_until(deadline: datetime, now: datetime) -> int:
    return max(0, int((deadline - now).total_seconds()))


def remaining_seconds(started_at: Optional[datetime], duration_minutes: Optional[int], now: datetime) -> Optional[int]:
    """
    Whole seconds left on a timed session, recomputed from the start time
    (never a running countdown). None when the session is untimed or not started.
    """
    deadline = deadline_for(started_at, duration_minutes)
    if deadline is None:
        return None
    return seconds_until(deadline, now)


def stored_value(value: Any) -> Optional[str]:
    """Text form of an answer; JSON 2.0 is stored as "2" so it matches option values."""
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


# -------------------------
# Session state machine
# -------------------------

@dataclass
class SubmissionResult:
    assignment: Assignment
    breakdown: ScoreBreakdown
    submitted: bool  # False when another submit got there first
    forced: bool = False


@dataclass
class AnswerReceipt:
    question_id: int
    saved: bool
    response: Optional[Response] = None
    warning: Optional[str] = None


class AutosaveMonitor:
    """
    Counts consecutive autosave failures per assignment. A single dropped
    save is silent; a warning is produced once failures keep recurring.
    """

    def __init__(self, warning_threshold: int = 2):
        self.warning_threshold = max(1, warning_threshold)
        self._failures: dict[int, int] = {}
        self._lock = threading.Lock()

    def record_failure(self, assignment_id: int) -> int:
        with self._lock:
            n = self._failures.get(assignment_id, 0) + 1
            self._failures[assignment_id] = n
            return n

    def record_success(self, assignment_id: int) -> None:
        with self._lock:
            self._failures.pop(assignment_id, None)

    def failures(self, assignment_id: int) -> int:
        with self._lock:
            return self._failures.get(assignment_id, 0)

    def warning_for(self, assignment_id: int) -> Optional[str]:
        n = self.failures(assignment_id)
        if n < self.warning_threshold:
            return None
        return f"{n} answers in a row could not be saved; unsaved answers count as unanswered"


class AssessmentSession:
    """
    One respondent's attempt at a test: pending -> in_progress -> completed.

    Every transition is a guarded conditional update, so a timer-driven
    submit and an explicit submit can race safely: whichever lands first
    completes the assignment and the other becomes a no-op.
    """

    def __init__(self, db: Session, assignment_id: int, *, clock: Callable[[], datetime] = crud.utcnow):
        self.db = db
        self.clock = clock
        self.assignment = crud.require_assignment(db, assignment_id)
        self.test = crud.require_test(db, self.assignment.test_id)

    @property
    def status(self) -> str:
        return self.assignment.status

    @property
    def deadline(self) -> Optional[datetime]:
        return deadline_for(self.assignment.started_at, self.test.duration_minutes)

    def remaining_seconds(self) -> Optional[int]:
        if self.status != "in_progress":
            return None
        return remaining_seconds(self.assignment.started_at, self.test.duration_minutes, self.clock())

    def is_expired(self) -> bool:
        remaining = self.remaining_seconds()
        return remaining is not None and remaining <= 0

    def enforce_deadline(self) -> Optional[SubmissionResult]:
        """Force-submit if the time limit has run out. Safe to call on every access."""
        if self.is_expired():
            return self.submit(forced=True)
        return None

    def open(self) -> Assignment:
        if self.status == "completed":
            raise AssignmentClosed()

        if self.status == "pending":
            if not crud.list_questions(self.db, self.test.id):
                raise EmptyTest()
            if crud.mark_started(self.db, self.assignment, self.clock()):
                logger.info("Assignment %s started (user %s)", self.assignment.id, self.assignment.user_id)
            return self.assignment

        self.enforce_deadline()
        return self.assignment

    def _require_in_progress(self) -> None:
        if self.status == "pending":
            raise AssignmentNotStarted()
        if self.status == "completed":
            raise AssignmentClosed()

    def _question(self, question_id: int):
        q = crud.get_question(self.db, question_id)
        if not q or q.test_id != self.test.id:
            raise QuestionNotFound()
        return q

    def answer(self, question_id: int, value: Any) -> Response:
        self.enforce_deadline()
        self._require_in_progress()

        q = self._question(question_id)
        stored = stored_value(value)
        r = crud.upsert_response(self.db, self.assignment, q, stored, self.clock())
        if r is None:
            # submitted between our status check and the write
            self.db.refresh(self.assignment)
            raise AssignmentClosed()
        return r

    def answer_many(self, answers: list[tuple[int, Any]]) -> list[Response]:
        self.enforce_deadline()
        self._require_in_progress()
        for question_id, _ in answers:
            self._question(question_id)
        return [self.answer(question_id, value) for question_id, value in answers]

    def autosave(self, question_id: int, value: Any, monitor: AutosaveMonitor) -> AnswerReceipt:
        """
        Save one answer; a persistence failure is logged and skipped rather
        than ending the session. The question then scores as unanswered.
        """
        aid = self.assignment.id
        try:
            r = self.answer(question_id, value)
        except SQLAlchemyError as e:
            self.db.rollback()
            n = monitor.record_failure(aid)
            logger.warning(
                "Autosave failed for assignment %s question %s (%s consecutive): %s",
                aid, question_id, n, e,
            )
            return AnswerReceipt(question_id=question_id, saved=False, warning=monitor.warning_for(aid))

        monitor.record_success(aid)
        return AnswerReceipt(question_id=question_id, saved=True, response=r)

    def _time_spent(self, now: datetime, forced: bool) -> Optional[int]:
        started = self.assignment.started_at
        if started is None:
            return None
        elapsed = max(0, int((now - started).total_seconds()))
        if forced and self.test.duration_minutes is not None:
            elapsed = min(elapsed, self.test.duration_minutes * 60)
        return elapsed

    def submit(self, time_spent_seconds: Optional[int] = None, *, forced: bool = False) -> SubmissionResult:
        """
        Complete the assignment with whatever responses exist right now and
        score it. Submitting an already completed assignment changes nothing.
        """
        if self.status == "pending":
            raise AssignmentNotStarted()

        submitted = False
        if self.status == "in_progress":
            now = self.clock()
            if time_spent_seconds is None:
                time_spent_seconds = self._time_spent(now, forced)
            submitted = crud.mark_completed(self.db, self.assignment, now, time_spent_seconds)

        breakdown = crud.current_breakdown(self.db, self.assignment)
        if submitted:
            logger.info(
                "Assignment %s %s: %s%% (%s)%s",
                self.assignment.id,
                "force-submitted on timeout" if forced else "submitted",
                breakdown.final_percentage,
                breakdown.category,
                ", needs grading" if breakdown.needs_grading else "",
            )
        return SubmissionResult(
            assignment=self.assignment,
            breakdown=breakdown,
            submitted=submitted,
            forced=forced and submitted,
        )


# -------------------------
# Timer
# -------------------------

class SessionTimer(threading.Thread):
    """
    Ticks every `tick_seconds`, recomputing the time left from the fixed
    deadline against the wall clock. Calls `on_expire` exactly once when
    time runs out, unless cancelled first.
    """

    def __init__(
        self,
        assignment_id: int,
        deadline: datetime,
        on_expire: Callable[[int], None],
        *,
        tick_seconds: float = 1.0,
        clock: Callable[[], datetime] = crud.utcnow,
    ):
        super().__init__(name=f"session-timer-{assignment_id}", daemon=True)
        self.assignment_id = assignment_id
        self.deadline = deadline
        self.on_expire = on_expire
        self.tick_seconds = tick_seconds
        self.clock = clock
        self.expired = False
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def remaining(self) -> int:
        return seconds_until(self.deadline, self.clock())

    def run(self) -> None:
        while not self._cancelled.is_set():
            if self.remaining() <= 0:
                self.expired = True
                try:
                    self.on_expire(self.assignment_id)
                except Exception:
                    logger.exception("Forced submit failed for assignment %s", self.assignment_id)
                return
            self._cancelled.wait(self.tick_seconds)


class TimerRegistry:
    def __init__(
        self,
        on_expire: Callable[[int], None],
        *,
        tick_seconds: float = 1.0,
        clock: Callable[[], datetime] = crud.utcnow,
    ):
        self.on_expire = on_expire
        self.tick_seconds = tick_seconds
        self.clock = clock
        self._timers: dict[int, SessionTimer] = {}
        self._lock = threading.Lock()

    def _expire(self, assignment_id: int) -> None:
        try:
            self.on_expire(assignment_id)
        finally:
            with self._lock:
                self._timers.pop(assignment_id, None)

    def schedule(self, assignment_id: int, deadline: datetime) -> SessionTimer:
        with self._lock:
            existing = self._timers.get(assignment_id)
            if existing and existing.is_alive() and not existing.cancelled:
                return existing
            timer = SessionTimer(
                assignment_id,
                deadline,
                self._expire,
                tick_seconds=self.tick_seconds,
                clock=self.clock,
            )
            self._timers[assignment_id] = timer
        timer.start()
        return timer

    def cancel(self, assignment_id: int) -> bool:
        with self._lock:
            timer = self._timers.pop(assignment_id, None)
        if not timer:
            return False
        timer.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for t in timers:
            t.cancel()

    def get(self, assignment_id: int) -> Optional[SessionTimer]:
        with self._lock:
            return self._timers.get(assignment_id)

    def active(self) -> list[int]:
        with self._lock:
            return sorted(self._timers)


def make_expiry_handler(SessionLocal, notifier=None) -> Callable[[int], None]:
    """Timer callback: force-submit with a fresh DB session."""
    def on_expire(assignment_id: int) -> None:
        db = SessionLocal()
        try:
            result = AssessmentSession(db, assignment_id).submit(forced=True)
            if result.submitted and notifier is not None:
                notifier.notify(result.assignment, result.breakdown, reason="submitted")
        finally:
            db.close()

    return on_expire


def rearm_timers(SessionLocal, timers: TimerRegistry) -> int:
    """Schedule timers for every timed assignment still in progress."""
    db = SessionLocal()
    try:
        count = 0
        for a, duration in crud.timed_in_progress(db):
            deadline = deadline_for(a.started_at, duration)
            if deadline is None:
                continue
            timers.schedule(a.id, deadline)
            count += 1
        return count
    finally:
        db.close()
