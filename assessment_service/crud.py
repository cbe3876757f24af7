import logging
from datetime import datetime, timezone

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from .errors import AssignmentNotFound, TestNotFound
from .models import AssessmentTest, Question, Assignment, Response
from .scoring import (
    MULTIPLE_CHOICE, OPEN_TEXT, QUESTION_TYPES,
    Answer, QuestionDef, ScoreBreakdown,
    build_question, compute_breakdown, score_of,
)


logger = logging.getLogger("assessment-service.crud")


def utcnow() -> datetime:
    # naive UTC, the way DateTime columns store it
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Authoring helpers (seeding / tests only)

def create_test(db: Session, title: str, duration_minutes: int | None = None) -> AssessmentTest:
    t = AssessmentTest(title=title, duration_minutes=duration_minutes)
    db.add(t)
    db.commit()
    db.refresh(t)
    return t


def add_question(
    db: Session,
    test_id: int,
    question_type: str,
    text: str = "",
    *,
    weight: float = 1.0,
    options: list[dict] | None = None,
    scale: int | None = None,
    rating_min: int | None = None,
    rating_max: int | None = None,
    order_index: int | None = None,
) -> Question:
    if question_type not in QUESTION_TYPES:
        raise ValueError(f"Unknown question type: {question_type}")
    if order_index is None:
        order_index = db.query(func.count(Question.id)).filter(Question.test_id == test_id).scalar() or 0
    q = Question(
        test_id=test_id,
        question_type=question_type,
        text=text,
        weight=weight,
        options=options,
        scale=scale,
        rating_min=rating_min,
        rating_max=rating_max,
        order_index=order_index,
    )
    db.add(q)
    db.commit()
    db.refresh(q)
    return q


def create_assignment(db: Session, test_id: int, user_id: int) -> Assignment:
    a = Assignment(test_id=test_id, user_id=user_id, status="pending")
    db.add(a)
    db.commit()
    db.refresh(a)
    return a


# Reads

def get_test(db: Session, test_id: int) -> AssessmentTest | None:
    return db.query(AssessmentTest).filter(AssessmentTest.id == test_id).first()


def require_test(db: Session, test_id: int) -> AssessmentTest:
    t = get_test(db, test_id)
    if not t:
        raise TestNotFound()
    return t


def get_assignment(db: Session, assignment_id: int) -> Assignment | None:
    return db.query(Assignment).filter(Assignment.id == assignment_id).first()


def require_assignment(db: Session, assignment_id: int) -> Assignment:
    a = get_assignment(db, assignment_id)
    if not a:
        raise AssignmentNotFound()
    return a


def list_questions(db: Session, test_id: int) -> list[Question]:
    return (
        db.query(Question)
        .filter(Question.test_id == test_id)
        .order_by(Question.order_index.asc(), Question.id.asc())
        .all()
    )


def get_question(db: Session, question_id: int) -> Question | None:
    return db.query(Question).filter(Question.id == question_id).first()


def list_responses(db: Session, assignment_id: int) -> list[Response]:
    return (
        db.query(Response)
        .join(Question, Question.id == Response.question_id)
        .filter(Response.assignment_id == assignment_id)
        .order_by(Question.order_index.asc(), Question.id.asc())
        .all()
    )


def get_response(db: Session, response_id: int) -> Response | None:
    return db.query(Response).filter(Response.id == response_id).first()


def list_user_assignments(db: Session, user_id: int, status: str | None = None) -> list[Assignment]:
    q = db.query(Assignment).filter(Assignment.user_id == user_id)
    if status:
        q = q.filter(Assignment.status == status)
    return q.order_by(Assignment.id.desc()).all()


def timed_in_progress(db: Session) -> list[tuple[Assignment, int]]:
    rows = (
        db.query(Assignment, AssessmentTest.duration_minutes)
        .join(AssessmentTest, AssessmentTest.id == Assignment.test_id)
        .filter(Assignment.status == "in_progress")
        .filter(AssessmentTest.duration_minutes.is_not(None))
        .all()
    )
    return [(a, int(d)) for a, d in rows]


def ungraded_by_assignment(db: Session) -> list[tuple[Assignment, int]]:
    """Completed assignments with open_text responses still lacking a score."""
    rows = (
        db.query(Assignment, func.count(Response.id))
        .join(Response, Response.assignment_id == Assignment.id)
        .join(Question, Question.id == Response.question_id)
        .filter(Assignment.status == "completed")
        .filter(Question.question_type == OPEN_TEXT)
        .filter(Response.score.is_(None))
        .group_by(Assignment.id)
        .order_by(Assignment.completed_at.asc(), Assignment.id.asc())
        .all()
    )
    return [(a, int(cnt)) for a, cnt in rows]


# Lifecycle transitions, guarded by the current status so racing callers
# cannot both win.

def mark_started(db: Session, assignment: Assignment, now: datetime) -> bool:
    res = db.execute(
        update(Assignment)
        .where(Assignment.id == assignment.id, Assignment.status == "pending")
        .values(status="in_progress", started_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(assignment)
    return res.rowcount == 1


def mark_completed(db: Session, assignment: Assignment, now: datetime, time_spent_seconds: int | None) -> bool:
    res = db.execute(
        update(Assignment)
        .where(Assignment.id == assignment.id, Assignment.status == "in_progress")
        .values(status="completed", completed_at=now, time_spent_seconds=time_spent_seconds)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(assignment)
    return res.rowcount == 1


def upsert_response(db: Session, assignment: Assignment, question: Question, value: str | None, now: datetime) -> Response | None:
    """
    Insert or replace the answer to one question.
    Returns None when the assignment is no longer in progress.
    """
    # touching the assignment row first serializes this write against a concurrent submit
    touched = db.execute(
        update(Assignment)
        .where(Assignment.id == assignment.id, Assignment.status == "in_progress")
        .values(last_answered_at=now)
        .execution_options(synchronize_session=False)
    )
    if touched.rowcount != 1:
        db.rollback()
        return None

    is_correct = None
    if question.question_type == MULTIPLE_CHOICE:
        is_correct = score_of(to_question_def(question), Answer(question.id, value)).is_correct

    r = (
        db.query(Response)
        .filter(Response.assignment_id == assignment.id, Response.question_id == question.id)
        .first()
    )
    if not r:
        r = Response(assignment_id=assignment.id, question_id=question.id)
        db.add(r)
    r.value = value
    r.is_correct = is_correct
    r.score = None
    r.answered_at = now

    db.commit()
    db.refresh(r)
    return r


def set_response_grade(db: Session, response: Response, raw_score: float) -> Response:
    response.score = raw_score
    db.commit()
    db.refresh(response)
    return response


# Scoring inputs

def to_question_def(q: Question) -> QuestionDef:
    return build_question(
        q.id,
        q.question_type,
        weight=q.weight,
        options=q.options,
        scale=q.scale,
        rating_min=q.rating_min,
        rating_max=q.rating_max,
    )


def to_answer(r: Response) -> Answer:
    return Answer(question_id=r.question_id, value=r.value, grade=r.score)


def current_breakdown(db: Session, assignment: Assignment) -> ScoreBreakdown:
    """
    Score an assignment from what is persisted right now.
    Submission, grading and reports all go through here.
    """
    questions = []
    for q in list_questions(db, assignment.test_id):
        try:
            questions.append(to_question_def(q))
        except ValueError:
            # authored outside this service; left out of both totals
            logger.warning("Skipping question %s with unknown type %r", q.id, q.question_type)
    answers = [
        to_answer(r)
        for r in db.query(Response).filter(Response.assignment_id == assignment.id).all()
    ]
    return compute_breakdown(questions, answers)
