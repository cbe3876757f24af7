import logging
import math
from dataclasses import dataclass

from sqlalchemy.orm import Session

from . import crud
from .errors import AssignmentNotCompleted, InvalidGradeTarget, InvalidGradeValue, QuestionNotFound, ResponseNotFound
from .models import Assignment
from .scoring import OPEN_TEXT, OpenText, ScoreBreakdown

logger = logging.getLogger("assessment-service.grading")


@dataclass
class GradeResult:
    assignment: Assignment
    breakdown: ScoreBreakdown


@dataclass
class PendingGrading:
    assignment: Assignment
    ungraded_count: int


def grade_response(db: Session, response_id: int, percentage: float) -> GradeResult:
    """
    Manually score an open_text response of a submitted assignment, then
    rescore the whole assignment from what is persisted.

    Re-grading is allowed; the last grade wins.
    """
    try:
        pct = float(percentage)
    except (TypeError, ValueError):
        raise InvalidGradeValue()
    if not math.isfinite(pct) or pct < 0 or pct > 100:
        raise InvalidGradeValue()

    response = crud.get_response(db, response_id)
    if not response:
        raise ResponseNotFound()

    question = crud.get_question(db, response.question_id)
    if not question:
        raise QuestionNotFound()
    if question.question_type != OPEN_TEXT:
        raise InvalidGradeTarget(f"Cannot grade a {question.question_type} response; it is scored automatically")

    assignment = crud.require_assignment(db, response.assignment_id)
    if assignment.status != "completed":
        raise AssignmentNotCompleted()

    spec = crud.to_question_def(question).spec
    max_score = spec.max_score if isinstance(spec, OpenText) else 10.0
    raw = pct / 100.0 * max_score
    crud.set_response_grade(db, response, raw)

    breakdown = crud.current_breakdown(db, assignment)
    logger.info(
        "Response %s graded %s%% (raw %s/%s); assignment %s now %s%%%s",
        response.id, pct, raw, max_score, assignment.id,
        breakdown.final_percentage,
        " (still needs grading)" if breakdown.needs_grading else "",
    )
    return GradeResult(assignment=assignment, breakdown=breakdown)


def needs_grading(db: Session, assignment: Assignment) -> bool:
    return crud.current_breakdown(db, assignment).needs_grading


def pending_grading(db: Session) -> list[PendingGrading]:
    return [PendingGrading(assignment=a, ungraded_count=n) for a, n in crud.ungraded_by_assignment(db)]
