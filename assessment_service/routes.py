from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from shared.database import db_dependency

from . import crud
from .categories import category_info
from .errors import AssignmentClosed
from .grading import grade_response, pending_grading
from .models import Assignment, Question, Response
from .notifications import CompletionNotifier
from .scoring import MULTIPLE_CHOICE, ScoreBreakdown
from .schemas import (
    AnswerIn, BulkAnswersIn, SubmitIn, GradeIn,
    QuestionOut, OptionOut, AssignmentOut, ResponseOut, AnswerReceiptOut,
    CategoryOut, ResultOut, ScoreBreakdownOut, SubmitOut,
    PendingGradingOut, UserResultOut,
)
from .session import AssessmentSession, AutosaveMonitor, SubmissionResult, TimerRegistry


def _question_out(q: Question) -> QuestionOut:
    options = []
    if q.question_type == MULTIPLE_CHOICE:
        options = [
            OptionOut(value=str(o.get("value", "")), label=str(o.get("label") or ""))
            for o in (q.options or [])
            if isinstance(o, dict)
        ]
    return QuestionOut(
        id=q.id,
        test_id=q.test_id,
        question_type=q.question_type,
        text=q.text,
        weight=q.weight,
        order_index=q.order_index,
        options=options,
        scale=q.scale,
        rating_min=q.rating_min,
        rating_max=q.rating_max,
    )


def _response_out(r: Response) -> ResponseOut:
    return ResponseOut(
        id=r.id,
        assignment_id=r.assignment_id,
        question_id=r.question_id,
        value=r.value,
        score=r.score,
        is_correct=r.is_correct,
        answered_at=r.answered_at,
    )


def _assignment_out(session: AssessmentSession) -> AssignmentOut:
    a = session.assignment
    return AssignmentOut(
        id=a.id,
        test_id=a.test_id,
        user_id=a.user_id,
        status=a.status,
        started_at=a.started_at,
        completed_at=a.completed_at,
        time_spent_seconds=a.time_spent_seconds,
        duration_minutes=session.test.duration_minutes,
        remaining_seconds=session.remaining_seconds(),
    )


def _result_out(assignment: Assignment, breakdown: ScoreBreakdown) -> ResultOut:
    info = category_info(breakdown.final_percentage)
    return ResultOut(
        assignment_id=assignment.id,
        status=assignment.status,
        provisional=breakdown.needs_grading or assignment.status != "completed",
        category_info=CategoryOut(key=info.key, label_en=info.label_en, description_en=info.description_en),
        breakdown=ScoreBreakdownOut.from_breakdown(breakdown),
    )


def build_router(
    SessionLocal,
    *,
    timers: TimerRegistry,
    autosave: AutosaveMonitor,
    notifier: Optional[CompletionNotifier] = None,
):
    router = APIRouter()
    get_db = db_dependency(SessionLocal)

    def current_user_id(request: Request) -> int:
        # set by the gateway auth middleware, or forwarded as X-User-ID
        user = getattr(request.state, "user", None)
        if user and "sub" in user:
            return int(user["sub"])
        raw = request.headers.get("x-user-id", "").strip()
        return int(raw) if raw.isdigit() else 0

    def after_submit(result: Optional[SubmissionResult]) -> None:
        if result is None or not result.submitted:
            return
        timers.cancel(result.assignment.id)
        if notifier is not None:
            notifier.dispatch(result.assignment, result.breakdown, reason="submitted")

    def open_session(db: Session, assignment_id: int) -> AssessmentSession:
        session = AssessmentSession(db, assignment_id)
        after_submit(session.enforce_deadline())
        return session

    # Respondent endpoints

    @router.get("/tests/{test_id}/questions", response_model=list[QuestionOut])
    def get_questions(test_id: int, db: Session = Depends(get_db)):
        crud.require_test(db, test_id)
        return [_question_out(q) for q in crud.list_questions(db, test_id)]

    @router.get("/assignments/{assignment_id}", response_model=AssignmentOut)
    def get_assignment(assignment_id: int, db: Session = Depends(get_db)):
        return _assignment_out(open_session(db, assignment_id))

    @router.post("/assignments/{assignment_id}/start", response_model=AssignmentOut)
    def start(assignment_id: int, db: Session = Depends(get_db)):
        session = AssessmentSession(db, assignment_id)
        if session.status == "completed":
            raise AssignmentClosed()
        # an expired running session is completed here, not restarted
        after_submit(session.enforce_deadline())
        if session.status != "completed":
            session.open()
            if session.deadline is not None:
                timers.schedule(assignment_id, session.deadline)
        return _assignment_out(session)

    @router.get("/assignments/{assignment_id}/responses", response_model=list[ResponseOut])
    def get_responses(assignment_id: int, db: Session = Depends(get_db)):
        crud.require_assignment(db, assignment_id)
        return [_response_out(r) for r in crud.list_responses(db, assignment_id)]

    @router.post("/assignments/{assignment_id}/responses", response_model=AnswerReceiptOut)
    def save_response(assignment_id: int, payload: AnswerIn, db: Session = Depends(get_db)):
        session = open_session(db, assignment_id)
        receipt = session.autosave(payload.question_id, payload.value, autosave)
        return AnswerReceiptOut(
            question_id=receipt.question_id,
            saved=receipt.saved,
            response=_response_out(receipt.response) if receipt.response is not None else None,
            warning=receipt.warning,
        )

    @router.post("/assignments/{assignment_id}/responses/bulk", response_model=list[ResponseOut])
    def save_responses_bulk(assignment_id: int, payload: BulkAnswersIn, db: Session = Depends(get_db)):
        session = open_session(db, assignment_id)
        saved = session.answer_many([(a.question_id, a.value) for a in payload.answers])
        return [_response_out(r) for r in saved]

    @router.post("/assignments/{assignment_id}/submit", response_model=SubmitOut)
    def submit(assignment_id: int, payload: Optional[SubmitIn] = None, db: Session = Depends(get_db)):
        session = AssessmentSession(db, assignment_id)
        result = session.submit(payload.time_spent_seconds if payload else None)
        timers.cancel(assignment_id)
        after_submit(result)
        return SubmitOut(
            assignment_id=assignment_id,
            submitted=result.submitted,
            forced=result.forced,
            result=_result_out(result.assignment, result.breakdown),
        )

    # Read side

    @router.get("/assignments/{assignment_id}/results", response_model=ResultOut)
    def get_results(assignment_id: int, db: Session = Depends(get_db)):
        session = open_session(db, assignment_id)
        return _result_out(session.assignment, crud.current_breakdown(db, session.assignment))

    def user_results(db: Session, user_id: int) -> list[UserResultOut]:
        out = []
        for a in crud.list_user_assignments(db, user_id, status="completed"):
            bd = crud.current_breakdown(db, a)
            out.append(UserResultOut(
                assignment_id=a.id,
                test_id=a.test_id,
                completed_at=a.completed_at,
                final_percentage=bd.final_percentage,
                category=bd.category,
                provisional=bd.needs_grading,
            ))
        return out

    @router.get("/users/{user_id}/results", response_model=list[UserResultOut])
    def get_user_results(user_id: int, db: Session = Depends(get_db)):
        return user_results(db, user_id)

    @router.get("/me/results", response_model=list[UserResultOut])
    def get_my_results(request: Request, db: Session = Depends(get_db)):
        return user_results(db, current_user_id(request))

    # Grading (admin)

    @router.patch("/responses/{response_id}/grade", response_model=ResultOut)
    def grade(response_id: int, payload: GradeIn, db: Session = Depends(get_db)):
        result = grade_response(db, response_id, payload.percentage)
        if notifier is not None:
            notifier.dispatch(result.assignment, result.breakdown, reason="graded")
        return _result_out(result.assignment, result.breakdown)

    @router.get("/grading/pending", response_model=list[PendingGradingOut])
    def get_pending_grading(db: Session = Depends(get_db)):
        return [
            PendingGradingOut(
                assignment_id=p.assignment.id,
                test_id=p.assignment.test_id,
                user_id=p.assignment.user_id,
                completed_at=p.assignment.completed_at,
                ungraded_count=p.ungraded_count,
            )
            for p in pending_grading(db)
        ]

    return router
