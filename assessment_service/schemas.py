from dataclasses import asdict
from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, Field

from .scoring import ScoreBreakdown


class OptionOut(BaseModel):
    value: str
    label: str = ""


class QuestionOut(BaseModel):
    id: int
    test_id: int
    question_type: str
    text: str
    weight: float
    order_index: int
    # answer options never expose correctness or scores to respondents
    options: list[OptionOut] = Field(default_factory=list)
    scale: Optional[int] = None
    rating_min: Optional[int] = None
    rating_max: Optional[int] = None


class AssignmentOut(BaseModel):
    id: int
    test_id: int
    user_id: int
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    time_spent_seconds: Optional[int] = None
    duration_minutes: Optional[int] = None
    remaining_seconds: Optional[int] = None


class AnswerIn(BaseModel):
    question_id: int
    value: Union[str, int, float, None] = None


class BulkAnswersIn(BaseModel):
    answers: list[AnswerIn] = Field(min_length=1)


class ResponseOut(BaseModel):
    id: int
    assignment_id: int
    question_id: int
    value: Optional[str] = None
    score: Optional[float] = None
    is_correct: Optional[bool] = None
    answered_at: Optional[datetime] = None


class AnswerReceiptOut(BaseModel):
    question_id: int
    saved: bool
    response: Optional[ResponseOut] = None
    warning: Optional[str] = None


class SubmitIn(BaseModel):
    time_spent_seconds: Optional[int] = Field(default=None, ge=0)


class GradeIn(BaseModel):
    percentage: float = Field(ge=0, le=100)


class ScoreRowOut(BaseModel):
    question_id: int
    question_type: str
    weight: float
    raw_score: float
    max_score: float
    weighted_score: float
    weighted_max_score: float
    percentage: int
    category: str
    is_correct: Optional[bool] = None
    needs_grading: bool = False


class ScoreBreakdownOut(BaseModel):
    rows: list[ScoreRowOut]
    total_weighted_score: float
    total_weighted_max_score: float
    final_percentage: int
    category: str
    needs_grading: bool
    ungraded_count: int
    open_question_count: int

    @classmethod
    def from_breakdown(cls, breakdown: ScoreBreakdown) -> "ScoreBreakdownOut":
        return cls.model_validate(asdict(breakdown))


class CategoryOut(BaseModel):
    key: str
    label_en: str
    description_en: str


class ResultOut(BaseModel):
    assignment_id: int
    status: str
    provisional: bool
    category_info: CategoryOut
    breakdown: ScoreBreakdownOut


class SubmitOut(BaseModel):
    assignment_id: int
    submitted: bool
    forced: bool = False
    result: ResultOut


class PendingGradingOut(BaseModel):
    assignment_id: int
    test_id: int
    user_id: int
    completed_at: Optional[datetime] = None
    ungraded_count: int


class UserResultOut(BaseModel):
    assignment_id: int
    test_id: int
    completed_at: Optional[datetime] = None
    final_percentage: int
    category: str
    provisional: bool
