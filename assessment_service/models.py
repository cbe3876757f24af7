from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from shared.database import Base


class AssessmentTest(Base):
    __tablename__ = "assessment_test"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(500), default="")
    # NULL = untimed, 0 = expires as soon as it is started
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True, default=None)


class Question(Base):
    __tablename__ = "assessment_question"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    test_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessment_test.id"), index=True)
    question_type: Mapped[str] = mapped_column(String(50))  # multiple_choice/likert_scale/self_rating/open_text
    text: Mapped[str] = mapped_column(Text, default="")
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    # multiple_choice: [{"value", "label", "is_correct", "score"}]
    options: Mapped[list | None] = mapped_column(JSON, nullable=True, default=None)
    scale: Mapped[int | None] = mapped_column(Integer, nullable=True, default=None)
    rating_min: Mapped[int | None] = mapped_column(Integer, nullable=True, default=None)
    rating_max: Mapped[int | None] = mapped_column(Integer, nullable=True, default=None)
    order_index: Mapped[int] = mapped_column(Integer, default=0)


class Assignment(Base):
    __tablename__ = "test_assignment"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    test_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessment_test.id"), index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending/in_progress/completed
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, default=None)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, default=None)
    time_spent_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True, default=None)
    last_answered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, default=None)


class Response(Base):
    __tablename__ = "assessment_response"
    __table_args__ = (UniqueConstraint("assignment_id", "question_id", name="uq_response_assignment_question"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    assignment_id: Mapped[int] = mapped_column(Integer, ForeignKey("test_assignment.id"), index=True)
    question_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessment_question.id"), index=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    # only persisted for open_text, set by a grader
    score: Mapped[float | None] = mapped_column(Float, nullable=True, default=None)
    is_correct: Mapped[bool | None] = mapped_column(Boolean, nullable=True, default=None)
    answered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, default=None)
