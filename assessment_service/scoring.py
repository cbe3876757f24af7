import math
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import ClassVar, Iterable, NamedTuple, Optional

from .categories import category_for

MULTIPLE_CHOICE = "multiple_choice"
LIKERT_SCALE = "likert_scale"
SELF_RATING = "self_rating"
OPEN_TEXT = "open_text"

QUESTION_TYPES = (MULTIPLE_CHOICE, LIKERT_SCALE, SELF_RATING, OPEN_TEXT)

# multiple_choice max score never drops below this, even with no scored option
MIN_CHOICE_MAX_SCORE = 10.0
OPEN_TEXT_MAX_SCORE = 10.0
DEFAULT_LIKERT_SCALE = 5
DEFAULT_RATING_MIN = 1
DEFAULT_RATING_MAX = 10


# ----------------------------
# Question model
# ----------------------------

@dataclass(frozen=True)
class Option:
    value: str
    label: str = ""
    is_correct: bool = False
    score: float = 0.0


@dataclass(frozen=True)
class MultipleChoice:
    kind: ClassVar[str] = MULTIPLE_CHOICE
    options: tuple[Option, ...] = ()


@dataclass(frozen=True)
class LikertScale:
    kind: ClassVar[str] = LIKERT_SCALE
    scale: int = DEFAULT_LIKERT_SCALE


@dataclass(frozen=True)
class SelfRating:
    kind: ClassVar[str] = SELF_RATING
    min: int = DEFAULT_RATING_MIN
    max: int = DEFAULT_RATING_MAX


@dataclass(frozen=True)
class OpenText:
    kind: ClassVar[str] = OPEN_TEXT
    max_score: float = OPEN_TEXT_MAX_SCORE


AnswerSpec = MultipleChoice | LikertScale | SelfRating | OpenText


@dataclass(frozen=True)
class QuestionDef:
    id: int
    spec: AnswerSpec
    weight: float = 1.0

    @property
    def question_type(self) -> str:
        return self.spec.kind


@dataclass(frozen=True)
class Answer:
    """
    A respondent's stored answer. `grade` is the manual raw score of an
    open_text answer and stays None until someone grades it.
    """
    question_id: int
    value: Optional[str] = None
    grade: Optional[float] = None


class ScoredAnswer(NamedTuple):
    raw_score: Optional[float]  # None = open_text awaiting a grade
    max_score: float
    is_correct: Optional[bool] = None


def _to_number(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(n):
        return None
    return n


def _clamp(n: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, n))


def build_question(
    question_id: int,
    question_type: str,
    *,
    weight=1.0,
    options: Optional[list] = None,
    scale=None,
    rating_min=None,
    rating_max=None,
) -> QuestionDef:
    """
    Build a QuestionDef from stored column values.
    Unknown question types raise ValueError; malformed numbers fall back to defaults.
    """
    if question_type == MULTIPLE_CHOICE:
        opts = []
        for o in options or []:
            if not isinstance(o, dict):
                continue
            score = _to_number(o.get("score"))
            opts.append(Option(
                value=str(o.get("value", "")),
                label=str(o.get("label") or ""),
                is_correct=bool(o.get("is_correct", False)),
                score=score if score is not None else 0.0,
            ))
        spec: AnswerSpec = MultipleChoice(options=tuple(opts))
    elif question_type == LIKERT_SCALE:
        n = _to_number(scale)
        spec = LikertScale(scale=int(n) if n is not None and n > 0 else DEFAULT_LIKERT_SCALE)
    elif question_type == SELF_RATING:
        lo = _to_number(rating_min)
        hi = _to_number(rating_max)
        spec = SelfRating(
            min=int(lo) if lo is not None else DEFAULT_RATING_MIN,
            max=int(hi) if hi is not None else DEFAULT_RATING_MAX,
        )
    elif question_type == OPEN_TEXT:
        spec = OpenText()
    else:
        raise ValueError(f"Unknown question type: {question_type!r}")

    w = _to_number(weight)
    if w is None:
        w = 1.0
    return QuestionDef(id=question_id, spec=spec, weight=max(0.0, w))


def score_of(question: QuestionDef, answer: Optional[Answer]) -> ScoredAnswer:
    """
    Resolve one question + answer to (raw_score, max_score).

    Missing or malformed values score 0; they never raise, so one bad
    response cannot block scoring the rest of an assessment.
    """
    spec = question.spec
    value = answer.value if answer is not None else None

    if isinstance(spec, MultipleChoice):
        max_score = max([o.score for o in spec.options] + [MIN_CHOICE_MAX_SCORE])
        if value is None:
            return ScoredAnswer(0.0, max_score, None)
        chosen = next((o for o in spec.options if o.value == str(value)), None)
        if chosen is None:
            return ScoredAnswer(0.0, max_score, None)
        return ScoredAnswer(_clamp(chosen.score, 0.0, max_score), max_score, chosen.is_correct)

    if isinstance(spec, (LikertScale, SelfRating)):
        max_score = float(spec.scale if isinstance(spec, LikertScale) else spec.max)
        n = _to_number(value)
        if n is None or max_score <= 0:
            return ScoredAnswer(0.0, max(max_score, 0.0), None)
        return ScoredAnswer(_clamp(n, 0.0, max_score), max_score, None)

    if isinstance(spec, OpenText):
        if answer is None:
            return ScoredAnswer(0.0, spec.max_score, None)
        if answer.grade is None:
            return ScoredAnswer(None, spec.max_score, None)
        g = _to_number(answer.grade)
        return ScoredAnswer(_clamp(g, 0.0, spec.max_score) if g is not None else 0.0, spec.max_score, None)

    raise TypeError(f"Unsupported answer spec: {type(spec).__name__}")


# ----------------------------
# Scoring engine
# ----------------------------

def round_half_up(x: float) -> int:
    return int(Decimal(str(x)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(part: float, whole: float) -> int:
    if whole <= 0:
        return 0
    return round_half_up(100.0 * part / whole)


@dataclass(frozen=True)
class ScoreRow:
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


@dataclass(frozen=True)
class ScoreBreakdown:
    rows: tuple[ScoreRow, ...] = field(default_factory=tuple)
    total_weighted_score: float = 0.0
    total_weighted_max_score: float = 0.0
    final_percentage: int = 0
    category: str = "beginner"
    needs_grading: bool = False
    ungraded_count: int = 0
    open_question_count: int = 0


def compute_breakdown(questions: Iterable[QuestionDef], answers: Iterable[Answer]) -> ScoreBreakdown:
    """
    Weighted score of a question set against a set of answers.

    Pure: the same inputs always give the same breakdown. This is the only
    place an aggregate score is computed, both at submission time and on
    every later read or re-grade.
    """
    by_question = {a.question_id: a for a in answers}

    rows = []
    total = 0.0
    total_max = 0.0
    ungraded = 0
    open_count = 0

    for q in questions:
        answer = by_question.get(q.id)
        scored = score_of(q, answer)

        pending = scored.raw_score is None
        raw = 0.0 if pending else scored.raw_score
        if q.question_type == OPEN_TEXT:
            open_count += 1
            if pending:
                ungraded += 1

        weighted = raw * q.weight
        weighted_max = scored.max_score * q.weight
        total += weighted
        total_max += weighted_max

        pct = percent_of(raw, scored.max_score)
        rows.append(ScoreRow(
            question_id=q.id,
            question_type=q.question_type,
            weight=q.weight,
            raw_score=raw,
            max_score=scored.max_score,
            weighted_score=weighted,
            weighted_max_score=weighted_max,
            percentage=pct,
            category=category_for(pct),
            is_correct=scored.is_correct,
            needs_grading=pending,
        ))

    final = percent_of(total, total_max)
    return ScoreBreakdown(
        rows=tuple(rows),
        total_weighted_score=total,
        total_weighted_max_score=total_max,
        final_percentage=final,
        category=category_for(final),
        needs_grading=ungraded > 0,
        ungraded_count=ungraded,
        open_question_count=open_count,
    )
