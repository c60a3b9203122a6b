from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable

from errors import CapacityExceededError, ValidationError


CENT = Decimal("0.01")
ZERO = Decimal("0")
DEFAULT_CATEGORY_CAP = Decimal("5.0")
MAX_SCORE_PERIODS = 4
MAX_ACADEMIC_SCORE = Decimal("10")

LEVEL_POINTS = {
    "participation": Decimal("0.5"),
    "rank3": Decimal("1.0"),
    "rank2": Decimal("1.5"),
    "rank1": Decimal("2.0"),
    "leadership": Decimal("1.0"),
}

SCOPE_POINTS = {
    "international": Decimal("2.0"),
    "national": Decimal("1.5"),
    "local": Decimal("1.0"),
}

LEVEL_LABELS = {
    "participation": "Participation",
    "rank3": "Rank 3 / Third Prize",
    "rank2": "Rank 2 / Second Prize",
    "rank1": "Rank 1 / First Prize",
    "leadership": "Leadership Role",
}

SCOPE_LABELS = {
    "international": "International",
    "national": "National",
    "local": "University / Local",
}

# (minimum score, points), highest threshold first
_ARTS_THRESHOLDS = [
    (Decimal("8.0"), 5),
    (Decimal("7.5"), 4),
    (Decimal("7.0"), 3),
    (Decimal("6.5"), 2),
    (Decimal("6.0"), 1),
]
_SCIENCE_THRESHOLDS = [
    (Decimal("9.0"), 5),
    (Decimal("8.5"), 4),
    (Decimal("8.0"), 3),
    (Decimal("7.5"), 2),
    (Decimal("7.0"), 1),
]
ACADEMIC_SCORE_THRESHOLDS = {
    "humanities": _ARTS_THRESHOLDS,
    "commerce": _ARTS_THRESHOLDS,
    "science": _SCIENCE_THRESHOLDS,
}

STREAMS = ("humanities", "commerce", "science")
DEFAULT_STREAM = "humanities"

COURSE_STREAMS = {
    "B.A.(H) Economics": "humanities",
    "B.A.(H) English": "humanities",
    "B.A.(H) History": "humanities",
    "B.A.(H) Political Science": "humanities",
    "B.A.(H) Sanskrit": "humanities",
    "B.A.(H) Philosophy": "humanities",
    "B.A.(H) Hindi": "humanities",
    "B.A. Programme (Multidisciplinary)": "humanities",
    "B.Com (Programme)": "commerce",
    "B.Com (Honours)": "commerce",
    "B.Sc. Life Sciences": "science",
    "B.Sc. Physical Sciences": "science",
    "B.Sc. Mathematical Sciences": "science",
    "B.Sc. Chemistry (H)": "science",
    "B.Sc. Electronics": "science",
    "B.Sc. Computer Science (H)": "science",
    "B.Sc. Botany (H)": "science",
    "B.Sc. Zoology (H)": "science",
}
COURSE_LIST = list(COURSE_STREAMS.keys())

SCORING_LEVEL = "level"
SCORING_SCOPE = "scope"
SCORING_SCORE = "score"

POLICY_LATEST = "latest"
POLICY_AVERAGE = "average"


class Category(str, Enum):
    ACADEMIC_SCORE = "Academic (CGPA)"
    ACADEMIC_ENGAGEMENT = "Academic Engagement"
    EXTRA_CURRICULAR = "Extra Curricular"
    OUTREACH = "Outreach"
    SPORTS = "Sports"
    NCC = "National Cadet Corps"
    INDUSTRY = "Industry Experience"


CATEGORY_LABELS = [item.value for item in Category]


@dataclass(frozen=True)
class FormCategory:
    key: str
    label: str
    category: Category
    scoring: str
    policy: str | None = None
    sub_type: str | None = None
    period_label: str = "Year"
    score_label: str = "CGPA"


FORM_CATEGORIES: dict[str, FormCategory] = {
    item.key: item
    for item in [
        FormCategory("academic_cgpa", "Academic - CGPA", Category.ACADEMIC_SCORE, SCORING_SCORE, POLICY_LATEST, "cgpa_performance"),
        FormCategory(
            "academic_sgpa",
            "Academic - SGPA",
            Category.ACADEMIC_SCORE,
            SCORING_SCORE,
            POLICY_AVERAGE,
            "sgpa_performance",
            period_label="Semester",
            score_label="SGPA",
        ),
        FormCategory("academic_engagement", "Academic - Research / Engagement", Category.ACADEMIC_ENGAGEMENT, SCORING_LEVEL),
        FormCategory("extra_curricular", "Extra-Curricular", Category.EXTRA_CURRICULAR, SCORING_LEVEL),
        FormCategory("outreach", "Outreach Activities", Category.OUTREACH, SCORING_LEVEL),
        FormCategory("sports", "Sports", Category.SPORTS, SCORING_LEVEL),
        FormCategory("ncc", "National Cadet Corps", Category.NCC, SCORING_LEVEL),
        FormCategory("industry", "Industry Experience", Category.INDUSTRY, SCORING_SCOPE),
    ]
}

# Keys used by earlier revisions of the submission form.
LEGACY_FORM_KEYS = {
    "extracurricular": "extra_curricular",
    "research": "academic_engagement",
    "cgpa": "academic_cgpa",
    "sgpa": "academic_sgpa",
}


@dataclass(frozen=True)
class AggregateScore:
    score: Decimal | None
    points: int
    periods: list[int]


@dataclass(frozen=True)
class CapDecision:
    existing: Decimal
    candidate: Decimal
    awarded: Decimal
    cap: Decimal

    @property
    def capped(self) -> bool:
        return self.awarded < self.candidate


@dataclass(frozen=True)
class ClassifiedSubmission:
    form_key: str
    category: Category
    sub_type: str
    candidate_points: Decimal
    title: str
    description: str
    achievement_date: date
    academic_score: Decimal | None = None


@dataclass(frozen=True)
class MeritCandidate:
    student_id: Any
    total_points: Decimal
    tie_break_score: Decimal = ZERO


@dataclass(frozen=True)
class RankedStudent:
    student_id: Any
    total_points: Decimal
    tie_break_score: Decimal
    rank: int
    percentile: Decimal


def _field(row: Any, name: str, default: Any = None) -> Any:
    if isinstance(row, dict):
        return row.get(name, default)
    return getattr(row, name, default)


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value if value.is_finite() else default
    try:
        # str() keeps 0.1-style floats from dragging binary noise into the sum
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    if not result.is_finite():
        return default
    return result


def quantize_points(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _norm_key(value: Any) -> str:
    return str(value or "").strip().lower()


def level_points(level: str | None) -> Decimal:
    return LEVEL_POINTS.get(_norm_key(level), ZERO)


def scope_points(scope: str | None) -> Decimal:
    return SCOPE_POINTS.get(_norm_key(scope), ZERO)


def academic_score_points(score: Any, stream: str | None) -> int:
    thresholds = ACADEMIC_SCORE_THRESHOLDS.get(_norm_key(stream))
    if not thresholds:
        return 0
    value = to_decimal(score, default=Decimal("-1"))
    for minimum, points in thresholds:
        if value >= minimum:
            return points
    return 0


def derive_stream(course_name: str | None) -> str:
    return COURSE_STREAMS.get((course_name or "").strip(), DEFAULT_STREAM)


def parse_score(raw: Any) -> Decimal | None:
    text = str(raw if raw is not None else "").strip()
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    if not value.is_finite() or value < 0 or value > MAX_ACADEMIC_SCORE:
        return None
    return value


def _above_score_scale(raw: Any) -> bool:
    try:
        value = Decimal(str(raw if raw is not None else "").strip())
    except InvalidOperation:
        return False
    return value.is_finite() and value > MAX_ACADEMIC_SCORE


def aggregate_scores(
    entries: Iterable[tuple[int, Any]],
    stream: str | None,
    policy: str = POLICY_LATEST,
) -> AggregateScore:
    if policy not in {POLICY_LATEST, POLICY_AVERAGE}:
        raise ValueError(f"Unknown aggregation policy: {policy}")

    valid: list[tuple[int, Decimal]] = []
    for period, raw in entries:
        parsed = parse_score(raw)
        if parsed is not None:
            valid.append((int(period), parsed))

    if not valid:
        return AggregateScore(score=None, points=0, periods=[])

    if policy == POLICY_LATEST:
        latest_period, score = valid[0]
        for period, value in valid[1:]:
            if period >= latest_period:
                latest_period, score = period, value
        periods = [latest_period]
    else:
        score = sum((value for _, value in valid), ZERO) / len(valid)
        periods = [period for period, _ in valid]

    rounded = score.quantize(CENT, rounding=ROUND_HALF_UP)
    return AggregateScore(score=rounded, points=academic_score_points(rounded, stream), periods=periods)


def enforce_category_cap(
    existing_points: Any,
    candidate_points: Any,
    cap: Any = DEFAULT_CATEGORY_CAP,
    category: str = "",
) -> CapDecision:
    existing = quantize_points(existing_points)
    candidate = quantize_points(candidate_points)
    cap_value = quantize_points(cap)

    if existing >= cap_value:
        raise CapacityExceededError(category or "this category", existing, cap_value)

    awarded = min(candidate, cap_value - existing)
    return CapDecision(existing=existing, candidate=candidate, awarded=awarded, cap=cap_value)


def resolve_form_category(form_key: str | None) -> FormCategory:
    key = _norm_key(form_key)
    key = LEGACY_FORM_KEYS.get(key, key)
    form_category = FORM_CATEGORIES.get(key)
    if form_category is None:
        raise ValidationError("Please select a category.")
    return form_category


def validate_achievement_date(value: Any, window_start: date, window_end: date) -> date:
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, str) and value.strip():
        try:
            value = date.fromisoformat(value.strip())
        except ValueError:
            raise ValidationError("Please select a valid date.") from None
    if not isinstance(value, date):
        raise ValidationError("Please select a valid date.")
    if value < window_start or value > window_end:
        raise ValidationError(
            f"Invalid date. Achievement must be within the academic year "
            f"({window_start:%B %Y} - {window_end:%B %Y})."
        )
    return value


def _score_summary(form_category: FormCategory, entries: list[tuple[int, Any]]) -> str:
    parts = []
    for period, raw in entries:
        text = str(raw if raw is not None else "").strip() or "-"
        parts.append(f"{form_category.period_label} {period}: {text}")
    return ", ".join(parts)


def classify_submission(
    form_key: str,
    *,
    stream: str | None,
    window: tuple[date, date],
    level: str | None = None,
    scope: str | None = None,
    scores: list[tuple[int, Any]] | None = None,
    title: str = "",
    description: str = "",
    achievement_date: Any = None,
    course_name: str = "",
    today: date | None = None,
) -> ClassifiedSubmission:
    form_category = resolve_form_category(form_key)
    stream_value = _norm_key(stream) or DEFAULT_STREAM

    if form_category.scoring == SCORING_SCORE:
        entries = list(scores or [])
        if len(entries) > MAX_SCORE_PERIODS:
            raise ValidationError(f"Enter at most {MAX_SCORE_PERIODS} {form_category.score_label} values.")
        for _, raw in entries:
            if _above_score_scale(raw):
                raise ValidationError(
                    f"{form_category.score_label} values must be between 0 and {MAX_ACADEMIC_SCORE}."
                )
        aggregate = aggregate_scores(entries, stream_value, form_category.policy or POLICY_LATEST)
        course_text = course_name.strip() or "Course not set"
        return ClassifiedSubmission(
            form_key=form_category.key,
            category=form_category.category,
            sub_type=form_category.sub_type or form_category.key,
            candidate_points=Decimal(aggregate.points),
            title=f"Academic {form_category.score_label} Performance - {course_text}",
            description=(
                f"Course: {course_text}. Stream: {stream_value.upper()}. "
                f"{form_category.period_label}-wise {form_category.score_label}: {_score_summary(form_category, entries)}."
            ),
            achievement_date=today or date.today(),
            academic_score=aggregate.score,
        )

    clean_title = (title or "").strip()
    if not clean_title:
        raise ValidationError("Title is required.")
    checked_date = validate_achievement_date(achievement_date, window[0], window[1])

    if form_category.scoring == SCORING_SCOPE:
        sub_type = _norm_key(scope)
        if not sub_type:
            raise ValidationError("Please select an experience level.")
        points = scope_points(sub_type)
    else:
        sub_type = _norm_key(level)
        if not sub_type:
            raise ValidationError("Please select an achievement level.")
        points = level_points(sub_type)

    return ClassifiedSubmission(
        form_key=form_category.key,
        category=form_category.category,
        sub_type=sub_type,
        candidate_points=points,
        title=clean_title,
        description=(description or "").strip(),
        achievement_date=checked_date,
    )


def approved_category_totals(submissions: Iterable[Any]) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = {}
    for row in submissions:
        if _field(row, "status") != "approved":
            continue
        category = str(_field(row, "category") or "")
        totals[category] = totals.get(category, ZERO) + to_decimal(_field(row, "points_awarded"))
    return {key: value.quantize(CENT) for key, value in totals.items()}


def approved_total(submissions: Iterable[Any]) -> Decimal:
    return sum(approved_category_totals(submissions).values(), ZERO).quantize(CENT)


def _recency_key(row: Any) -> tuple[float, int]:
    created_at = _field(row, "created_at")
    achieved = _field(row, "achievement_date")
    return (
        created_at.timestamp() if isinstance(created_at, datetime) else 0.0,
        achieved.toordinal() if isinstance(achieved, date) else 0,
    )


def latest_academic_score(submissions: Iterable[Any]) -> Decimal:
    latest: Any = None
    for row in submissions:
        if _field(row, "status") != "approved" or _field(row, "category") != Category.ACADEMIC_SCORE.value:
            continue
        if _field(row, "academic_score") is None:
            continue
        if latest is None or _recency_key(row) >= _recency_key(latest):
            latest = row
    if latest is None:
        return ZERO
    return to_decimal(_field(latest, "academic_score"))


def compute_percentile(position: int, total: int) -> Decimal:
    if total <= 0:
        return ZERO
    value = Decimal(total - position + 1) / Decimal(total) * 100
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def rank_students(candidates: Iterable[MeritCandidate]) -> list[RankedStudent]:
    # sorted() is stable, so ties beyond the tie-break score keep input order
    ordered = sorted(
        candidates,
        key=lambda item: (-to_decimal(item.total_points), -to_decimal(item.tie_break_score)),
    )
    total = len(ordered)
    return [
        RankedStudent(
            student_id=item.student_id,
            total_points=quantize_points(item.total_points),
            tie_break_score=quantize_points(item.tie_break_score),
            rank=position,
            percentile=compute_percentile(position, total),
        )
        for position, item in enumerate(ordered, start=1)
    ]
