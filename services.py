from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import store
from auth import hash_password, normalize_email
from errors import CappedWarning, PersistenceError, UploadError, ValidationError
from logic import (
    ZERO,
    MeritCandidate,
    approved_category_totals,
    approved_total,
    classify_submission,
    derive_stream,
    enforce_category_cap,
    latest_academic_score,
    quantize_points,
    rank_students,
    to_decimal,
)
from models import AuditLog, MeritEvaluation, Profile, Submission
from settings import Settings, get_settings
from storage import FileStore, build_proof_path, upload_with_timeout

logger = logging.getLogger(__name__)

ROLES = {"student", "admin"}
REVIEW_DECISIONS = {"approved", "rejected"}
MAX_POINTS_PER_SUBMISSION = Decimal("5")
MAX_PROOF_BYTES = 10 * 1024 * 1024
MIN_PASSWORD_LENGTH = 6


@dataclass
class ProofUpload:
    file_name: str
    data: bytes


@dataclass
class SubmissionResult:
    submission: Submission
    notices: list[CappedWarning] = field(default_factory=list)

    @property
    def capped(self) -> bool:
        return bool(self.notices)


@dataclass
class MeritBatch:
    batch_id: uuid.UUID
    evaluation_date: datetime
    academic_year: str
    semester: str | None
    filters: dict[str, Any]
    evaluations: list[MeritEvaluation]


def _as_uuid(value: str | uuid.UUID) -> uuid.UUID:
    try:
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid identifier: {value}") from None


def _log_action(db: Session, user_id: uuid.UUID | None, action: str, details: dict[str, Any]) -> None:
    store.insert(db, AuditLog(user_id=user_id, action=action, details_json=details))


def _require_profile(db: Session, profile_id: str | uuid.UUID, lock: bool = False) -> Profile:
    rows = store.find(db, Profile, for_update=lock, id=_as_uuid(profile_id))
    if not rows:
        raise ValidationError("Profile not found.")
    return rows[0]


def _clean(value: str | None) -> str | None:
    text = (value or "").strip()
    return text or None


def _check_year_of_study(year_of_study: Any) -> int | None:
    if year_of_study in (None, ""):
        return None
    try:
        year = int(year_of_study)
    except (TypeError, ValueError):
        raise ValidationError("Year of study must be a number between 1 and 4.") from None
    if not 1 <= year <= 4:
        raise ValidationError("Year of study must be a number between 1 and 4.")
    return year


def register_profile(
    db: Session,
    *,
    email: str,
    password: str,
    repeat_password: str,
    full_name: str,
    role: str = "student",
    student_id: str | None = None,
    course_name: str | None = None,
    year_of_study: Any = None,
    phone: str | None = None,
) -> Profile:
    email_value = normalize_email(email)
    if not email_value or not (full_name or "").strip():
        raise ValidationError("Email and full name are required.")
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}")
    if password != repeat_password:
        raise ValidationError("Passwords do not match")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if role == "student" and not _clean(student_id):
        raise ValidationError("Student ID is required for student accounts")
    year = _check_year_of_study(year_of_study)
    if store.find(db, Profile, email=email_value):
        raise ValidationError("An account with this email already exists.")

    profile = store.insert(
        db,
        Profile(
            role=role,
            email=email_value,
            password_hash=hash_password(password),
            full_name=full_name.strip(),
            student_id=_clean(student_id),
            course_name=_clean(course_name),
            stream=derive_stream(course_name),
            year_of_study=year,
            phone=_clean(phone),
        ),
    )
    _log_action(db, profile.id, "profile_registered", {"role": role, "stream": profile.stream})
    logger.info("Registered %s profile %s", role, profile.id)
    return profile


def update_profile(
    db: Session,
    profile_id: str | uuid.UUID,
    *,
    full_name: str,
    student_id: str | None,
    course_name: str | None,
    year_of_study: Any,
    phone: str | None,
) -> Profile:
    profile = _require_profile(db, profile_id)
    if not (full_name or "").strip():
        raise ValidationError("Full name is required.")
    if profile.role == "student" and not _clean(student_id):
        raise ValidationError("Student ID is required for student accounts")

    previous_stream = profile.stream
    profile.full_name = full_name.strip()
    profile.student_id = _clean(student_id)
    profile.course_name = _clean(course_name)
    profile.stream = derive_stream(course_name)
    profile.year_of_study = _check_year_of_study(year_of_study)
    profile.phone = _clean(phone)
    try:
        db.flush()
    except SQLAlchemyError as exc:
        raise PersistenceError("Failed to update profile. Please try again.") from exc

    _log_action(
        db,
        profile.id,
        "profile_updated",
        {"course_name": profile.course_name, "stream": profile.stream, "previous_stream": previous_stream},
    )
    return profile


def category_totals(db: Session, student_id: str | uuid.UUID) -> dict[str, Decimal]:
    rows = store.find(db, Submission, student_id=_as_uuid(student_id), status="approved")
    return approved_category_totals(rows)


def list_submissions(
    db: Session,
    student_id: str | uuid.UUID | None = None,
    status: str | None = None,
) -> list[Submission]:
    filters: dict[str, Any] = {}
    if student_id is not None:
        filters["student_id"] = _as_uuid(student_id)
    if status:
        filters["status"] = status
    return store.find(db, Submission, order_by=Submission.created_at.desc(), **filters)


def create_submission(
    db: Session,
    student_id: str | uuid.UUID,
    form_key: str,
    *,
    level: str | None = None,
    scope: str | None = None,
    scores: list[tuple[int, Any]] | None = None,
    title: str = "",
    description: str = "",
    achievement_date: Any = None,
    proof: ProofUpload | None = None,
    file_store: FileStore | None = None,
    settings: Settings | None = None,
    today: date | None = None,
) -> SubmissionResult:
    settings = settings or get_settings()

    if proof is not None:
        if not proof.data:
            raise ValidationError("The proof file is empty.")
        if len(proof.data) > MAX_PROOF_BYTES:
            raise ValidationError("The proof file exceeds the 10 MB limit.")

    # Locking the owner serialises concurrent cap checks for one student.
    student = _require_profile(db, student_id, lock=True)
    if student.role != "student":
        raise ValidationError("Only student accounts can submit achievements.")

    classified = classify_submission(
        form_key,
        stream=student.stream,
        window=(settings.academic_year_start, settings.academic_year_end),
        level=level,
        scope=scope,
        scores=scores,
        title=title,
        description=description,
        achievement_date=achievement_date,
        course_name=student.course_name or "",
        today=today,
    )
    category = classified.category.value
    existing = category_totals(db, student.id).get(category, ZERO)
    decision = enforce_category_cap(existing, classified.candidate_points, settings.category_cap, category)

    proof_url = proof_path = proof_name = None
    if proof is not None:
        if file_store is None:
            raise UploadError("Proof storage is not configured.")
        proof_path = build_proof_path(str(student.id), proof.file_name)
        proof_url = upload_with_timeout(
            file_store,
            settings.proof_bucket,
            proof_path,
            proof.data,
            settings.upload_timeout_seconds,
        )
        proof_name = proof.file_name

    status = "approved" if settings.approval_policy == "auto" else "pending"
    submission = Submission(
        student_id=student.id,
        category=category,
        sub_type=classified.sub_type,
        title=classified.title,
        description=classified.description or None,
        achievement_date=classified.achievement_date,
        academic_score=classified.academic_score,
        points_awarded=decision.awarded,
        status=status,
        proof_url=proof_url,
        proof_path=proof_path,
        proof_file_name=proof_name,
    )
    try:
        store.insert(db, submission)
        _log_action(
            db,
            student.id,
            "submission_created",
            {
                "submission_id": str(submission.id),
                "category": category,
                "sub_type": classified.sub_type,
                "candidate_points": str(decision.candidate),
                "points_awarded": str(decision.awarded),
                "status": status,
            },
        )
    except PersistenceError:
        if proof_path and file_store is not None:
            file_store.remove(settings.proof_bucket, proof_path)
        raise

    notices = []
    if decision.capped:
        notices.append(CappedWarning(category, decision.candidate, decision.awarded))
        logger.info("Capped %s submission for %s: %s -> %s", category, student.id, decision.candidate, decision.awarded)
    return SubmissionResult(submission=submission, notices=notices)


def review_submission(
    db: Session,
    submission_id: str | uuid.UUID,
    reviewer_id: str | uuid.UUID,
    decision: str,
    points: Any = None,
    remarks: str | None = None,
    settings: Settings | None = None,
) -> SubmissionResult:
    settings = settings or get_settings()
    reviewer = _require_profile(db, reviewer_id)
    if reviewer.role != "admin":
        raise ValidationError("Only admins can review submissions.")
    if decision not in REVIEW_DECISIONS:
        raise ValidationError(f"Unknown review decision: {decision}")

    rows = store.find(db, Submission, id=_as_uuid(submission_id))
    if not rows:
        raise ValidationError("Submission not found.")
    submission = rows[0]
    _require_profile(db, submission.student_id, lock=True)
    # The status check must see rows committed by other reviewers, not the identity map.
    try:
        db.refresh(submission, with_for_update=True)
    except SQLAlchemyError as exc:
        raise PersistenceError("Failed to load the submission for review.") from exc
    if submission.status != "pending":
        raise ValidationError("Only pending submissions can be reviewed.")

    notices = []
    if decision == "approved":
        proposed = quantize_points(points if points not in (None, "") else submission.points_awarded)
        if proposed < ZERO or proposed > MAX_POINTS_PER_SUBMISSION:
            raise ValidationError("Points must be between 0 and 5.")
        existing = category_totals(db, submission.student_id).get(submission.category, ZERO)
        cap_decision = enforce_category_cap(existing, proposed, settings.category_cap, submission.category)
        if cap_decision.capped:
            notices.append(CappedWarning(submission.category, cap_decision.candidate, cap_decision.awarded))
        submission.points_awarded = cap_decision.awarded
    else:
        submission.points_awarded = ZERO

    submission.status = decision
    submission.admin_remarks = _clean(remarks)
    submission.reviewed_by = reviewer.id
    submission.reviewed_at = datetime.now(timezone.utc)
    try:
        db.flush()
    except SQLAlchemyError as exc:
        raise PersistenceError("Failed to save the review.") from exc

    _log_action(
        db,
        reviewer.id,
        "submission_reviewed",
        {"submission_id": str(submission.id), "status": decision, "points_awarded": str(submission.points_awarded)},
    )
    return SubmissionResult(submission=submission, notices=notices)


def delete_submission(
    db: Session,
    submission_id: str | uuid.UUID,
    student_id: str | uuid.UUID,
    file_store: FileStore | None = None,
    settings: Settings | None = None,
) -> None:
    settings = settings or get_settings()
    rows = store.find(db, Submission, id=_as_uuid(submission_id))
    if not rows:
        raise ValidationError("Submission not found.")
    submission = rows[0]
    if submission.student_id != _as_uuid(student_id):
        raise ValidationError("You can only delete your own submissions.")

    proof_path = submission.proof_path
    details = {"submission_id": str(submission.id), "category": submission.category, "status": submission.status}
    store.delete(db, Submission, id=submission.id)
    _log_action(db, submission.student_id, "submission_deleted", details)
    if proof_path and file_store is not None:
        file_store.remove(settings.proof_bucket, proof_path)


def student_standings(
    db: Session,
    course_name: str | None = None,
    year_of_study: int | None = None,
) -> list[dict[str, Any]]:
    filters: dict[str, Any] = {"role": "student"}
    if course_name:
        filters["course_name"] = course_name
    if year_of_study:
        filters["year_of_study"] = int(year_of_study)
    students = store.find(db, Profile, order_by=[Profile.created_at, Profile.id], **filters)
    by_student = _submissions_by_student(db, [s.id for s in students], approved_only=False)

    rows = []
    for student in students:
        submissions = by_student.get(student.id, [])
        rows.append(
            {
                "id": str(student.id),
                "full_name": student.full_name,
                "student_id": student.student_id,
                "course_name": student.course_name,
                "stream": student.stream,
                "year_of_study": student.year_of_study,
                "total_submissions": len(submissions),
                "approved_submissions": sum(1 for s in submissions if s.status == "approved"),
                "pending_submissions": sum(1 for s in submissions if s.status == "pending"),
                "total_points": approved_total(submissions),
            }
        )
    rows.sort(key=lambda item: item["total_points"], reverse=True)
    return rows


def course_options(db: Session) -> list[str]:
    names = db.scalars(
        select(Profile.course_name).where(Profile.role == "student", Profile.course_name.is_not(None)).distinct()
    ).all()
    return sorted(name for name in names if name)


def admin_overview(db: Session) -> dict[str, int]:
    status_counts = Counter(
        dict(db.execute(select(Submission.status, func.count()).group_by(Submission.status)).all())
    )
    return {
        "students": db.scalar(select(func.count()).select_from(Profile).where(Profile.role == "student")) or 0,
        "submissions": sum(status_counts.values()),
        "pending": status_counts.get("pending", 0),
        "approved": status_counts.get("approved", 0),
        "rejected": status_counts.get("rejected", 0),
        "merit_batches": db.scalar(select(func.count(func.distinct(MeritEvaluation.batch_id)))) or 0,
    }


def _submissions_by_student(
    db: Session,
    student_ids: list[uuid.UUID],
    approved_only: bool = True,
) -> dict[uuid.UUID, list[Submission]]:
    if not student_ids:
        return {}
    stmt = select(Submission).where(Submission.student_id.in_(student_ids))
    if approved_only:
        stmt = stmt.where(Submission.status == "approved")
    grouped: dict[uuid.UUID, list[Submission]] = {}
    for row in db.scalars(stmt).all():
        grouped.setdefault(row.student_id, []).append(row)
    return grouped


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _next_evaluation_date(db: Session, now: datetime | None = None) -> datetime:
    stamp = _as_aware(now or datetime.now(timezone.utc))
    latest = store.find(db, MeritEvaluation, order_by=MeritEvaluation.evaluation_date.desc(), limit=1)
    if latest:
        previous = _as_aware(latest[0].evaluation_date)
        if stamp <= previous:
            stamp = previous + timedelta(microseconds=1)
    return stamp


def generate_merit_batch(
    db: Session,
    academic_year: str,
    *,
    semester: str | None = None,
    stream: str | None = None,
    year_of_study: int | None = None,
    course_name: str | None = None,
    actor_id: str | uuid.UUID | None = None,
    now: datetime | None = None,
) -> MeritBatch:
    academic_year = (academic_year or "").strip()
    if not academic_year:
        raise ValidationError("Academic year is required.")

    filters: dict[str, Any] = {"role": "student"}
    if stream:
        filters["stream"] = stream
    if year_of_study:
        filters["year_of_study"] = int(year_of_study)
    if course_name:
        filters["course_name"] = course_name

    # Creation order is the final tie-break; see DESIGN.md.
    students = store.find(db, Profile, order_by=[Profile.created_at, Profile.id], **filters)
    if not students:
        raise ValidationError("No students found")

    approved = _submissions_by_student(db, [s.id for s in students])
    candidates = []
    for student in students:
        rows = approved.get(student.id, [])
        candidates.append(
            MeritCandidate(
                student_id=student.id,
                total_points=approved_total(rows),
                tie_break_score=latest_academic_score(rows),
            )
        )

    ranked = rank_students(candidates)
    batch_id = uuid.uuid4()
    evaluation_date = _next_evaluation_date(db, now)
    filter_details = {
        "stream": stream,
        "year_of_study": int(year_of_study) if year_of_study else None,
        "course_name": course_name,
    }
    evaluations = [
        store.insert(
            db,
            MeritEvaluation(
                batch_id=batch_id,
                student_id=item.student_id,
                academic_year=academic_year,
                semester=_clean(semester),
                total_points=item.total_points,
                tie_break_score=item.tie_break_score,
                rank=item.rank,
                percentile=item.percentile,
                filters_json=filter_details,
                evaluation_date=evaluation_date,
            ),
        )
        for item in ranked
    ]
    _log_action(
        db,
        _as_uuid(actor_id) if actor_id else None,
        "merit_batch_generated",
        {"batch_id": str(batch_id), "students": len(evaluations), "academic_year": academic_year, **filter_details},
    )
    logger.info("Generated merit batch %s for %d students", batch_id, len(evaluations))
    return MeritBatch(
        batch_id=batch_id,
        evaluation_date=evaluation_date,
        academic_year=academic_year,
        semester=_clean(semester),
        filters=filter_details,
        evaluations=evaluations,
    )


def merit_batch(db: Session, batch_id: str | uuid.UUID) -> MeritBatch | None:
    rows = store.find(db, MeritEvaluation, order_by=MeritEvaluation.rank, batch_id=_as_uuid(batch_id))
    if not rows:
        return None
    first = rows[0]
    return MeritBatch(
        batch_id=first.batch_id,
        evaluation_date=_as_aware(first.evaluation_date),
        academic_year=first.academic_year,
        semester=first.semester,
        filters=dict(first.filters_json or {}),
        evaluations=rows,
    )


def latest_merit_batch(db: Session) -> MeritBatch | None:
    latest = store.find(db, MeritEvaluation, order_by=MeritEvaluation.evaluation_date.desc(), limit=1)
    if not latest:
        return None
    return merit_batch(db, latest[0].batch_id)


def list_merit_batches(db: Session) -> list[dict[str, Any]]:
    rows = db.execute(
        select(
            MeritEvaluation.batch_id,
            MeritEvaluation.academic_year,
            MeritEvaluation.semester,
            MeritEvaluation.evaluation_date,
            func.count(MeritEvaluation.id),
        )
        .group_by(
            MeritEvaluation.batch_id,
            MeritEvaluation.academic_year,
            MeritEvaluation.semester,
            MeritEvaluation.evaluation_date,
        )
        .order_by(MeritEvaluation.evaluation_date.desc())
    ).all()
    return [
        {
            "batch_id": str(batch_id),
            "academic_year": academic_year,
            "semester": semester,
            "evaluation_date": _as_aware(evaluation_date),
            "students": count,
        }
        for batch_id, academic_year, semester, evaluation_date, count in rows
    ]


def merit_batch_rows(db: Session, batch: MeritBatch) -> list[dict[str, Any]]:
    profiles = {
        p.id: p
        for p in db.scalars(select(Profile).where(Profile.id.in_([e.student_id for e in batch.evaluations]))).all()
    }
    rows = []
    for evaluation in batch.evaluations:
        profile = profiles.get(evaluation.student_id)
        rows.append(
            {
                "rank": evaluation.rank,
                "full_name": profile.full_name if profile else "-",
                "student_id": profile.student_id if profile else "-",
                "course_name": profile.course_name if profile else "-",
                "stream": profile.stream if profile else "-",
                "year_of_study": profile.year_of_study if profile else None,
                "total_points": to_decimal(evaluation.total_points),
                "tie_break_score": to_decimal(evaluation.tie_break_score),
                "percentile": to_decimal(evaluation.percentile),
            }
        )
    return rows
