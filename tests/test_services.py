from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from urllib.request import urlopen

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import store as store_module
from errors import CapacityExceededError, CappedWarning, PersistenceError, UploadError, ValidationError
from models import AuditLog, Base, MeritEvaluation, Submission
from services import (
    ProofUpload,
    category_totals,
    create_submission,
    delete_submission,
    generate_merit_batch,
    latest_merit_batch,
    list_merit_batches,
    list_submissions,
    merit_batch_rows,
    register_profile,
    review_submission,
    student_standings,
    update_profile,
)

IN_WINDOW = date(2024, 8, 15)


class BrokenStore:
    def __init__(self) -> None:
        self.removed: list[str] = []

    def upload(self, bucket: str, path: str, data: bytes) -> None:
        raise RuntimeError("disk full")

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"/proofs/{bucket}/{path}"

    def remove(self, bucket: str, path: str) -> None:
        self.removed.append(path)


def _level_submission(db, student, settings, form_key="extra_curricular", level="rank1", **kwargs):
    return create_submission(
        db,
        student.id,
        form_key,
        level=level,
        title=kwargs.pop("title", "Inter-college Debate"),
        achievement_date=kwargs.pop("achievement_date", IN_WINDOW),
        settings=settings,
        **kwargs,
    )


def _proof_files(settings) -> list[Path]:
    return [p for p in (Path(settings.proof_storage_dir) / settings.proof_bucket).rglob("*") if p.is_file()]


def test_register_profile_derives_stream(student) -> None:
    assert student.role == "student"
    assert student.stream == "science"
    assert student.email == "aditi.sharma@example.edu"


def test_register_profile_validations(db, student) -> None:
    with pytest.raises(ValidationError, match="Passwords do not match"):
        register_profile(db, email="x@example.edu", password="secret123", repeat_password="other123", full_name="X", student_id="1")
    with pytest.raises(ValidationError, match="Student ID is required"):
        register_profile(db, email="x@example.edu", password="secret123", repeat_password="secret123", full_name="X")
    with pytest.raises(ValidationError, match="already exists"):
        register_profile(
            db,
            email="Aditi.Sharma@example.edu",
            password="secret123",
            repeat_password="secret123",
            full_name="Another",
            student_id="2",
        )


def test_update_profile_rederives_stream(db, student) -> None:
    updated = update_profile(
        db,
        student.id,
        full_name="Aditi S.",
        student_id="DU-1",
        course_name="B.Com (Honours)",
        year_of_study=3,
        phone="",
    )
    assert updated.stream == "commerce"
    assert updated.year_of_study == 3
    assert updated.phone is None


def test_auto_approved_submission_records_points_and_audit(db, student, settings) -> None:
    result = _level_submission(db, student, settings)
    submission = result.submission

    assert submission.status == "approved"
    assert submission.category == "Extra Curricular"
    assert submission.sub_type == "rank1"
    assert submission.points_awarded == Decimal("2.0")
    assert result.capped is False
    assert category_totals(db, student.id) == {"Extra Curricular": Decimal("2.00")}
    assert len(store_module.find(db, AuditLog, action="submission_created")) == 1


def test_cap_clamps_then_rejects(db, student, settings) -> None:
    _level_submission(db, student, settings)
    _level_submission(db, student, settings)
    clamped = _level_submission(db, student, settings, level="rank2")

    assert clamped.submission.points_awarded == Decimal("1.00")
    assert clamped.capped is True
    assert isinstance(clamped.notices[0], CappedWarning)

    with pytest.raises(CapacityExceededError, match="Limit reached"):
        _level_submission(db, student, settings, level="participation")

    assert len(list_submissions(db, student_id=student.id)) == 3
    assert category_totals(db, student.id)["Extra Curricular"] == Decimal("5.00")


def test_caps_are_tracked_per_category(db, student, settings) -> None:
    for _ in range(3):
        _level_submission(db, student, settings)
    sports = _level_submission(db, student, settings, form_key="sports", level="rank1", title="Athletics")
    assert sports.submission.points_awarded == Decimal("2.0")
    assert sports.capped is False


def test_out_of_window_date_writes_nothing(db, student, settings) -> None:
    with pytest.raises(ValidationError):
        _level_submission(db, student, settings, achievement_date=date(2023, 12, 1))
    assert store_module.find(db, Submission) == []


def test_admin_cannot_submit(db, admin, settings) -> None:
    with pytest.raises(ValidationError):
        _level_submission(db, admin, settings)


def test_cgpa_submission_uses_student_stream(db, student, settings) -> None:
    result = create_submission(
        db,
        student.id,
        "academic_cgpa",
        scores=[(1, "8.1"), (2, "8.6"), (3, ""), (4, "")],
        settings=settings,
        today=date(2024, 5, 2),
    )
    submission = result.submission
    assert submission.category == "Academic (CGPA)"
    assert submission.sub_type == "cgpa_performance"
    assert submission.academic_score == Decimal("8.60")
    assert submission.points_awarded == Decimal("4")
    assert submission.title == "Academic CGPA Performance - B.Sc. Electronics"
    assert submission.achievement_date == date(2024, 5, 2)


def test_proof_is_uploaded_and_linked(db, student, settings, file_store) -> None:
    proof = ProofUpload(file_name="Certificate.PDF", data=b"%PDF-1.4 certificate")
    submission = _level_submission(db, student, settings, proof=proof, file_store=file_store).submission

    assert submission.proof_path.startswith(f"{student.id}/")
    assert submission.proof_path.endswith(".pdf")
    with urlopen(submission.proof_url) as response:
        assert response.read() == proof.data
    assert submission.proof_file_name == "Certificate.PDF"
    assert file_store.read(settings.proof_bucket, submission.proof_path) == proof.data


def test_empty_proof_rejected(db, student, settings, file_store) -> None:
    with pytest.raises(ValidationError):
        _level_submission(db, student, settings, proof=ProofUpload("empty.pdf", b""), file_store=file_store)


def test_upload_failure_writes_no_submission(db, student, settings) -> None:
    with pytest.raises(UploadError, match="disk full"):
        _level_submission(db, student, settings, proof=ProofUpload("proof.png", b"png"), file_store=BrokenStore())
    assert store_module.find(db, Submission) == []


def test_insert_failure_removes_uploaded_proof(db, student, settings, file_store, monkeypatch) -> None:
    def failing_insert(db, record):
        raise PersistenceError("Could not insert into submissions")

    monkeypatch.setattr(store_module, "insert", failing_insert)
    with pytest.raises(PersistenceError):
        _level_submission(db, student, settings, proof=ProofUpload("proof.pdf", b"data"), file_store=file_store)

    assert _proof_files(settings) == []


def test_review_policy_creates_pending_submissions(db, student, review_settings) -> None:
    result = _level_submission(db, student, review_settings)
    assert result.submission.status == "pending"
    assert result.submission.points_awarded == Decimal("2.0")
    assert category_totals(db, student.id) == {}


def test_review_approval_rechecks_cap(db, student, admin, review_settings) -> None:
    pending = [_level_submission(db, student, review_settings).submission for _ in range(3)]

    for submission in pending[:2]:
        review_submission(db, submission.id, admin.id, "approved", settings=review_settings)
    last = review_submission(db, pending[2].id, admin.id, "approved", remarks="Good work", settings=review_settings)

    assert last.submission.points_awarded == Decimal("1.00")
    assert last.capped is True
    assert last.submission.reviewed_by == admin.id
    assert last.submission.admin_remarks == "Good work"
    assert category_totals(db, student.id)["Extra Curricular"] == Decimal("5.00")


def test_review_points_override_and_rejection(db, student, admin, review_settings) -> None:
    first = _level_submission(db, student, review_settings).submission
    second = _level_submission(db, student, review_settings).submission

    approved = review_submission(db, first.id, admin.id, "approved", points="1.5", settings=review_settings)
    rejected = review_submission(db, second.id, admin.id, "rejected", settings=review_settings)

    assert approved.submission.points_awarded == Decimal("1.50")
    assert rejected.submission.status == "rejected"
    assert rejected.submission.points_awarded == Decimal("0")

    with pytest.raises(ValidationError, match="Only pending"):
        review_submission(db, second.id, admin.id, "approved", settings=review_settings)
    with pytest.raises(ValidationError):
        review_submission(db, first.id, student.id, "rejected", settings=review_settings)


def test_review_rejects_out_of_range_points(db, student, admin, review_settings) -> None:
    submission = _level_submission(db, student, review_settings).submission
    with pytest.raises(ValidationError, match="between 0 and 5"):
        review_submission(db, submission.id, admin.id, "approved", points="7", settings=review_settings)


def test_second_reviewer_sees_committed_decision(tmp_path, review_settings) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'reviews.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    first, second = factory(), factory()
    try:
        student = register_profile(
            first,
            email="aditi@example.edu",
            password="secret123",
            repeat_password="secret123",
            full_name="Aditi Sharma",
            student_id="DU2024001",
            course_name="B.Sc. Electronics",
            year_of_study=2,
        )
        admin = register_profile(
            first,
            email="admin@example.edu",
            password="secret123",
            repeat_password="secret123",
            full_name="Portal Admin",
            role="admin",
        )
        pending = _level_submission(first, student, review_settings).submission
        first.commit()

        assert second.get(Submission, pending.id).status == "pending"

        review_submission(first, pending.id, admin.id, "approved", settings=review_settings)
        first.commit()

        with pytest.raises(ValidationError, match="Only pending"):
            review_submission(second, pending.id, admin.id, "approved", settings=review_settings)
        assert category_totals(second, student.id)["Extra Curricular"] == Decimal("2.00")
    finally:
        first.close()
        second.close()
        engine.dispose()


def test_delete_submission_owner_only(db, student, make_student, settings, file_store) -> None:
    other = make_student("Rahul Verma")
    proof = ProofUpload("proof.pdf", b"proof")
    submission = _level_submission(db, student, settings, proof=proof, file_store=file_store).submission

    with pytest.raises(ValidationError, match="your own"):
        delete_submission(db, submission.id, other.id, file_store=file_store, settings=settings)

    delete_submission(db, submission.id, student.id, file_store=file_store, settings=settings)
    assert list_submissions(db, student_id=student.id) == []
    assert _proof_files(settings) == []


def _merit_fixture(db, make_student, settings):
    a = make_student("Aditi Sharma")
    b = make_student("Rahul Verma")
    c = make_student("Meera Iyer")
    create_submission(db, a.id, "academic_cgpa", scores=[(1, "8.6")], settings=settings)
    create_submission(db, b.id, "academic_cgpa", scores=[(1, "7.6")], settings=settings)
    _level_submission(db, b, settings, form_key="sports", title="Athletics")
    return a, b, c


def test_merit_batch_ranks_by_points_then_academic_score(db, make_student, settings) -> None:
    a, b, c = _merit_fixture(db, make_student, settings)

    batch = generate_merit_batch(db, "2024-2025", semester="Fall")

    assert [row.student_id for row in batch.evaluations] == [a.id, b.id, c.id]
    assert [row.rank for row in batch.evaluations] == [1, 2, 3]
    assert [row.total_points for row in batch.evaluations] == [Decimal("4.00"), Decimal("4.00"), Decimal("0.00")]
    assert [row.tie_break_score for row in batch.evaluations] == [Decimal("8.60"), Decimal("7.60"), Decimal("0.00")]
    assert [row.percentile for row in batch.evaluations] == [Decimal("100.00"), Decimal("66.67"), Decimal("33.33")]
    assert {row.batch_id for row in batch.evaluations} == {batch.batch_id}

    rows = merit_batch_rows(db, batch)
    assert [row["full_name"] for row in rows] == ["Aditi Sharma", "Rahul Verma", "Meera Iyer"]


def test_merit_batch_ignores_pending_submissions(db, make_student, review_settings) -> None:
    a = make_student("Aditi Sharma")
    _level_submission(db, a, review_settings)
    batch = generate_merit_batch(db, "2024-2025")
    assert batch.evaluations[0].total_points == Decimal("0.00")


def test_repeated_merit_runs_create_separate_batches(db, make_student, settings) -> None:
    _merit_fixture(db, make_student, settings)
    now = datetime(2025, 1, 10, 9, 30, tzinfo=timezone.utc)

    first = generate_merit_batch(db, "2024-2025", now=now)
    second = generate_merit_batch(db, "2024-2025", now=now)

    assert first.batch_id != second.batch_id
    assert second.evaluation_date > first.evaluation_date
    assert [r.rank for r in first.evaluations] == [r.rank for r in second.evaluations]
    assert [r.percentile for r in first.evaluations] == [r.percentile for r in second.evaluations]
    assert len(store_module.find(db, MeritEvaluation)) == 6

    latest = latest_merit_batch(db)
    assert latest.batch_id == second.batch_id
    history = list_merit_batches(db)
    assert [item["batch_id"] for item in history] == [str(second.batch_id), str(first.batch_id)]
    assert history[0]["students"] == 3


def test_merit_batch_filters(db, make_student, settings) -> None:
    make_student("Aditi Sharma", course_name="B.Sc. Electronics", year_of_study=2)
    commerce = make_student("Rahul Verma", course_name="B.Com (Honours)", year_of_study=3)

    batch = generate_merit_batch(db, "2024-2025", stream="commerce")
    assert [row.student_id for row in batch.evaluations] == [commerce.id]
    assert batch.filters["stream"] == "commerce"

    with pytest.raises(ValidationError, match="No students found"):
        generate_merit_batch(db, "2024-2025", stream="humanities")
    with pytest.raises(ValidationError):
        generate_merit_batch(db, "  ")


def test_latest_merit_batch_empty(db) -> None:
    assert latest_merit_batch(db) is None
    assert list_merit_batches(db) == []


def test_student_standings_sorted_by_points(db, make_student, settings) -> None:
    a, b, c = _merit_fixture(db, make_student, settings)
    _level_submission(db, a, settings, form_key="outreach", level="participation", title="Literacy Drive")

    rows = student_standings(db)
    assert [row["full_name"] for row in rows] == ["Aditi Sharma", "Rahul Verma", "Meera Iyer"]
    assert rows[0]["total_points"] == Decimal("4.50")
    assert rows[1]["approved_submissions"] == 2

    filtered = student_standings(db, year_of_study=4)
    assert filtered == []


def test_evaluation_dates_move_forward_past_clock_skew(db, make_student, settings) -> None:
    _merit_fixture(db, make_student, settings)
    later = datetime(2025, 2, 1, tzinfo=timezone.utc)
    generate_merit_batch(db, "2024-2025", now=later)
    skewed = generate_merit_batch(db, "2024-2025", now=later - timedelta(hours=1))
    assert skewed.evaluation_date > later
