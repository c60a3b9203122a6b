from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="student")  # student | admin
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    student_id: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)
    course_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    stream: Mapped[str] = mapped_column(String(20), nullable=False, default="humanities")
    year_of_study: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    submissions = relationship("Submission", back_populates="student", foreign_keys="Submission.student_id")
    evaluations = relationship("MeritEvaluation", back_populates="student")

    __table_args__ = (
        CheckConstraint("role in ('student', 'admin')", name="ck_profiles_role"),
        CheckConstraint("stream in ('humanities', 'commerce', 'science')", name="ck_profiles_stream"),
        CheckConstraint("year_of_study is null or (year_of_study between 1 and 4)", name="ck_profiles_year_of_study"),
        Index("ix_profiles_role", "role"),
        Index("ix_profiles_course_name", "course_name"),
    )


class Submission(Base):
    __tablename__ = "submissions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("profiles.id"), nullable=False)
    category: Mapped[str] = mapped_column(String(60), nullable=False)  # canonical label, see logic.Category
    sub_type: Mapped[str] = mapped_column(String(40), nullable=False)  # rank1 | international | cgpa_performance ...
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    achievement_date: Mapped[date] = mapped_column(Date, nullable=False)
    academic_score: Mapped[Optional[Decimal]] = mapped_column(Numeric(4, 2), nullable=True)
    points_awarded: Mapped[Decimal] = mapped_column(Numeric(4, 2), nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")  # pending | approved | rejected
    proof_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    proof_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    proof_file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    admin_remarks: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("profiles.id"), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    student = relationship("Profile", back_populates="submissions", foreign_keys=[student_id])

    __table_args__ = (
        CheckConstraint("status in ('pending', 'approved', 'rejected')", name="ck_submissions_status"),
        CheckConstraint("points_awarded >= 0 and points_awarded <= 5", name="ck_submissions_points"),
        Index("ix_submissions_student_id", "student_id"),
        Index("ix_submissions_student_category_status", "student_id", "category", "status"),
    )


class MeritEvaluation(Base):
    __tablename__ = "merit_evaluations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("profiles.id"), nullable=False)
    academic_year: Mapped[str] = mapped_column(String(20), nullable=False)
    semester: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    total_points: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    tie_break_score: Mapped[Decimal] = mapped_column(Numeric(4, 2), nullable=False, default=Decimal("0"))
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    percentile: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    filters_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    evaluation_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    student = relationship("Profile", back_populates="evaluations")

    __table_args__ = (
        Index("ix_merit_evaluations_batch_id", "batch_id"),
        Index("ix_merit_evaluations_evaluation_date", "evaluation_date"),
        Index("ix_merit_evaluations_student_id", "student_id"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("profiles.id"), nullable=True)
    action: Mapped[str] = mapped_column(String(120), nullable=False)
    details_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
