from __future__ import annotations

from dataclasses import replace
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base, Profile
from services import register_profile
from settings import Settings
from storage import LocalFileStore


@pytest.fixture
def db() -> Session:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    session = factory()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        academic_year_start=date(2024, 4, 1),
        academic_year_end=date(2025, 3, 31),
        proof_storage_dir=str(tmp_path / "proofs"),
        upload_timeout_seconds=5.0,
    )


@pytest.fixture
def review_settings(settings: Settings) -> Settings:
    return replace(settings, approval_policy="review")


@pytest.fixture
def file_store(settings: Settings) -> LocalFileStore:
    return LocalFileStore(settings.proof_storage_dir)


def _register_student(db: Session, name: str, course_name: str = "B.Sc. Electronics", year_of_study: int = 2) -> Profile:
    slug = name.lower().replace(" ", ".")
    return register_profile(
        db,
        email=f"{slug}@example.edu",
        password="secret123",
        repeat_password="secret123",
        full_name=name,
        student_id=f"ID-{slug}",
        course_name=course_name,
        year_of_study=year_of_study,
    )


@pytest.fixture
def make_student(db: Session):
    def factory(name: str, course_name: str = "B.Sc. Electronics", year_of_study: int = 2) -> Profile:
        return _register_student(db, name, course_name, year_of_study)

    return factory


@pytest.fixture
def student(make_student) -> Profile:
    return make_student("Aditi Sharma")


@pytest.fixture
def admin(db: Session) -> Profile:
    return register_profile(
        db,
        email="admin@example.edu",
        password="secret123",
        repeat_password="secret123",
        full_name="Portal Admin",
        role="admin",
    )
