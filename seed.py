from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from auth import hash_password, normalize_email
from models import Profile
from services import create_submission, register_profile
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "Student123!"

DEMO_STUDENTS = [
    {
        "email": "aditi.sharma@meritportal.local",
        "full_name": "Aditi Sharma",
        "student_id": "DU2024001",
        "course_name": "B.Sc. Computer Science (H)",
        "year_of_study": 2,
        "submissions": [
            {"form_key": "academic_cgpa", "scores": [(1, "8.9"), (2, "9.1")]},
            {"form_key": "extra_curricular", "level": "rank1", "title": "Inter-college Debate"},
            {"form_key": "industry", "scope": "national", "title": "Summer Internship"},
        ],
    },
    {
        "email": "rahul.verma@meritportal.local",
        "full_name": "Rahul Verma",
        "student_id": "DU2024002",
        "course_name": "B.Com (Honours)",
        "year_of_study": 2,
        "submissions": [
            {"form_key": "academic_sgpa", "scores": [(1, "7.4"), (2, "7.8"), (3, "8.1")]},
            {"form_key": "sports", "level": "rank2", "title": "University Athletics Meet"},
            {"form_key": "ncc", "level": "leadership", "title": "NCC Cadet Sergeant"},
        ],
    },
    {
        "email": "meera.iyer@meritportal.local",
        "full_name": "Meera Iyer",
        "student_id": "DU2024003",
        "course_name": "B.A.(H) English",
        "year_of_study": 3,
        "submissions": [
            {"form_key": "academic_cgpa", "scores": [(1, "7.2"), (2, "7.6"), (3, "8.0")]},
            {"form_key": "academic_engagement", "level": "participation", "title": "Research Paper Presentation"},
            {"form_key": "outreach", "level": "leadership", "title": "Literacy Drive Coordinator"},
        ],
    },
]


def seed_default_admin(db: Session, settings: Settings | None = None) -> Profile:
    settings = settings or get_settings()
    email = normalize_email(settings.admin_email)
    admin = db.scalar(select(Profile).where(Profile.email == email))
    if admin:
        return admin
    admin = Profile(
        role="admin",
        email=email,
        password_hash=hash_password(settings.admin_password),
        full_name="Portal Administrator",
    )
    db.add(admin)
    db.flush()
    logger.info("Created default admin %s", email)
    return admin


def seed_demo_students(db: Session, settings: Settings | None = None) -> int:
    settings = settings or get_settings()
    total = db.scalar(select(func.count()).select_from(Profile).where(Profile.role == "student"))
    if total:
        return 0

    created = 0
    for offset, item in enumerate(DEMO_STUDENTS):
        student = register_profile(
            db,
            email=item["email"],
            password=DEMO_PASSWORD,
            repeat_password=DEMO_PASSWORD,
            full_name=item["full_name"],
            student_id=item["student_id"],
            course_name=item["course_name"],
            year_of_study=item["year_of_study"],
        )
        achieved = settings.academic_year_start + timedelta(days=30 * (offset + 1))
        for entry in item["submissions"]:
            create_submission(
                db,
                student.id,
                entry["form_key"],
                level=entry.get("level"),
                scope=entry.get("scope"),
                scores=entry.get("scores"),
                title=entry.get("title", ""),
                achievement_date=min(achieved, settings.academic_year_end),
                settings=settings,
                today=min(achieved, settings.academic_year_end),
            )
        created += 1
    logger.info("Seeded %d demo students", created)
    return created
