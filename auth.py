from __future__ import annotations

import uuid

import bcrypt
from sqlalchemy.orm import Session

import store
from models import Profile


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password or not password_hash:
        return False
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


def authenticate_user(db: Session, email: str, password: str, role: str | None = None) -> Profile | None:
    filters = {"email": normalize_email(email)}
    if role:
        filters["role"] = role
    rows = store.find(db, Profile, limit=1, **filters)
    if not rows or not verify_password(password, rows[0].password_hash):
        return None
    return rows[0]


def get_profile_by_id(db: Session, profile_id: str | uuid.UUID) -> Profile | None:
    try:
        key = profile_id if isinstance(profile_id, uuid.UUID) else uuid.UUID(str(profile_id))
    except ValueError:
        return None
    return db.get(Profile, key)
