from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()

APPROVAL_POLICIES = {"auto", "review"}


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    approval_policy: str = "auto"
    category_cap: Decimal = Decimal("5.0")
    academic_year_start: date = date(2024, 4, 1)
    academic_year_end: date = date(2025, 3, 31)
    academic_year_label: str = "2024-2025"
    proof_storage_dir: str = "data/proofs"
    proof_bucket: str = "achievement-proofs"
    proof_public_url: str = ""
    upload_timeout_seconds: float = 30.0
    admin_email: str = "admin@meritportal.local"
    admin_password: str = "Admin123!"
    seed_demo_data: bool = False


def _env_date(name: str, default: date) -> date:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    return date.fromisoformat(raw)


def load_settings() -> Settings:
    defaults = Settings()
    policy = (os.getenv("MERIT_APPROVAL_POLICY") or defaults.approval_policy).strip().lower()
    if policy not in APPROVAL_POLICIES:
        raise RuntimeError(f"MERIT_APPROVAL_POLICY must be one of {sorted(APPROVAL_POLICIES)}, got {policy!r}.")

    start = _env_date("MERIT_ACADEMIC_YEAR_START", defaults.academic_year_start)
    end = _env_date("MERIT_ACADEMIC_YEAR_END", defaults.academic_year_end)
    if end < start:
        raise RuntimeError("MERIT_ACADEMIC_YEAR_END must not be before MERIT_ACADEMIC_YEAR_START.")

    return Settings(
        database_url=(os.getenv("DATABASE_URL") or "").strip(),
        approval_policy=policy,
        category_cap=Decimal(os.getenv("MERIT_CATEGORY_CAP") or str(defaults.category_cap)),
        academic_year_start=start,
        academic_year_end=end,
        academic_year_label=os.getenv("MERIT_ACADEMIC_YEAR_LABEL") or f"{start.year}-{end.year}",
        proof_storage_dir=os.getenv("MERIT_PROOF_STORAGE_DIR") or defaults.proof_storage_dir,
        proof_bucket=os.getenv("MERIT_PROOF_BUCKET") or defaults.proof_bucket,
        proof_public_url=os.getenv("MERIT_PROOF_PUBLIC_URL") or defaults.proof_public_url,
        upload_timeout_seconds=float(os.getenv("MERIT_UPLOAD_TIMEOUT_SECONDS") or defaults.upload_timeout_seconds),
        admin_email=os.getenv("MERIT_ADMIN_EMAIL") or defaults.admin_email,
        admin_password=os.getenv("MERIT_ADMIN_PASSWORD") or defaults.admin_password,
        seed_demo_data=(os.getenv("MERIT_SEED_DEMO") or "").strip().lower() in {"1", "true", "yes"},
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
