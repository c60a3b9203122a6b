from __future__ import annotations

from decimal import Decimal
from html import escape
from typing import Any, MutableMapping

import pandas as pd
import streamlit as st

from logic import (
    ACADEMIC_SCORE_THRESHOLDS,
    CATEGORY_LABELS,
    DEFAULT_CATEGORY_CAP,
    LEVEL_LABELS,
    LEVEL_POINTS,
    SCOPE_LABELS,
    SCOPE_POINTS,
    STREAMS,
    to_decimal,
)


TEXT = {
    "app_title": "Student Merit Portal",
    "subtitle": "Record achievements, track category points and publish merit lists.",
    "student_mode": "Student",
    "admin_mode": "Admin",
    "login": "Login",
    "logout": "Logout",
    "register": "Create account",
    "dashboard": "Dashboard",
    "new_submission": "New Submission",
    "my_submissions": "My Submissions",
    "profile": "Profile",
    "overview": "Overview",
    "review": "Submissions",
    "students": "Students",
    "merit": "Merit List",
    "criteria": "Criteria",
    "download_pdf": "Download PDF",
    "download_csv": "Download CSV",
    "cap_note": "Each category is capped at {cap} points.",
    "no_submissions": "No submissions yet.",
    "no_batches": "No merit list has been generated yet.",
}

STATUS_COLORS = {
    "approved": ("#065f46", "#d1fae5"),
    "pending": ("#92400e", "#fef3c7"),
    "rejected": ("#991b1b", "#fee2e2"),
}


def t(key: str, **values: Any) -> str:
    text = TEXT.get(key, key)
    return text.format(**values) if values else text


def inject_css() -> None:
    st.markdown(
        """
        <style>
            :root {
                --merit-navy: #1e3a5f;
                --merit-gold: #d4a017;
                --merit-muted: #64748b;
            }
            .merit-hero {
                background: linear-gradient(132deg, #1e3a5f 0%, #2c5282 60%, #d4a017 100%);
                color: #ffffff;
                border-radius: 16px;
                padding: 1.1rem 1.4rem;
                margin-bottom: 1rem;
            }
            .merit-hero h1 { color: #ffffff; font-size: 1.6rem; margin: 0; }
            .merit-hero p { margin: 0.3rem 0 0; opacity: 0.9; }
            .merit-card {
                border: 1px solid #e2e8f0;
                border-radius: 12px;
                padding: 0.8rem 1rem;
                margin-bottom: 0.6rem;
                background: #ffffff;
            }
            .merit-card-title { font-weight: 600; color: var(--merit-navy); }
            .merit-card-meta { color: var(--merit-muted); font-size: 0.85rem; }
            .merit-badge {
                display: inline-block;
                border-radius: 999px;
                padding: 0.1rem 0.6rem;
                font-size: 0.75rem;
                font-weight: 600;
                text-transform: capitalize;
            }
            .merit-meter { margin: 0.35rem 0 0.7rem; }
            .merit-meter-head {
                display: flex;
                justify-content: space-between;
                font-size: 0.85rem;
                color: var(--merit-navy);
            }
            .merit-meter-track {
                background: #e2e8f0;
                border-radius: 999px;
                height: 8px;
                overflow: hidden;
            }
            .merit-meter-fill { background: var(--merit-gold); height: 100%; }
            @media (max-width: 640px) {
                .merit-hero h1 { font-size: 1.25rem; }
            }
        </style>
        """,
        unsafe_allow_html=True,
    )


def render_hero(subtitle: str | None = None) -> None:
    st.markdown(
        f"""
        <div class="merit-hero">
            <h1>{escape(t("app_title"))}</h1>
            <p>{escape(subtitle or t("subtitle"))}</p>
        </div>
        """,
        unsafe_allow_html=True,
    )


def render_meter(label: str, pct: float, value_text: str | None = None) -> None:
    pct = max(0.0, min(1.0, pct))
    pct_text = value_text or f"{int(round(pct * 100))}%"
    st.markdown(
        f"""
        <div class="merit-meter">
            <div class="merit-meter-head">
                <span>{escape(label)}</span>
                <span>{escape(pct_text)}</span>
            </div>
            <div class="merit-meter-track">
                <div class="merit-meter-fill" style="width: {pct * 100:.1f}%;"></div>
            </div>
        </div>
        """,
        unsafe_allow_html=True,
    )


def render_category_meters(totals: dict[str, Decimal], cap: Decimal) -> None:
    for label in CATEGORY_LABELS:
        value = to_decimal(totals.get(label))
        pct = float(value / cap) if cap else 0.0
        render_meter(label, pct, f"{value:.2f} / {cap:.2f}")


def criteria_tables(cap: Decimal = DEFAULT_CATEGORY_CAP) -> dict[str, pd.DataFrame]:
    """Point rules as display tables, read from the same constants the scorer uses."""
    awards = sorted({points for table in ACADEMIC_SCORE_THRESHOLDS.values() for _, points in table}, reverse=True)
    academic_rows = []
    for awarded in awards:
        row: dict[str, Any] = {"Points": awarded}
        for stream in STREAMS:
            minimum = next((score for score, points in ACADEMIC_SCORE_THRESHOLDS[stream] if points == awarded), None)
            row[f"{stream.title()} (min score)"] = str(minimum) if minimum is not None else "-"
        academic_rows.append(row)

    return {
        "Academic (CGPA / SGPA)": pd.DataFrame(academic_rows),
        "Achievement level": pd.DataFrame(
            [{"Level": LEVEL_LABELS[key], "Points": str(points)} for key, points in LEVEL_POINTS.items()]
        ),
        "Industry experience": pd.DataFrame(
            [{"Scope": SCOPE_LABELS[key], "Points": str(points)} for key, points in SCOPE_POINTS.items()]
        ),
        "Category caps": pd.DataFrame(
            [{"Category": label, "Maximum points": f"{cap:.2f}"} for label in CATEGORY_LABELS]
        ),
    }


def render_criteria(cap: Decimal = DEFAULT_CATEGORY_CAP) -> None:
    st.caption(t("cap_note", cap=f"{cap:.1f}"))
    st.caption("Scores below the lowest threshold earn no points. Awards that would pass the cap are reduced to fit.")
    for title, frame in criteria_tables(cap).items():
        st.markdown(f"**{title}**")
        st.dataframe(frame, use_container_width=True, hide_index=True)


FLASH_KEY = "flash_messages"
FLASH_KINDS = ("success", "info", "warning", "error")


def push_flash(state: MutableMapping[str, Any], kind: str, message: str) -> None:
    """Queue a message to show after the next rerun."""
    messages = list(state.get(FLASH_KEY) or [])
    messages.append((kind if kind in FLASH_KINDS else "info", message))
    state[FLASH_KEY] = messages


def pop_flash(state: MutableMapping[str, Any]) -> list[tuple[str, str]]:
    return list(state.pop(FLASH_KEY, None) or [])


def render_flash() -> None:
    for kind, message in pop_flash(st.session_state):
        getattr(st, kind)(message)


def status_badge(status: str) -> str:
    fg, bg = STATUS_COLORS.get(status, ("#334155", "#e2e8f0"))
    return f"<span class='merit-badge' style='color:{fg};background:{bg};'>{escape(status)}</span>"


def sub_type_label(sub_type: str | None) -> str:
    key = sub_type or ""
    if key in LEVEL_LABELS:
        return LEVEL_LABELS[key]
    if key in SCOPE_LABELS:
        return SCOPE_LABELS[key]
    return key.replace("_", " ").title() or "-"


def render_submission_card(submission: Any) -> None:
    points = to_decimal(submission.points_awarded)
    proof = f" · Proof: {escape(submission.proof_file_name or 'attached')}" if submission.proof_path else ""
    remarks = (
        f"<div class='merit-card-meta'>Remarks: {escape(submission.admin_remarks)}</div>"
        if submission.admin_remarks
        else ""
    )
    st.markdown(
        f"""
        <div class="merit-card">
            <div class="merit-card-title">{escape(submission.title)} {status_badge(submission.status)}</div>
            <div class="merit-card-meta">
                {escape(submission.category)} · {escape(sub_type_label(submission.sub_type))} ·
                {submission.achievement_date:%d %b %Y} · {points:.2f} pts{proof}
            </div>
            {remarks}
        </div>
        """,
        unsafe_allow_html=True,
    )
