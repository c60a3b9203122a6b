from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Any

import pandas as pd
import streamlit as st
from sqlalchemy import select

from auth import authenticate_user, get_profile_by_id
from db import db_session, init_schema
from errors import CapacityExceededError, MeritPortalError, PersistenceError
from export import build_merit_csv, build_merit_pdf, merit_dataframe
from logic import (
    COURSE_LIST,
    FORM_CATEGORIES,
    LEVEL_LABELS,
    MAX_SCORE_PERIODS,
    SCOPE_LABELS,
    SCORING_SCOPE,
    SCORING_SCORE,
    STREAMS,
)
from models import AuditLog
from seed import seed_default_admin, seed_demo_students
from services import (
    ProofUpload,
    admin_overview,
    category_totals,
    course_options,
    create_submission,
    delete_submission,
    generate_merit_batch,
    latest_merit_batch,
    list_merit_batches,
    list_submissions,
    merit_batch,
    merit_batch_rows,
    register_profile,
    review_submission,
    student_standings,
    update_profile,
)
from settings import get_settings
from storage import LocalFileStore, load_proof
from ui import (
    inject_css,
    push_flash,
    render_category_meters,
    render_criteria,
    render_flash,
    render_hero,
    render_submission_card,
    status_badge,
    sub_type_label,
    t,
)

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

st.set_page_config(page_title="Student Merit Portal", layout="wide")
inject_css()

SEMESTERS = ["Fall", "Spring", "Summer"]
ALL = "All"
PROOF_TYPES = ["pdf", "png", "jpg", "jpeg"]


@st.cache_resource
def get_file_store() -> LocalFileStore:
    settings = get_settings()
    return LocalFileStore(settings.proof_storage_dir, settings.proof_public_url)


def bootstrap() -> None:
    settings = get_settings()
    init_schema()
    with db_session() as db:
        seed_default_admin(db, settings)
        if settings.seed_demo_data:
            seed_demo_students(db, settings)


def _profile_payload(profile: Any) -> dict[str, Any]:
    return {
        "id": str(profile.id),
        "role": profile.role,
        "email": profile.email,
        "full_name": profile.full_name,
        "student_id": profile.student_id,
        "course_name": profile.course_name,
        "stream": profile.stream,
        "year_of_study": profile.year_of_study,
        "phone": profile.phone,
    }


def get_current_user() -> dict[str, Any] | None:
    auth_payload = st.session_state.get("auth_user")
    if not auth_payload:
        return None

    with db_session() as db:
        profile = get_profile_by_id(db, auth_payload["id"])
        if not profile:
            _clear_auth_state()
            return None
        return _profile_payload(profile)


def _clear_auth_state() -> None:
    st.session_state.pop("auth_user", None)


def show_error(exc: MeritPortalError) -> None:
    if isinstance(exc, CapacityExceededError):
        st.warning(str(exc))
    elif isinstance(exc, PersistenceError):
        st.error(f"{exc} Please try again.")
    else:
        st.error(str(exc))


def _proof_download(submission: Any, key: str) -> None:
    if not submission.proof_path:
        return
    data = load_proof(get_file_store(), get_settings().proof_bucket, submission.proof_path)
    if data is None:
        st.warning("Proof file is missing from storage.")
        return
    st.download_button("Download proof", data=data, file_name=submission.proof_file_name or "proof", key=key)


def render_login(required_role: str) -> dict[str, Any] | None:
    user = get_current_user()
    if user and user["role"] == required_role:
        st.sidebar.success(f"Logged in as {user['email']} ({user['role']})")
        if st.sidebar.button(t("logout"), key=f"logout_{required_role}"):
            _clear_auth_state()
            st.rerun()
        return user

    st.sidebar.subheader(f"{required_role.title()} {t('login')}")
    with st.sidebar.form(f"login_{required_role}"):
        email = st.text_input("Email")
        password = st.text_input("Password", type="password")
        login_submitted = st.form_submit_button(t("login"))

    if login_submitted:
        with db_session() as db:
            found = authenticate_user(db, email, password, role=required_role)
            if not found:
                st.sidebar.error("Invalid credentials or role")
            else:
                st.session_state["auth_user"] = {"id": str(found.id), "role": found.role, "email": found.email}
                logger.info("%s %s logged in", found.role, found.id)
                st.rerun()
    return None


def _course_index(course_name: str | None) -> int:
    return COURSE_LIST.index(course_name) if course_name in COURSE_LIST else 0


def render_registration() -> None:
    st.subheader(t("register"))
    with st.form("register_student"):
        full_name = st.text_input("Full name")
        email = st.text_input("Email")
        student_id = st.text_input("Student ID")
        course_name = st.selectbox("Course", COURSE_LIST)
        year_of_study = st.selectbox("Year of study", [1, 2, 3, 4])
        phone = st.text_input("Phone (optional)")
        password = st.text_input("Password", type="password")
        repeat_password = st.text_input("Repeat password", type="password")
        submitted = st.form_submit_button(t("register"))

    if submitted:
        try:
            with db_session() as db:
                register_profile(
                    db,
                    email=email,
                    password=password,
                    repeat_password=repeat_password,
                    full_name=full_name,
                    student_id=student_id,
                    course_name=course_name,
                    year_of_study=year_of_study,
                    phone=phone,
                )
        except MeritPortalError as exc:
            show_error(exc)
            return
        st.success("Account created. You can now log in from the sidebar.")


def student_dashboard(user: dict[str, Any]) -> None:
    settings = get_settings()
    with db_session() as db:
        totals = category_totals(db, user["id"])
        submissions = list_submissions(db, student_id=user["id"])

    col1, col2, col3 = st.columns(3)
    col1.metric("Total points", f"{sum(totals.values()):.2f}")
    col2.metric("Submissions", len(submissions))
    col3.metric("Pending review", sum(1 for s in submissions if s.status == "pending"))

    st.markdown("#### Category progress")
    st.caption(t("cap_note", cap=f"{settings.category_cap:.1f}"))
    render_category_meters(totals, settings.category_cap)

    st.markdown("#### Recent submissions")
    if not submissions:
        st.info(t("no_submissions"))
    for submission in submissions[:5]:
        render_submission_card(submission)


def _score_inputs(form_key: str, period_label: str, score_label: str) -> list[tuple[int, str]]:
    cols = st.columns(MAX_SCORE_PERIODS)
    entries = []
    for idx, col in enumerate(cols, start=1):
        with col:
            raw = st.text_input(f"{period_label} {idx} {score_label}", key=f"{form_key}_score_{idx}", placeholder="e.g. 8.25")
        entries.append((idx, raw))
    return entries


def student_new_submission(user: dict[str, Any]) -> None:
    settings = get_settings()
    form_key = st.selectbox(
        "Category",
        list(FORM_CATEGORIES.keys()),
        format_func=lambda key: FORM_CATEGORIES[key].label,
        key="submission_form_key",
    )
    form_category = FORM_CATEGORIES[form_key]
    st.caption(
        f"Achievements must fall between {settings.academic_year_start:%d %b %Y} and "
        f"{settings.academic_year_end:%d %b %Y}."
    )

    with st.form(f"submission_{form_key}", clear_on_submit=True):
        level = scope = None
        scores = None
        title = description = ""
        achievement_date: date | None = None
        if form_category.scoring == SCORING_SCORE:
            st.markdown(f"Enter your {form_category.score_label} for each {form_category.period_label.lower()} (leave blanks empty).")
            scores = _score_inputs(form_key, form_category.period_label, form_category.score_label)
        else:
            title = st.text_input("Title")
            description = st.text_area("Description")
            achievement_date = st.date_input(
                "Achievement date",
                value=min(max(date.today(), settings.academic_year_start), settings.academic_year_end),
                min_value=settings.academic_year_start,
                max_value=settings.academic_year_end,
            )
            if form_category.scoring == SCORING_SCOPE:
                scope = st.selectbox("Experience level", list(SCOPE_LABELS.keys()), format_func=SCOPE_LABELS.get)
            else:
                level = st.selectbox("Achievement level", list(LEVEL_LABELS.keys()), format_func=LEVEL_LABELS.get)
        proof_file = st.file_uploader("Proof document", type=PROOF_TYPES)
        submitted = st.form_submit_button("Submit achievement")

    if not submitted:
        return

    proof = ProofUpload(file_name=proof_file.name, data=proof_file.getvalue()) if proof_file else None
    try:
        with db_session() as db:
            result = create_submission(
                db,
                user["id"],
                form_key,
                level=level,
                scope=scope,
                scores=scores,
                title=title,
                description=description,
                achievement_date=achievement_date,
                proof=proof,
                file_store=get_file_store(),
                settings=settings,
            )
    except MeritPortalError as exc:
        show_error(exc)
        return

    submission = result.submission
    if submission.status == "approved":
        st.success(f"Submission approved with {submission.points_awarded:.2f} points.")
    else:
        st.success(f"Submission received. Proposed award: {submission.points_awarded:.2f} points, pending review.")
    for notice in result.notices:
        st.info(str(notice))


def student_submissions(user: dict[str, Any]) -> None:
    settings = get_settings()
    with db_session() as db:
        submissions = list_submissions(db, student_id=user["id"])

    if not submissions:
        st.info(t("no_submissions"))
        return

    status_filter = st.selectbox("Status", [ALL, "approved", "pending", "rejected"], key="my_submission_status")
    for submission in submissions:
        if status_filter != ALL and submission.status != status_filter:
            continue
        render_submission_card(submission)
        _proof_download(submission, f"my_proof_{submission.id}")
        if st.button("Delete", key=f"delete_{submission.id}"):
            try:
                with db_session() as db:
                    delete_submission(db, submission.id, user["id"], file_store=get_file_store(), settings=settings)
            except MeritPortalError as exc:
                show_error(exc)
            else:
                push_flash(st.session_state, "success", "Submission deleted.")
                st.rerun()


def student_profile(user: dict[str, Any]) -> None:
    st.markdown(f"**Email:** {user['email']}")
    st.markdown(f"**Stream:** {(user['stream'] or '-').title()}")

    with st.form("student_profile"):
        full_name = st.text_input("Full name", value=user["full_name"] or "")
        student_id = st.text_input("Student ID", value=user["student_id"] or "")
        course_name = st.selectbox("Course", COURSE_LIST, index=_course_index(user["course_name"]))
        year_of_study = st.selectbox(
            "Year of study",
            [1, 2, 3, 4],
            index=(user["year_of_study"] or 1) - 1,
        )
        phone = st.text_input("Phone", value=user["phone"] or "")
        submitted = st.form_submit_button("Save profile")

    if submitted:
        try:
            with db_session() as db:
                profile = update_profile(
                    db,
                    user["id"],
                    full_name=full_name,
                    student_id=student_id,
                    course_name=course_name,
                    year_of_study=year_of_study,
                    phone=phone,
                )
                stream = profile.stream
        except MeritPortalError as exc:
            show_error(exc)
            return
        push_flash(st.session_state, "success", f"Profile saved. Stream: {stream.title()}.")
        st.rerun()


def render_student_view() -> None:
    user = render_login("student")
    if not user:
        render_hero()
        render_registration()
        return

    render_hero(f"Welcome, {user['full_name']}")
    render_flash()
    tab1, tab2, tab3, tab4, tab5 = st.tabs(
        [t("dashboard"), t("new_submission"), t("my_submissions"), t("profile"), t("criteria")]
    )
    with tab1:
        student_dashboard(user)
    with tab2:
        student_new_submission(user)
    with tab3:
        student_submissions(user)
    with tab4:
        student_profile(user)
    with tab5:
        render_criteria(get_settings().category_cap)


def admin_overview_tab() -> None:
    with db_session() as db:
        counts = admin_overview(db)
        recent = db.scalars(select(AuditLog).order_by(AuditLog.created_at.desc()).limit(20)).all()

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Students", counts["students"])
    col2.metric("Submissions", counts["submissions"])
    col3.metric("Pending", counts["pending"])
    col4.metric("Merit batches", counts["merit_batches"])

    if recent:
        st.markdown("#### Recent activity")
        df = pd.DataFrame(
            [{"when": item.created_at, "action": item.action, "details": item.details_json} for item in recent]
        )
        st.dataframe(df, use_container_width=True)


def admin_submissions_tab(user: dict[str, Any]) -> None:
    settings = get_settings()
    status_filter = st.selectbox("Status", [ALL, "pending", "approved", "rejected"], key="admin_status_filter")
    with db_session() as db:
        submissions = list_submissions(db, status=None if status_filter == ALL else status_filter)
        students = {row["id"]: row for row in student_standings(db)}

    if not submissions:
        st.info(t("no_submissions"))
        return

    df = pd.DataFrame(
        [
            {
                "student": students.get(str(s.student_id), {}).get("full_name", "-"),
                "category": s.category,
                "level": sub_type_label(s.sub_type),
                "title": s.title,
                "date": s.achievement_date,
                "points": f"{s.points_awarded:.2f}",
                "status": s.status,
            }
            for s in submissions
        ]
    )
    st.dataframe(df, use_container_width=True)

    by_id = {str(s.id): s for s in submissions}
    target_id = st.selectbox(
        "Select submission",
        list(by_id.keys()),
        format_func=lambda key: f"{by_id[key].title} ({by_id[key].status})",
        key="admin_review_target",
    )
    target = by_id[target_id]
    st.markdown(status_badge(target.status), unsafe_allow_html=True)
    if target.description:
        st.caption(target.description)
    _proof_download(target, f"proof_{target_id}")

    if target.status != "pending":
        st.caption("Only pending submissions can be reviewed.")
        return

    with st.form("admin_review"):
        decision = st.radio("Decision", ["approved", "rejected"], horizontal=True)
        points = st.number_input("Points", min_value=0.0, max_value=5.0, step=0.5, value=float(target.points_awarded))
        remarks = st.text_area("Remarks")
        submitted = st.form_submit_button("Save review")

    if submitted:
        try:
            with db_session() as db:
                result = review_submission(
                    db,
                    target.id,
                    user["id"],
                    decision,
                    points=str(points),
                    remarks=remarks,
                    settings=settings,
                )
        except MeritPortalError as exc:
            show_error(exc)
            return
        push_flash(st.session_state, "success", f"Submission {result.submission.status}.")
        for notice in result.notices:
            push_flash(st.session_state, "info", str(notice))
        st.rerun()


def _filter_controls(prefix: str, courses: list[str]) -> tuple[str | None, int | None, str | None]:
    col1, col2, col3 = st.columns(3)
    with col1:
        stream = st.selectbox("Stream", [ALL, *STREAMS], key=f"{prefix}_stream")
    with col2:
        year = st.selectbox("Year", [ALL, 1, 2, 3, 4], key=f"{prefix}_year")
    with col3:
        course = st.selectbox("Course", [ALL, *courses], key=f"{prefix}_course")
    return (
        None if stream == ALL else stream,
        None if year == ALL else int(year),
        None if course == ALL else course,
    )


def admin_students_tab() -> None:
    with db_session() as db:
        courses = course_options(db)
    col1, col2 = st.columns(2)
    with col1:
        course = st.selectbox("Course", [ALL, *courses], key="students_course")
    with col2:
        year = st.selectbox("Year", [ALL, 1, 2, 3, 4], key="students_year")

    with db_session() as db:
        rows = student_standings(
            db,
            course_name=None if course == ALL else course,
            year_of_study=None if year == ALL else int(year),
        )

    if not rows:
        st.info("No students found.")
        return
    st.metric("Students", len(rows))
    df = pd.DataFrame(rows).drop(columns=["id"])
    df["total_points"] = df["total_points"].map(lambda value: f"{value:.2f}")
    st.dataframe(df, use_container_width=True)


def _render_batch(db_batch: Any, rows: list[dict[str, Any]], key: str) -> None:
    st.caption(
        f"Batch {db_batch.batch_id} · {db_batch.academic_year}"
        f"{' · ' + db_batch.semester if db_batch.semester else ''} · evaluated {db_batch.evaluation_date:%Y-%m-%d %H:%M} UTC"
    )
    st.dataframe(merit_dataframe(rows), use_container_width=True)
    summary = {
        "academic_year": db_batch.academic_year,
        "semester": db_batch.semester,
        "filters": db_batch.filters,
        "evaluation_date": f"{db_batch.evaluation_date:%Y-%m-%d %H:%M} UTC",
    }
    col1, col2 = st.columns(2)
    with col1:
        st.download_button(
            t("download_pdf"),
            data=build_merit_pdf(summary, rows),
            file_name=f"merit_{db_batch.academic_year}_{db_batch.batch_id}.pdf",
            mime="application/pdf",
            key=f"{key}_pdf",
        )
    with col2:
        st.download_button(
            t("download_csv"),
            data=build_merit_csv(rows),
            file_name=f"merit_{db_batch.academic_year}_{db_batch.batch_id}.csv",
            mime="text/csv",
            key=f"{key}_csv",
        )


def admin_merit_tab(user: dict[str, Any]) -> None:
    settings = get_settings()
    with db_session() as db:
        courses = course_options(db)

    with st.form("merit_generate"):
        academic_year = st.text_input("Academic year", value=settings.academic_year_label)
        semester = st.selectbox("Semester", ["-", *SEMESTERS])
        stream, year, course = _filter_controls("merit", courses)
        generate = st.form_submit_button("Generate merit list")

    if generate:
        try:
            with db_session() as db:
                batch = generate_merit_batch(
                    db,
                    academic_year,
                    semester=None if semester == "-" else semester,
                    stream=stream,
                    year_of_study=year,
                    course_name=course,
                    actor_id=user["id"],
                )
                count = len(batch.evaluations)
        except MeritPortalError as exc:
            show_error(exc)
        else:
            st.success(f"Merit list generated for {count} students.")

    st.markdown("#### Latest merit list")
    with db_session() as db:
        latest = latest_merit_batch(db)
        latest_rows = merit_batch_rows(db, latest) if latest else []
        history = list_merit_batches(db)

    if not latest:
        st.info(t("no_batches"))
        return
    _render_batch(latest, latest_rows, "latest")

    if len(history) > 1:
        st.markdown("#### Previous merit lists")
        st.dataframe(pd.DataFrame(history), use_container_width=True)
        options = [item["batch_id"] for item in history[1:]]
        chosen = st.selectbox("Open batch", options, key="merit_history_batch")
        with db_session() as db:
            previous = merit_batch(db, uuid.UUID(chosen))
            previous_rows = merit_batch_rows(db, previous) if previous else []
        if previous:
            _render_batch(previous, previous_rows, "history")


def render_admin_view() -> None:
    user = render_login("admin")
    render_hero("Admin workspace")
    if not user:
        st.info("Admin login required.")
        return

    render_flash()
    tab1, tab2, tab3, tab4, tab5 = st.tabs([t("overview"), t("review"), t("students"), t("merit"), t("criteria")])
    with tab1:
        admin_overview_tab()
    with tab2:
        admin_submissions_tab(user)
    with tab3:
        admin_students_tab()
    with tab4:
        admin_merit_tab(user)
    with tab5:
        render_criteria(get_settings().category_cap)


def main() -> None:
    bootstrap()
    mode = st.sidebar.radio("Access", [t("student_mode"), t("admin_mode")], key="access_mode")
    if mode == t("student_mode"):
        render_student_view()
    else:
        render_admin_view()


if __name__ == "__main__":
    main()
