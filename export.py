from __future__ import annotations

import io
from datetime import datetime, timezone
from typing import Any

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

MERIT_COLUMNS = [
    ("rank", "Rank"),
    ("full_name", "Name"),
    ("student_id", "Student ID"),
    ("course_name", "Course"),
    ("stream", "Stream"),
    ("year_of_study", "Year"),
    ("total_points", "Total Points"),
    ("tie_break_score", "Academic Score"),
    ("percentile", "Percentile"),
]


def _safe_text(value: Any) -> str:
    if value is None or value == "":
        return "-"
    return str(value)


def merit_dataframe(rows: list[dict[str, Any]]) -> pd.DataFrame:
    frame = pd.DataFrame(rows, columns=[key for key, _ in MERIT_COLUMNS])
    for key in ("total_points", "tie_break_score", "percentile"):
        frame[key] = frame[key].map(lambda value: f"{value:.2f}" if value is not None else "")
    return frame.rename(columns=dict(MERIT_COLUMNS))


def build_merit_csv(rows: list[dict[str, Any]]) -> bytes:
    return merit_dataframe(rows).to_csv(index=False).encode("utf-8")


def build_merit_pdf(summary: dict[str, Any], rows: list[dict[str, Any]]) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=landscape(A4), title="Merit List")
    styles = getSampleStyleSheet()
    normal = styles["BodyText"]

    story = []
    story.append(Paragraph("Student Merit List", styles["Title"]))
    story.append(Paragraph(f"Generated: {datetime.now(timezone.utc):%Y-%m-%d %H:%M} UTC", normal))
    story.append(Paragraph(f"Academic year: {_safe_text(summary.get('academic_year'))}", normal))
    story.append(Paragraph(f"Semester: {_safe_text(summary.get('semester'))}", normal))
    filters = summary.get("filters") or {}
    story.append(
        Paragraph(
            "Filters: "
            f"stream {_safe_text(filters.get('stream')) if filters.get('stream') else 'all'}, "
            f"year {_safe_text(filters.get('year_of_study')) if filters.get('year_of_study') else 'all'}, "
            f"course {_safe_text(filters.get('course_name')) if filters.get('course_name') else 'all'}",
            normal,
        )
    )
    story.append(Paragraph(f"Evaluated: {_safe_text(summary.get('evaluation_date'))}", normal))
    story.append(Spacer(1, 12))

    if not rows:
        story.append(Paragraph("No students in this merit batch.", normal))
    else:
        table_rows = [[label for _, label in MERIT_COLUMNS]]
        for row in rows:
            table_rows.append([_safe_text(row.get(key)) for key, _ in MERIT_COLUMNS])
        table = Table(table_rows, repeatRows=1)
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1e3a5f")),
                    ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                    ("FONTSIZE", (0, 0), (-1, -1), 8),
                    ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                    ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#f1f5f9")]),
                ]
            )
        )
        story.append(table)

    doc.build(story)
    buffer.seek(0)
    return buffer.read()
