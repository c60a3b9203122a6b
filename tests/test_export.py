from decimal import Decimal

from export import build_merit_csv, build_merit_pdf, merit_dataframe


def sample_rows() -> list[dict]:
    return [
        {
            "rank": 1,
            "full_name": "Aditi Sharma",
            "student_id": "DU2024001",
            "course_name": "B.Sc. Electronics",
            "stream": "science",
            "year_of_study": 2,
            "total_points": Decimal("4.00"),
            "tie_break_score": Decimal("8.6"),
            "percentile": Decimal("100.00"),
        },
        {
            "rank": 2,
            "full_name": "Rahul Verma",
            "student_id": "DU2024002",
            "course_name": "B.Com (Honours)",
            "stream": "commerce",
            "year_of_study": 3,
            "total_points": Decimal("4.00"),
            "tie_break_score": Decimal("7.6"),
            "percentile": Decimal("50.00"),
        },
    ]


def test_merit_dataframe_labels_columns() -> None:
    frame = merit_dataframe(sample_rows())
    assert list(frame.columns)[:3] == ["Rank", "Name", "Student ID"]
    assert frame.loc[0, "Academic Score"] == "8.60"


def test_build_merit_csv() -> None:
    lines = build_merit_csv(sample_rows()).decode("utf-8").splitlines()
    assert lines[0] == "Rank,Name,Student ID,Course,Stream,Year,Total Points,Academic Score,Percentile"
    assert lines[1] == "1,Aditi Sharma,DU2024001,B.Sc. Electronics,science,2,4.00,8.60,100.00"
    assert len(lines) == 3


def test_build_merit_pdf_returns_pdf_bytes() -> None:
    summary = {"academic_year": "2024-2025", "semester": "Fall", "filters": {"stream": "science"}}
    assert build_merit_pdf(summary, sample_rows()).startswith(b"%PDF")
    assert build_merit_pdf({"academic_year": "2024-2025"}, []).startswith(b"%PDF")
