from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db import db_session, init_schema
from errors import MeritPortalError
from export import build_merit_csv, build_merit_pdf, merit_dataframe
from logic import STREAMS
from services import generate_merit_batch, merit_batch_rows

logger = logging.getLogger("run_merit_batch")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a merit list batch and optionally export it.")
    parser.add_argument("--academic-year", required=True, help="e.g. 2024-2025")
    parser.add_argument("--semester", choices=["Fall", "Spring", "Summer"])
    parser.add_argument("--stream", choices=list(STREAMS))
    parser.add_argument("--year", type=int, choices=[1, 2, 3, 4], dest="year_of_study")
    parser.add_argument("--course", dest="course_name")
    parser.add_argument("--pdf", type=Path, help="write the merit list PDF here")
    parser.add_argument("--csv", type=Path, help="write the merit list CSV here")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = parse_args(argv)
    init_schema()

    try:
        with db_session() as db:
            batch = generate_merit_batch(
                db,
                args.academic_year,
                semester=args.semester,
                stream=args.stream,
                year_of_study=args.year_of_study,
                course_name=args.course_name,
            )
            rows = merit_batch_rows(db, batch)
    except MeritPortalError as exc:
        logger.error("Merit batch failed: %s", exc)
        return 1

    print(merit_dataframe(rows).to_string(index=False))
    logger.info("Batch %s written with %d students", batch.batch_id, len(rows))

    summary = {
        "academic_year": batch.academic_year,
        "semester": batch.semester,
        "filters": batch.filters,
        "evaluation_date": f"{batch.evaluation_date:%Y-%m-%d %H:%M} UTC",
    }
    if args.pdf:
        args.pdf.write_bytes(build_merit_pdf(summary, rows))
        logger.info("PDF written to %s", args.pdf)
    if args.csv:
        args.csv.write_bytes(build_merit_csv(rows))
        logger.info("CSV written to %s", args.csv)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
