"""Quick DB health check — verifies the pipeline tables exist and reports row counts."""

import duckdb

from forecast_pipeline.database import get_db

TABLES = [
    "forecasters", "channels", "channel_keywords",
    "processed_content", "predictions",
    "extraction_jobs", "job_events",
]


def main():
    db = get_db()
    print("=" * 50)
    print("  FORECAST PIPELINE — DB HEALTH CHECK")
    print("=" * 50)
    all_ok = True
    for table in TABLES:
        try:
            count = db.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            print(f"  {table:25s}  OK      {count:>6} rows")
        except duckdb.Error as e:
            print(f"  {table:25s}  FAIL    {e}")
            all_ok = False

    pending = db.execute(
        "SELECT COUNT(*) FROM predictions WHERE outcome = 'PENDING'"
    ).fetchone()[0] if all_ok else 0
    running = db.execute(
        "SELECT COUNT(*) FROM extraction_jobs WHERE status = 'RUNNING'"
    ).fetchone()[0] if all_ok else 0

    print("=" * 50)
    if all_ok:
        print(f"  All {len(TABLES)} tables exist and are accessible.")
        print(f"  {pending} pending prediction(s), {running} running job(s).")
    else:
        print("  SOME TABLES FAILED — see above.")
    print()


if __name__ == "__main__":
    main()
