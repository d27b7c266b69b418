"""Migration: move key-pair profiles to Welford accumulators and add
calibration tables/columns.

Legacy databases stored avg_*_time / std_dev_* per key pair.  This adds
mean_* and m2_* columns, backfilling m2 = std^2 * (sample_count - 1) so the
running variance carries over exactly.  Score history gains coverage_ratio,
matched_pairs and created_ts_utc; the thresholds table is created if missing.

Idempotent: safe to run multiple times.

Run with: python -m biokey.migrations.001_welford_columns
"""
import sqlite3
import sys
from pathlib import Path

# Database path at repo root
REPO_ROOT = Path(__file__).resolve().parent.parent.parent
DB_PATH = REPO_ROOT / "biokey.db"


def column_exists(cursor: sqlite3.Cursor, table_name: str, column_name: str) -> bool:
    """Check if a column exists in a table."""
    cursor.execute(f"PRAGMA table_info({table_name})")
    columns = [row[1] for row in cursor.fetchall()]
    return column_name in columns


def table_exists(cursor: sqlite3.Cursor, table_name: str) -> bool:
    """Check if a table exists."""
    cursor.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table_name,),
    )
    return cursor.fetchone() is not None


def index_exists(cursor: sqlite3.Cursor, index_name: str) -> bool:
    """Check if an index exists."""
    cursor.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND name=?",
        (index_name,),
    )
    return cursor.fetchone() is not None


def _add_column(cursor: sqlite3.Cursor, table: str, column: str, ddl: str, backfill: str | None = None):
    if column_exists(cursor, table, column):
        print(f"Column {column} already exists in {table}, skipping.")
        return
    print(f"Adding {column} column to {table}...")
    cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    if backfill:
        cursor.execute(f"UPDATE {table} SET {column} = {backfill}")
    print("  Done.")


def _migrate_profiles(cursor: sqlite3.Cursor):
    if not table_exists(cursor, "biometric_profiles"):
        print("Table biometric_profiles does not exist; it will be created on app startup.")
        return

    legacy = column_exists(cursor, "biometric_profiles", "avg_dwell_time")

    _add_column(
        cursor, "biometric_profiles", "mean_dwell", "REAL NOT NULL DEFAULT 0",
        "avg_dwell_time" if legacy else None,
    )
    _add_column(
        cursor, "biometric_profiles", "mean_flight", "REAL NOT NULL DEFAULT 0",
        "avg_flight_time" if legacy else None,
    )

    has_std = column_exists(cursor, "biometric_profiles", "std_dev_dwell")
    _add_column(
        cursor, "biometric_profiles", "m2_dwell", "REAL NOT NULL DEFAULT 0",
        "CASE WHEN sample_count > 1 THEN std_dev_dwell * std_dev_dwell * (sample_count - 1) ELSE 0 END"
        if has_std else None,
    )
    _add_column(
        cursor, "biometric_profiles", "m2_flight", "REAL NOT NULL DEFAULT 0",
        "CASE WHEN sample_count > 1 THEN std_dev_flight * std_dev_flight * (sample_count - 1) ELSE 0 END"
        if has_std else None,
    )

    if not index_exists(cursor, "uq_biometric_profiles_user_pair"):
        print("Creating unique index uq_biometric_profiles_user_pair...")
        cursor.execute(
            "CREATE UNIQUE INDEX uq_biometric_profiles_user_pair "
            "ON biometric_profiles (user_id, key_pair)"
        )
        print("  Done.")
    else:
        print("Index uq_biometric_profiles_user_pair already exists, skipping.")


def _migrate_history(cursor: sqlite3.Cursor):
    if not table_exists(cursor, "user_score_history"):
        print("Table user_score_history does not exist; it will be created on app startup.")
        return

    _add_column(cursor, "user_score_history", "coverage_ratio", "REAL")
    _add_column(cursor, "user_score_history", "matched_pairs", "INTEGER")
    _add_column(
        cursor, "user_score_history", "created_ts_utc", "TEXT NOT NULL DEFAULT ''",
        "COALESCE(created_at, '')"
        if column_exists(cursor, "user_score_history", "created_at") else None,
    )

    if not index_exists(cursor, "ix_user_score_history_user_outcome"):
        print("Creating index ix_user_score_history_user_outcome...")
        cursor.execute(
            "CREATE INDEX ix_user_score_history_user_outcome "
            "ON user_score_history (user_id, outcome)"
        )
        print("  Done.")
    else:
        print("Index ix_user_score_history_user_outcome already exists, skipping.")


def _migrate_thresholds(cursor: sqlite3.Cursor):
    if table_exists(cursor, "user_score_thresholds"):
        _add_column(cursor, "user_score_thresholds", "updated_ts_utc", "TEXT NOT NULL DEFAULT ''")
        return

    print("Creating table user_score_thresholds...")
    cursor.execute("""
        CREATE TABLE user_score_thresholds (
            id INTEGER PRIMARY KEY,
            user_id INTEGER NOT NULL UNIQUE,
            success_threshold REAL NOT NULL,
            challenge_threshold REAL NOT NULL,
            updated_ts_utc TEXT NOT NULL
        )
    """)
    print("  Done.")


def migrate(db_path: Path | None = None):
    """Run the migration against the given DB file (defaults to DB_PATH)."""
    path = db_path or DB_PATH

    if not path.exists():
        print(f"Database not found at {path}")
        print("No migration needed; the database will be created with the new schema on first run.")
        return

    conn = sqlite3.connect(str(path))
    cursor = conn.cursor()

    try:
        _migrate_profiles(cursor)
        _migrate_history(cursor)
        _migrate_thresholds(cursor)

        conn.commit()
        print("\nMigration 001_welford_columns completed successfully!")

    except Exception as e:
        conn.rollback()
        print(f"Migration failed: {e}")
        sys.exit(1)
    finally:
        conn.close()


if __name__ == "__main__":
    migrate()
