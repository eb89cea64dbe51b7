# Report storage on SQLite
# One append-only table of reports plus the read queries the API needs

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
import sqlite3


# Database connection timeout in seconds
DB_CONNECTION_TIMEOUT_SECONDS = 30


class StoreError(Exception):
    """Raised when a store operation fails. Carries the underlying error as __cause__."""


def format_timestamp(value: datetime) -> str:
    # Fixed-width UTC ISO text so timestamps compare correctly as strings
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReportStore:
    """
    SQLite-backed report log.

    Constructed once at startup and shared by all requests. Each operation
    opens its own short-lived connection, so the instance holds no connection
    state and is safe to use from several threads.
    """

    def __init__(self, db_file: str, clock: Optional[Callable[[], datetime]] = None):
        self.db_file = db_file
        self.clock = clock or _utc_now

    def get_db_connection(self) -> sqlite3.Connection:
        # Open an sqlite3 connection with pragmas for better concurrency
        conn = sqlite3.connect(self.db_file, timeout=DB_CONNECTION_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.DatabaseError:
            # best-effort; unsupported pragmas are not fatal
            pass
        return conn

    def init_db(self) -> None:
        """Create the report table and its lookup index if they don't exist."""
        try:
            conn = self.get_db_connection()
            try:
                cur = conn.cursor()
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS report_table (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        embark_id TEXT NOT NULL,
                        report_type TEXT NOT NULL CHECK (report_type IN ('aimbot', 'wallhack', 'macro', 'glitch', 'goodplayer')),
                        reporter_id TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_report_lookup
                    ON report_table (embark_id, reporter_id, report_type, created_at)
                    """
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError('init_db failed') from e

    def find_recent_reports(
        self,
        embark_id: str,
        reporter_id: str,
        report_type: str,
        since: datetime
    ) -> List[Dict]:
        """
        Return ids of reports matching all three fields created at or after `since`.

        Args:
            embark_id: Reported player identifier
            reporter_id: Reporter UUID
            report_type: Report category
            since: Inclusive lower bound on created_at

        Returns:
            List of {'id': ...} dicts, empty when nothing matches
        """
        try:
            conn = self.get_db_connection()
            try:
                cur = conn.cursor()
                cur.execute(
                    '''
                    SELECT id FROM report_table
                    WHERE embark_id = ? AND reporter_id = ? AND report_type = ? AND created_at >= ?
                    ''',
                    (embark_id, reporter_id, report_type, format_timestamp(since))
                )
                return [{'id': r['id']} for r in cur.fetchall()]
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError('find_recent_reports failed') from e

    def insert_report(self, embark_id: str, report_type: str, reporter_id: str) -> Dict:
        """
        Append one report stamped with the store clock.

        Returns:
            The stored row as a dict (id, embark_id, report_type, reporter_id, created_at)
        """
        created_at = format_timestamp(self.clock())
        try:
            conn = self.get_db_connection()
            try:
                cur = conn.cursor()
                cur.execute(
                    'INSERT INTO report_table (embark_id, report_type, reporter_id, created_at) VALUES (?, ?, ?, ?)',
                    (embark_id, report_type, reporter_id, created_at)
                )
                conn.commit()
                return {
                    'id': cur.lastrowid,
                    'embark_id': embark_id,
                    'report_type': report_type,
                    'reporter_id': reporter_id,
                    'created_at': created_at,
                }
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError('insert_report failed') from e

    def get_report_summary(self, embark_id: str) -> List[Dict]:
        """
        Aggregate every report for one Embark ID.

        Returns:
            Empty list when the ID has no reports, otherwise a single row with
            per-type counts, total_reports, first_reported, last_reported and
            unique_reporters
        """
        try:
            conn = self.get_db_connection()
            try:
                cur = conn.cursor()
                cur.execute(
                    '''
                    SELECT
                        embark_id,
                        SUM(CASE WHEN report_type = 'aimbot' THEN 1 ELSE 0 END) AS aimbot_count,
                        SUM(CASE WHEN report_type = 'wallhack' THEN 1 ELSE 0 END) AS wallhack_count,
                        SUM(CASE WHEN report_type = 'macro' THEN 1 ELSE 0 END) AS macro_count,
                        SUM(CASE WHEN report_type = 'glitch' THEN 1 ELSE 0 END) AS glitch_count,
                        SUM(CASE WHEN report_type = 'goodplayer' THEN 1 ELSE 0 END) AS goodplayer_count,
                        COUNT(*) AS total_reports,
                        MIN(created_at) AS first_reported,
                        MAX(created_at) AS last_reported,
                        COUNT(DISTINCT reporter_id) AS unique_reporters
                    FROM report_table
                    WHERE embark_id = ?
                    GROUP BY embark_id
                    ''',
                    (embark_id,)
                )
                return [dict(r) for r in cur.fetchall()]
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError('get_report_summary failed') from e

    def get_report_history(self, embark_id: str, since: datetime) -> List[Dict]:
        """Return {report_type, created_at} rows at or after `since`, oldest first."""
        try:
            conn = self.get_db_connection()
            try:
                cur = conn.cursor()
                cur.execute(
                    '''
                    SELECT report_type, created_at FROM report_table
                    WHERE embark_id = ? AND created_at >= ?
                    ORDER BY created_at ASC, id ASC
                    ''',
                    (embark_id, format_timestamp(since))
                )
                return [
                    {'report_type': r['report_type'], 'created_at': r['created_at']}
                    for r in cur.fetchall()
                ]
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError('get_report_history failed') from e


def history_cutoff(now: datetime, days: int) -> datetime:
    return now - timedelta(days=days)
