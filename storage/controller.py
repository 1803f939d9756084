"""SQLite-backed result store for jobs and their test cases."""

from __future__ import annotations

import logging
from pathlib import Path
import sqlite3
import threading
from typing import Iterable

from core.models import Job, TestCaseRecord


LOGGER = logging.getLogger(__name__)


class ResultStore:
    """Persists one row per job and one row per executed test case."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path).expanduser()
        self._lock = threading.Lock()
        self.conn = self.connect()
        self.initialize_db()

    @classmethod
    def from_settings(cls, settings) -> "ResultStore | None":
        """Open the configured store, or return None when persistence is disabled."""

        if not settings.enabled:
            return None
        return cls(Path(settings.path))

    def connect(self) -> sqlite3.Connection:
        """Connect to the SQLite database, creating its directory if needed."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(self.db_path, check_same_thread=False)

    def initialize_db(self) -> None:
        """Create the jobs and testcases tables."""

        cursor = self.conn.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                provider TEXT,
                job_name TEXT,
                job_id TEXT,
                url TEXT,
                started DATETIME,
                finished DATETIME,
                cluster_id TEXT,
                cluster_name TEXT,
                cluster_version TEXT,
                upgrade_version TEXT,
                environment TEXT,
                region TEXT,
                reused INTEGER,
                hibernate_after_use INTEGER,
                result TEXT
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS testcases (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id INTEGER REFERENCES jobs(id),
                name TEXT,
                result TEXT,
                duration_s REAL,
                stdout TEXT,
                stderr TEXT,
                error TEXT,
                suite TEXT,
                class_name TEXT
            )
            """
        )
        self.conn.commit()

    def close(self) -> None:
        if self.conn:
            self.conn.close()

    def create_job(self, job: Job) -> int:
        """Insert a job row and return its primary key."""

        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO jobs (
                    provider, job_name, job_id, url, started, finished,
                    cluster_id, cluster_name, cluster_version, upgrade_version,
                    environment, region, reused, hibernate_after_use, result
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.provider,
                    job.name,
                    job.job_id,
                    job.url,
                    job.started.isoformat(),
                    job.finished.isoformat(),
                    job.cluster_id,
                    job.cluster_name,
                    job.cluster_version,
                    job.upgrade_version,
                    job.environment,
                    job.region,
                    int(job.reused),
                    int(job.hibernate_after_use),
                    job.result.value,
                ),
            )
            self.conn.commit()
            return int(cursor.lastrowid)

    def create_testcase(self, job_id: int, record: TestCaseRecord) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO testcases (
                    job_id, name, result, duration_s, stdout, stderr, error, suite, class_name
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    record.name,
                    record.result.value,
                    record.duration_s,
                    record.stdout,
                    record.stderr,
                    record.error,
                    record.suite,
                    record.class_name,
                ),
            )
            self.conn.commit()

    def persist_run(self, job: Job, records: Iterable[TestCaseRecord]) -> int | None:
        """Store a job with its test cases; failures are logged, never raised."""

        try:
            job_row = self.create_job(job)
            count = 0
            for record in records:
                self.create_testcase(job_row, record)
                count += 1
        except sqlite3.Error as exc:
            LOGGER.warning("Failed persisting job %s: %s", job.job_id, exc)
            return None
        LOGGER.info("Persisted job %s with %d test case(s)", job.job_id, count)
        return job_row

    def list_jobs(self) -> list[dict[str, object]]:
        cursor = self.conn.execute(
            "SELECT id, job_name, job_id, cluster_id, result FROM jobs ORDER BY id"
        )
        columns = [column[0] for column in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def list_testcases(self, job_row: int) -> list[dict[str, object]]:
        cursor = self.conn.execute(
            "SELECT name, result, duration_s, error FROM testcases WHERE job_id = ? ORDER BY id",
            (job_row,),
        )
        columns = [column[0] for column in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]
