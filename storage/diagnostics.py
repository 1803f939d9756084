"""Diagnostics routines for the result store and report directory."""

from __future__ import annotations

from pathlib import Path
import sqlite3

from diagnostics.models import DiagnosticResult, DiagnosticStatus


def probe(report_dir: Path | None = None, db_path: Path | None = None) -> DiagnosticResult:
    """Validate that the report directory is writable and SQLite is usable.

    Args:
        report_dir: Report directory the run will write into. ``None`` means a
            temporary directory will be created, which only needs SQLite.
        db_path: Configured result store path, if persistence is enabled.

    Returns:
        Diagnostic result indicating storage readiness.
    """

    name = "storage"
    test_db = None
    try:
        if report_dir is not None:
            report_dir.mkdir(parents=True, exist_ok=True)
            sentinel = report_dir / "diagnostics_probe.txt"
            sentinel.write_text("ok", encoding="utf-8")
            sentinel.unlink(missing_ok=True)

        if db_path is not None:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            test_db = db_path.parent / "diagnostics_probe.db"
        elif report_dir is not None:
            test_db = report_dir / "diagnostics_probe.db"

        if test_db is not None:
            with sqlite3.connect(test_db) as conn:
                conn.execute("SELECT 1")
        else:
            with sqlite3.connect(":memory:") as conn:
                conn.execute("SELECT 1")

        target = report_dir or "a temporary directory"
        details = f"Report directory writable at {target}"
        return DiagnosticResult(name=name, status=DiagnosticStatus.PASS, details=details)
    except OSError as exc:
        details = f"Filesystem access failed: {exc}"
        return DiagnosticResult(name=name, status=DiagnosticStatus.FAIL, details=details)
    except sqlite3.Error as exc:
        details = f"SQLite probe failed: {exc}"
        return DiagnosticResult(name=name, status=DiagnosticStatus.FAIL, details=details)
    finally:
        if test_db and test_db.exists():
            test_db.unlink(missing_ok=True)
