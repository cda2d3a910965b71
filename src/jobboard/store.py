from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable, Iterable
from pathlib import Path

from .models import InboxCounts, JobResult, ProjectRunResult, RunStatus
from .utils import utc_now_iso

LAST_VISIT_KEY = "last_visit"

InboxListener = Callable[["ResultsInbox"], None]


def generate_summary(projects: Iterable[ProjectRunResult]) -> str:
    snapshots = list(projects)
    completed = sum(1 for p in snapshots if not p.pre_check_skipped and not p.error)
    skipped = sum(1 for p in snapshots if p.pre_check_skipped)
    errors = sum(1 for p in snapshots if p.error)
    needs_human = sum(1 for p in snapshots if p.needs_human)

    parts: list[str] = []
    if completed:
        parts.append(f"{completed} completed")
    if skipped:
        parts.append(f"{skipped} skipped")
    if errors:
        parts.append(f"{errors} failed")
    if needs_human:
        parts.append(f"{needs_human} need review")
    return ", ".join(parts) or "No projects processed"


def _row_to_result(row: sqlite3.Row) -> JobResult:
    projects = tuple(ProjectRunResult.from_dict(item) for item in json.loads(row["projects_json"]))
    return JobResult(
        id=row["id"],
        job_id=row["job_id"],
        job_name=row["job_name"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        projects=projects,
        status=RunStatus(row["status"]),
        is_read=bool(row["is_read"]),
        summary=row["summary"],
    )


class ResultsInbox:
    """Durable, newest-first list of run results with read tracking.

    All writes go through ``save_result``, ``mark_read``, ``mark_all_read`` and
    ``delete_result``; subscribers are called after each change.
    """

    def __init__(self, db_path: Path, *, max_results: int = 50) -> None:
        self.db_path = db_path
        self.max_results = max_results
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self._listeners: list[InboxListener] = []

    def close(self) -> None:
        self.conn.close()

    def init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS results (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                job_id TEXT NOT NULL,
                job_name TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT NOT NULL,
                status TEXT NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                summary TEXT NOT NULL,
                projects_json TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_results_read_status
                ON results(is_read, status);
            """
        )
        self.conn.commit()

    def subscribe(self, listener: InboxListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def save_result(self, result: JobResult) -> JobResult:
        stored = JobResult(
            id=result.id,
            job_id=result.job_id,
            job_name=result.job_name,
            started_at=result.started_at,
            completed_at=result.completed_at,
            projects=result.projects,
            status=result.status,
            is_read=False,
            summary=generate_summary(result.projects),
        )
        projects_json = json.dumps([project.to_dict() for project in stored.projects], sort_keys=True)
        with self.conn:
            self.conn.execute("DELETE FROM results WHERE id = ?", (stored.id,))
            self.conn.execute(
                """
                INSERT INTO results(
                    id, job_id, job_name, started_at, completed_at, status, is_read, summary, projects_json
                )
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    stored.id,
                    stored.job_id,
                    stored.job_name,
                    stored.started_at,
                    stored.completed_at,
                    stored.status.value,
                    stored.summary,
                    projects_json,
                ),
            )
            self.conn.execute(
                """
                DELETE FROM results
                WHERE seq NOT IN (SELECT seq FROM results ORDER BY seq DESC LIMIT ?)
                """,
                (self.max_results,),
            )
        self._notify()
        return stored

    def get_result(self, result_id: str) -> JobResult | None:
        row = self.conn.execute("SELECT * FROM results WHERE id = ?", (result_id,)).fetchone()
        if row is None:
            return None
        return _row_to_result(row)

    def list_results(self, *, unread_only: bool = False) -> list[JobResult]:
        query = "SELECT * FROM results"
        if unread_only:
            query += " WHERE is_read = 0"
        rows = self.conn.execute(query + " ORDER BY seq DESC").fetchall()
        return [_row_to_result(row) for row in rows]

    def mark_read(self, result_id: str) -> bool:
        with self.conn:
            cursor = self.conn.execute("UPDATE results SET is_read = 1 WHERE id = ?", (result_id,))
        if cursor.rowcount == 0:
            return False
        self._notify()
        return True

    def mark_all_read(self) -> int:
        with self.conn:
            cursor = self.conn.execute("UPDATE results SET is_read = 1 WHERE is_read = 0")
        self._notify()
        return cursor.rowcount

    def delete_result(self, result_id: str) -> bool:
        with self.conn:
            cursor = self.conn.execute("DELETE FROM results WHERE id = ?", (result_id,))
        if cursor.rowcount == 0:
            return False
        self._notify()
        return True

    @property
    def unread_count(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS count FROM results WHERE is_read = 0").fetchone()
        return int(row["count"])

    @property
    def needs_human_count(self) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS count FROM results WHERE is_read = 0 AND status = ?",
            (RunStatus.NEEDS_HUMAN.value,),
        ).fetchone()
        return int(row["count"])

    def counts(self) -> InboxCounts:
        rows = self.conn.execute("SELECT status, COUNT(*) AS count FROM results GROUP BY status").fetchall()
        by_status = {status.value: 0 for status in RunStatus}
        for row in rows:
            by_status[str(row["status"])] = int(row["count"])
        return InboxCounts(
            total=sum(by_status.values()),
            unread=self.unread_count,
            needs_human=self.needs_human_count,
            by_status=by_status,
        )

    def get_state(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM state WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def set_state(self, key: str, value: str) -> None:
        now = utc_now_iso()
        self.conn.execute(
            """
            INSERT INTO state(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, now),
        )
        self.conn.commit()
