from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from .app_logging import log_with_fields
from .models import JobResult, ProjectProgress, ProjectRunResult, ProjectStatus, RunStatus


class ResultSink(Protocol):
    def save_result(self, result: JobResult) -> None: ...


def derive_status(projects: Iterable[ProjectRunResult]) -> RunStatus:
    """Aggregate run status: any error wins, then needs-human, else complete."""
    snapshots = list(projects)
    if any(project.error for project in snapshots):
        return RunStatus.ERROR
    if any(project.needs_human for project in snapshots):
        return RunStatus.NEEDS_HUMAN
    return RunStatus.COMPLETE


def snapshot_project(progress: ProjectProgress, *, run_started_at: str, finished_at: str) -> ProjectRunResult:
    return ProjectRunResult(
        path=progress.path,
        name=progress.name,
        pre_check_skipped=progress.status is ProjectStatus.SKIPPED,
        output=progress.output,
        error=progress.error,
        needs_human=progress.needs_human,
        started_at=progress.started_at or run_started_at,
        completed_at=progress.completed_at or finished_at,
    )


def build_result(
    *,
    run_id: str,
    job_id: str,
    job_name: str,
    started_at: str,
    completed_at: str,
    progress: Iterable[ProjectProgress],
) -> JobResult:
    projects = tuple(
        snapshot_project(item, run_started_at=started_at, finished_at=completed_at) for item in progress
    )
    return JobResult(
        id=run_id,
        job_id=job_id,
        job_name=job_name,
        started_at=started_at,
        completed_at=completed_at,
        projects=projects,
        status=derive_status(projects),
    )


class ResultRecorder:
    """Hands finished runs to the inbox.

    ``record`` is called synchronously from the run's finalizer, so the sink's
    write blocks the event loop for its duration. The SQLite inbox holds at most
    ``inbox.max_results`` rows, which keeps that write to a single short transaction.
    """

    def __init__(self, sink: ResultSink, logger: logging.Logger) -> None:
        self.sink = sink
        self.logger = logger

    def record(self, result: JobResult) -> JobResult:
        self.sink.save_result(result)
        log_with_fields(
            self.logger,
            logging.INFO,
            "result_saved",
            run_id=result.id,
            job_id=result.job_id,
            status=result.status.value,
            projects=len(result.projects),
        )
        return result
