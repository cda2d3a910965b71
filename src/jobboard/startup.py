from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

import httpx

from .app_logging import log_with_fields
from .client import JobsApiError, JobsClient
from .config import StartupConfig
from .models import JobDefinition, JobResult, JobStatus, JobTrigger, RunRequest
from .runner import JobRunner, wait_for_run
from .store import LAST_VISIT_KEY, ResultsInbox
from .utils import parse_iso


class StartupJobs:
    """Runs ``on-login`` jobs when the user comes back after being away.

    A visit counts as "away" once ``stale_minutes`` have passed since the last
    recorded visit. Selected jobs run one after another.
    """

    def __init__(
        self,
        config: StartupConfig,
        client: JobsClient,
        runner: JobRunner,
        inbox: ResultsInbox,
        logger: logging.Logger,
    ) -> None:
        self.config = config
        self.client = client
        self.runner = runner
        self.inbox = inbox
        self.logger = logger

    @property
    def stale_after(self) -> timedelta:
        return timedelta(minutes=self.config.stale_minutes)

    def is_stale_visit(self, now: datetime) -> bool:
        stored = self.inbox.get_state(LAST_VISIT_KEY)
        if stored is None:
            return True
        last_visit = parse_iso(stored)
        if last_visit is None:
            return True
        return now - last_visit > self.stale_after

    def record_visit(self, now: datetime) -> None:
        self.inbox.set_state(LAST_VISIT_KEY, now.isoformat())

    def should_run(self, job: JobDefinition, now: datetime) -> bool:
        if job.status is JobStatus.RUNNING:
            return False
        if not job.project_paths:
            return False
        if not job.last_run:
            return True
        last_run = parse_iso(job.last_run)
        if last_run is None:
            return True
        return now - last_run > self.stale_after

    async def fetch_on_login_jobs(self) -> list[JobDefinition]:
        try:
            return await self.client.list_jobs(JobTrigger.ON_LOGIN)
        except (httpx.HTTPError, JobsApiError) as exc:
            log_with_fields(self.logger, logging.WARNING, "startup_jobs_fetch_failed", error=str(exc))
            return []

    async def pending_jobs(self, now: datetime | None = None) -> list[JobDefinition]:
        now = now or datetime.now(UTC)
        if not self.is_stale_visit(now):
            self.record_visit(now)
            log_with_fields(self.logger, logging.INFO, "startup_visit_recent")
            return []

        jobs = await self.fetch_on_login_jobs()
        selected = [job for job in jobs if self.should_run(job, now)]
        self.record_visit(now)
        log_with_fields(
            self.logger,
            logging.INFO,
            "startup_jobs_selected",
            available=[job.id for job in jobs],
            selected=[job.id for job in selected],
        )
        return selected

    async def run_jobs(self, jobs: list[JobDefinition]) -> list[JobResult]:
        results: list[JobResult] = []
        for job in jobs:
            handle = self.runner.start_run(RunRequest.for_job(job))
            results.append(await wait_for_run(handle))
        return results

    async def run_pending(self, now: datetime | None = None) -> list[JobResult]:
        return await self.run_jobs(await self.pending_jobs(now))
