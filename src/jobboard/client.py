from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from .config import ServerConfig
from .models import JobDefinition, JobTrigger

logger = logging.getLogger("jobboard.client")


class JobsApiError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


async def _log_request(request: httpx.Request) -> None:
    logger.debug("HTTP %s %s", request.method, request.url)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return (response.text or "").strip()[:300]
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return ""


def _require_ok(response: httpx.Response, context: str) -> None:
    if response.is_success:
        return
    detail = _error_detail(response)
    message = f"{context} (HTTP {response.status_code})"
    if detail:
        message = f"{message}: {detail}"
    raise JobsApiError(message, status_code=response.status_code)


class JobsClient:
    """HTTP access to the dashboard's jobs API.

    Reads are left without a timeout: a run stream stays open for as long as the
    server keeps projects running.
    """

    def __init__(
        self,
        server: ServerConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.server = server
        self._client = httpx.AsyncClient(
            base_url=server.base_url,
            timeout=httpx.Timeout(None, connect=server.connect_timeout_seconds),
            headers={"Accept": "text/event-stream, application/json"},
            transport=transport,
            event_hooks={"request": [_log_request]},
        )

    async def __aenter__(self) -> JobsClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @asynccontextmanager
    async def open_run_stream(self, payload: dict[str, Any]) -> AsyncIterator[AsyncIterator[bytes]]:
        """POST a run request and yield the response body as byte chunks."""
        async with self._client.stream("POST", self.server.run_path, json=payload) as response:
            if not response.is_success:
                await response.aread()
                _require_ok(response, "Failed to start job")
            yield response.aiter_bytes()

    async def list_jobs(self, trigger: JobTrigger | None = None) -> list[JobDefinition]:
        params = {"trigger": trigger.value} if trigger is not None else None
        response = await self._client.get(self.server.jobs_path, params=params)
        _require_ok(response, "Failed to list jobs")
        body = response.json()
        raw_jobs = body.get("jobs", []) if isinstance(body, dict) else []
        jobs: list[JobDefinition] = []
        for raw in raw_jobs:
            try:
                jobs.append(JobDefinition.from_api(raw))
            except (AttributeError, TypeError, ValueError) as exc:
                logger.warning("skipping unreadable job definition: %s", exc)
        return jobs

    async def get_job(self, job_id: str) -> JobDefinition | None:
        response = await self._client.get(self.server.jobs_path, params={"id": job_id})
        if response.status_code == 404:
            return None
        _require_ok(response, f"Failed to get job {job_id}")
        return JobDefinition.from_api(response.json())
