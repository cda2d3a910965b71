from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .app_logging import log_with_fields
from .client import JobsClient
from .decoder import StreamDecoder, decode_stream
from .events import DoneEvent, JobStreamEvent
from .models import JobResult, ProjectProgress, RunRequest
from .progress import ProgressTable
from .recorder import ResultRecorder, build_result
from .utils import generate_run_id, utc_now_iso

RunListener = Callable[["RunHandle", JobStreamEvent], None]


class RunHandle:
    """Live view of one run plus the means to cancel it and wait for its result."""

    def __init__(self, run_id: str, request: RunRequest, started_at: str) -> None:
        self.run_id = run_id
        self.request = request
        self.started_at = started_at
        self.progress = ProgressTable(request.project_paths)
        self.done_received = False
        self.cancelled = False
        self.failure: str | None = None
        self.dropped_frames = 0
        self.result: JobResult | None = None
        self._task: asyncio.Task[JobResult] | None = None

    @property
    def projects(self) -> list[ProjectProgress]:
        return list(self.progress)

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> bool:
        if self._task is None or self._task.done():
            return False
        return self._task.cancel()

    async def wait(self) -> JobResult:
        """Wait for the run to finalize. A cancelled run still returns its partial result."""
        if self._task is None:
            raise RuntimeError(f"run {self.run_id} was never started")
        await asyncio.wait({self._task})
        if not self._task.cancelled():
            exc = self._task.exception()
            if exc is not None:
                raise exc
        if self.result is None:
            raise RuntimeError(f"run {self.run_id} finished without a result")
        return self.result


class JobRunner:
    def __init__(self, client: JobsClient, recorder: ResultRecorder, logger: logging.Logger) -> None:
        self.client = client
        self.recorder = recorder
        self.logger = logger
        self._listeners: list[RunListener] = []

    def add_listener(self, listener: RunListener) -> None:
        self._listeners.append(listener)

    def start_run(self, request: RunRequest) -> RunHandle:
        handle = RunHandle(generate_run_id(), request, utc_now_iso())
        handle._task = asyncio.get_running_loop().create_task(
            self._execute(handle), name=f"job-run-{handle.run_id}"
        )
        # a task cancelled before its first step never enters _execute
        handle._task.add_done_callback(lambda task: self._on_task_done(handle, task))
        log_with_fields(
            self.logger,
            logging.INFO,
            "run_started",
            run_id=handle.run_id,
            job_id=request.result_job_id,
            job_name=request.job_name,
            projects=list(request.project_paths),
        )
        return handle

    async def run(self, request: RunRequest) -> JobResult:
        return await self.start_run(request).wait()

    async def _execute(self, handle: RunHandle) -> JobResult:
        try:
            await self._consume(handle)
        except asyncio.CancelledError:
            handle.cancelled = True
            log_with_fields(self.logger, logging.INFO, "run_cancelled", run_id=handle.run_id)
            raise
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            handle.failure = message
            failed = handle.progress.fail_active(message)
            log_with_fields(
                self.logger,
                logging.ERROR,
                "run_failed",
                run_id=handle.run_id,
                error=message,
                error_type=exc.__class__.__name__,
                failed_projects=failed,
            )
        finally:
            result = self._finalize(handle)
        return result

    async def _consume(self, handle: RunHandle) -> None:
        decoder = StreamDecoder()
        try:
            async with self.client.open_run_stream(handle.request.to_payload()) as chunks:
                async for event in decode_stream(chunks, decoder):
                    self._dispatch(handle, event)
        finally:
            handle.dropped_frames = decoder.dropped_frames

    def _dispatch(self, handle: RunHandle, event: JobStreamEvent) -> None:
        if isinstance(event, DoneEvent):
            handle.done_received = True
            log_with_fields(self.logger, logging.INFO, "run_done_received", run_id=handle.run_id)
        elif not handle.progress.apply(event):
            log_with_fields(
                self.logger,
                logging.DEBUG,
                "run_event_ignored",
                run_id=handle.run_id,
                event_type=event.event_type.value if event.event_type else None,
                project=event.project,
            )
            return
        for listener in list(self._listeners):
            try:
                listener(handle, event)
            except Exception as exc:
                # a broken listener must not fail the run it is observing
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "run_listener_failed",
                    run_id=handle.run_id,
                    listener=getattr(listener, "__name__", repr(listener)),
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )

    def _on_task_done(self, handle: RunHandle, task: asyncio.Task[JobResult]) -> None:
        if task.cancelled():
            handle.cancelled = True
        self._finalize(handle)

    def _finalize(self, handle: RunHandle) -> JobResult:
        if handle.result is not None:
            return handle.result
        result = build_result(
            run_id=handle.run_id,
            job_id=handle.request.result_job_id,
            job_name=handle.request.job_name,
            started_at=handle.started_at,
            completed_at=utc_now_iso(),
            progress=handle.progress,
        )
        handle.result = result
        log_with_fields(
            self.logger,
            logging.INFO,
            "run_finalized",
            run_id=handle.run_id,
            status=result.status.value,
            cancelled=handle.cancelled,
            done_received=handle.done_received,
            dropped_frames=handle.dropped_frames,
            project_states=handle.progress.counts(),
        )
        self.recorder.record(result)
        return result


async def wait_for_run(handle: RunHandle) -> JobResult:
    """Wait for ``handle``. If the waiter itself is cancelled, cancel the run, let it record, and re-raise."""
    try:
        return await handle.wait()
    except asyncio.CancelledError:
        handle.cancel()
        await handle.wait()
        raise
