from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

import httpx

from jobboard.client import JobsClient
from jobboard.config import ServerConfig
from jobboard.events import JobStreamEvent
from jobboard.models import JobResult, PreCheck, ProjectStatus, RunRequest, RunStatus, SkipIf
from jobboard.recorder import ResultRecorder
from jobboard.runner import JobRunner, RunHandle
from jobboard.store import ResultsInbox


def frame(payload: dict) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("test_jobboard_runner")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


class ListSink:
    def __init__(self) -> None:
        self.saved: list[JobResult] = []

    def save_result(self, result: JobResult) -> None:
        self.saved.append(result)


class RunnerTestCase(unittest.IsolatedAsyncioTestCase):
    def make_runner(self, handler) -> tuple[JobRunner, ListSink]:
        client = JobsClient(ServerConfig(base_url="http://dashboard.test"), transport=httpx.MockTransport(handler))
        self.addAsyncCleanup(client.aclose)
        sink = ListSink()
        logger = quiet_logger()
        return JobRunner(client, ResultRecorder(sink, logger), logger), sink


class StreamingRunTest(RunnerTestCase):
    async def test_end_to_end_scenario(self) -> None:
        requests: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            body = b"".join(
                [
                    frame({"type": "start", "project": "/a"}),
                    frame({"type": "content", "project": "/a", "text": "hi"}),
                    frame({"type": "complete", "project": "/a"}),
                    frame({"type": "pre-check", "project": "/b", "skipped": True}),
                    frame({"type": "done"}),
                ]
            )
            return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})

        runner, sink = self.make_runner(handler)
        request = RunRequest(
            project_paths=["/a", "/b"],
            prompt="summarize",
            pre_check=PreCheck(command="git status --porcelain", skip_if=SkipIf.EMPTY),
            max_parallel=2,
        )
        handle = runner.start_run(request)
        result = await handle.wait()

        self.assertEqual(
            requests,
            [
                {
                    "prompt": "summarize",
                    "projectPaths": ["/a", "/b"],
                    "preCheck": {"command": "git status --porcelain", "skipIf": "empty"},
                    "maxParallel": 2,
                }
            ],
        )
        self.assertEqual(result.status, RunStatus.COMPLETE)
        self.assertEqual(result.job_id, "adhoc")
        self.assertEqual(result.id, handle.run_id)
        a, b = result.projects
        self.assertEqual(a.output, "hi")
        self.assertFalse(a.pre_check_skipped)
        self.assertTrue(b.pre_check_skipped)
        self.assertTrue(handle.done_received)
        self.assertFalse(handle.cancelled)
        self.assertEqual(sink.saved, [result])

    async def test_saved_job_sends_only_job_id_and_interleaves(self) -> None:
        requests: list[dict] = []

        async def body():
            yield frame({"type": "start", "project": "/x"})
            yield frame({"type": "start", "project": "/y"})[:9]
            yield frame({"type": "start", "project": "/y"})[9:]
            yield frame({"type": "content", "project": "/y", "text": "y1"})
            yield frame({"type": "content", "project": "/x", "text": "x1"})
            yield b"data: {broken\n"
            yield frame({"type": "complete", "project": "/y", "needsHuman": True})
            yield frame({"type": "content", "project": "/x", "text": "x2"})
            yield frame({"type": "complete", "project": "/x"})
            yield frame({"type": "content", "project": "/nowhere", "text": "?"})

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return httpx.Response(200, content=body())

        runner, sink = self.make_runner(handler)
        request = RunRequest(project_paths=["/x", "/y"], job_id="job_42", job_name="Nightly")
        handle = runner.start_run(request)
        result = await handle.wait()

        self.assertEqual(requests, [{"jobId": "job_42"}])
        self.assertEqual(result.job_id, "job_42")
        self.assertEqual(result.job_name, "Nightly")
        self.assertEqual(result.status, RunStatus.NEEDS_HUMAN)
        self.assertEqual([p.output for p in result.projects], ["x1x2", "y1"])
        self.assertEqual(handle.dropped_frames, 1)
        self.assertFalse(handle.done_received)
        self.assertEqual(len(sink.saved), 1)

    async def test_listeners_see_applied_events(self) -> None:
        seen: list[tuple[str | None, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                content=frame({"type": "start", "project": "/a"}) + frame({"type": "start", "project": "/zzz"}),
            )

        runner, _ = self.make_runner(handler)

        def listener(handle: RunHandle, event: JobStreamEvent) -> None:
            seen.append((event.project, handle.progress.get("/a").status.value))

        runner.add_listener(listener)
        await runner.run(RunRequest(project_paths=["/a"], prompt="p"))
        self.assertEqual(seen, [("/a", "running")])

    async def test_failing_listener_does_not_fail_run(self) -> None:
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                content=frame({"type": "start", "project": "/a"}) + frame({"type": "complete", "project": "/a"}),
            )

        runner, sink = self.make_runner(handler)

        def broken(handle: RunHandle, event: JobStreamEvent) -> None:
            raise KeyError("ui")

        def recording(handle: RunHandle, event: JobStreamEvent) -> None:
            seen.append(event.project)

        runner.add_listener(broken)
        runner.add_listener(recording)
        handle = runner.start_run(RunRequest(project_paths=["/a"], prompt="p"))
        result = await handle.wait()

        self.assertEqual(result.status, RunStatus.COMPLETE)
        self.assertIsNone(result.projects[0].error)
        self.assertIsNone(handle.failure)
        self.assertEqual(seen, ["/a", "/a"])
        self.assertEqual(sink.saved, [result])

    async def test_deeply_nested_frame_does_not_abort_run(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = b"".join(
                [
                    frame({"type": "start", "project": "/a"}),
                    b"data: " + b"[" * 100_000 + b"\n\n",
                    frame({"type": "complete", "project": "/a"}),
                    frame({"type": "done"}),
                ]
            )
            return httpx.Response(200, content=body)

        runner, _ = self.make_runner(handler)
        handle = runner.start_run(RunRequest(project_paths=["/a"], prompt="p"))
        result = await handle.wait()

        self.assertEqual(result.status, RunStatus.COMPLETE)
        self.assertEqual(result.projects[0].status, ProjectStatus.COMPLETE)
        self.assertIsNone(handle.failure)
        self.assertEqual(handle.dropped_frames, 1)
        self.assertTrue(handle.done_received)


class FailureTest(RunnerTestCase):
    async def test_connection_failure_marks_all_projects(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        runner, sink = self.make_runner(handler)
        handle = runner.start_run(RunRequest(project_paths=["/a", "/b"], prompt="p"))
        result = await handle.wait()

        self.assertEqual(result.status, RunStatus.ERROR)
        self.assertEqual([p.error for p in result.projects], ["connection refused", "connection refused"])
        self.assertEqual(handle.failure, "connection refused")
        self.assertEqual(len(sink.saved), 1)

    async def test_non_ok_response(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": "Job not found"})

        runner, _ = self.make_runner(handler)
        result = await runner.run(RunRequest(project_paths=["/a"], job_id="missing"))

        self.assertEqual(result.status, RunStatus.ERROR)
        self.assertEqual(result.projects[0].error, "Failed to start job (HTTP 404): Job not found")

    async def test_mid_stream_failure_only_touches_active_projects(self) -> None:
        async def body():
            yield frame({"type": "start", "project": "/done"})
            yield frame({"type": "complete", "project": "/done"})
            yield frame({"type": "pre-check", "project": "/checking", "skipped": False})
            yield frame({"type": "pre-check", "project": "/skipped", "skipped": True})
            yield frame({"type": "start", "project": "/running"})
            raise httpx.ReadError("connection reset")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body())

        runner, _ = self.make_runner(handler)
        handle = runner.start_run(
            RunRequest(project_paths=["/done", "/checking", "/skipped", "/running", "/pending"], prompt="p")
        )
        result = await handle.wait()

        statuses = {p.path: p.status for p in handle.projects}
        self.assertEqual(statuses["/done"], ProjectStatus.COMPLETE)
        self.assertEqual(statuses["/checking"], ProjectStatus.PRE_CHECK)
        self.assertEqual(statuses["/skipped"], ProjectStatus.SKIPPED)
        self.assertEqual(statuses["/running"], ProjectStatus.ERROR)
        self.assertEqual(statuses["/pending"], ProjectStatus.ERROR)
        errors = {p.path: p.error for p in result.projects}
        self.assertEqual(errors["/running"], "connection reset")
        self.assertIsNone(errors["/done"])
        self.assertEqual(result.status, RunStatus.ERROR)


class CancellationTest(RunnerTestCase):
    async def test_cancel_mid_stream_still_records_result(self) -> None:
        release = asyncio.Event()
        started = asyncio.Event()

        async def body():
            yield frame({"type": "start", "project": "/a"})
            yield frame({"type": "content", "project": "/a", "text": "partial"})
            await release.wait()
            yield frame({"type": "complete", "project": "/a"})

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body())

        runner, sink = self.make_runner(handler)

        def listener(handle: RunHandle, event: JobStreamEvent) -> None:
            if handle.progress.get("/a").output == "partial":
                started.set()

        runner.add_listener(listener)
        handle = runner.start_run(RunRequest(project_paths=["/a", "/b", "/c"], prompt="p"))
        await asyncio.wait_for(started.wait(), timeout=5)

        self.assertTrue(handle.cancel())
        result = await handle.wait()

        self.assertTrue(handle.cancelled)
        self.assertTrue(handle.done())
        self.assertEqual(len(sink.saved), 1)
        self.assertIs(sink.saved[0], result)
        self.assertEqual(len(result.projects), 3)
        self.assertEqual(result.projects[0].output, "partial")
        self.assertEqual(
            [p.status for p in handle.projects],
            [ProjectStatus.RUNNING, ProjectStatus.PENDING, ProjectStatus.PENDING],
        )
        self.assertTrue(all(p.error is None for p in result.projects))
        self.assertEqual(result.status, RunStatus.COMPLETE)
        self.assertFalse(handle.cancel())

    async def test_cancel_before_first_step(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=frame({"type": "start", "project": "/a"}))

        runner, sink = self.make_runner(handler)
        handle = runner.start_run(RunRequest(project_paths=["/a", "/b"], prompt="p"))
        handle.cancel()
        result = await handle.wait()

        self.assertTrue(handle.cancelled)
        self.assertEqual(len(sink.saved), 1)
        self.assertEqual([p.completed_at for p in result.projects], [result.completed_at] * 2)


class InboxIntegrationTest(RunnerTestCase):
    async def test_result_lands_unread_in_inbox(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = b"".join(
                [
                    frame({"type": "start", "project": "/a"}),
                    frame({"type": "complete", "project": "/a", "needsHuman": True}),
                    frame({"type": "pre-check", "project": "/b", "skipped": True, "preCheckOutput": ""}),
                ]
            )
            return httpx.Response(200, content=body)

        with TemporaryDirectory() as temp_dir:
            inbox = ResultsInbox(Path(temp_dir) / "jobboard.db")
            inbox.init_schema()
            client = JobsClient(
                ServerConfig(base_url="http://dashboard.test"),
                transport=httpx.MockTransport(handler),
            )
            logger = quiet_logger()
            runner = JobRunner(client, ResultRecorder(inbox, logger), logger)
            try:
                result = await runner.run(RunRequest(project_paths=["/a", "/b"], prompt="p"))
            finally:
                await client.aclose()

            stored = inbox.get_result(result.id)
            assert stored is not None
            self.assertFalse(stored.is_read)
            self.assertEqual(stored.status, RunStatus.NEEDS_HUMAN)
            self.assertEqual(stored.summary, "1 completed, 1 skipped, 1 need review")
            self.assertEqual(inbox.needs_human_count, 1)
            inbox.close()


if __name__ == "__main__":
    unittest.main()
