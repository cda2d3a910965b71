from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import httpx

from .app_logging import LOGGER_NAME, log_with_fields, setup_logger
from .client import JobsApiError, JobsClient
from .config import AppConfig, ensure_local_paths, load_config
from .events import ContentEvent, DoneEvent, JobStreamEvent
from .models import JobBackend, JobResult, PreCheck, RunRequest, RunStatus, SkipIf
from .recorder import ResultRecorder
from .runner import JobRunner, RunHandle, wait_for_run
from .startup import StartupJobs
from .store import ResultsInbox

EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jobboard", description="Run dashboard jobs across projects")
    parser.add_argument("--config", required=True, help="Path to jobboard YAML config")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a saved job or an ad-hoc prompt")
    target = run_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--job-id", help="Saved job to run")
    target.add_argument("--prompt", help="Ad-hoc prompt to run")
    run_parser.add_argument(
        "--project",
        action="append",
        default=[],
        dest="projects",
        help="Project path for an ad-hoc run (repeatable)",
    )
    run_parser.add_argument("--name", help="Display name for an ad-hoc run")
    run_parser.add_argument("--pre-check", help="Shell command gating each project")
    run_parser.add_argument(
        "--skip-if",
        choices=[mode.value for mode in SkipIf],
        default=SkipIf.EMPTY.value,
        help="When the pre-check output skips a project",
    )
    run_parser.add_argument("--pattern", help="Regex for --skip-if matches")
    run_parser.add_argument("--max-parallel", type=int, help="Concurrent projects on the server")
    run_parser.add_argument("--backend", choices=[backend.value for backend in JobBackend])
    run_parser.add_argument("--show-output", action="store_true", help="Print each project's output")

    subparsers.add_parser("startup", help="Run on-login jobs if the last visit is stale")

    inbox = subparsers.add_parser("inbox", help="Review recorded run results")
    inbox_commands = inbox.add_subparsers(dest="inbox_command", required=True)
    list_parser = inbox_commands.add_parser("list", help="List results, newest first")
    list_parser.add_argument("--unread", action="store_true", help="Only unread results")
    show = inbox_commands.add_parser("show", help="Show one result and mark it read")
    show.add_argument("result_id")
    read = inbox_commands.add_parser("read", help="Mark a result read")
    read.add_argument("result_id")
    inbox_commands.add_parser("read-all", help="Mark every result read")
    delete = inbox_commands.add_parser("delete", help="Delete a result")
    delete.add_argument("result_id")
    inbox_commands.add_parser("counts", help="Show unread and needs-human counts")
    return parser


def _open_inbox(config: AppConfig) -> ResultsInbox:
    ensure_local_paths(config)
    inbox = ResultsInbox(config.paths.db, max_results=config.inbox.max_results)
    inbox.init_schema()
    return inbox


def _adhoc_request(args: argparse.Namespace) -> RunRequest:
    pre_check = None
    if args.pre_check:
        pre_check = PreCheck(command=args.pre_check, skip_if=SkipIf(args.skip_if), pattern=args.pattern)
    return RunRequest(
        project_paths=list(args.projects),
        job_name=args.name or "Ad-hoc Job",
        prompt=args.prompt,
        pre_check=pre_check,
        max_parallel=args.max_parallel,
        backend=JobBackend(args.backend) if args.backend else None,
    )


def _print_progress(handle: RunHandle, event: JobStreamEvent) -> None:
    if isinstance(event, (ContentEvent, DoneEvent)) or event.project is None:
        return
    project = handle.progress.get(event.project)
    if project is None:
        return
    detail = f" ({project.error})" if project.error else ""
    flag = " [needs review]" if project.needs_human else ""
    print(
        f"[{handle.progress.finished_count()}/{len(handle.progress)}] "
        f"{project.name}: {project.status.value}{flag}{detail}"
    )


def _print_result(result: JobResult, *, show_output: bool = False) -> None:
    print(f"{result.job_name}: {result.status.value} (run {result.id})")
    for project in result.projects:
        if project.pre_check_skipped:
            state = "skipped"
        elif project.error:
            state = f"error: {project.error}"
        else:
            state = "ok"
        flag = " [needs review]" if project.needs_human else ""
        print(f"  {project.name:24} {state}{flag}")
        if show_output and project.output:
            for line in project.output.rstrip("\n").splitlines():
                print(f"    {line}")


async def _run_async(config: AppConfig, inbox: ResultsInbox, args: argparse.Namespace) -> JobResult | None:
    logger = logging.getLogger(LOGGER_NAME)
    async with JobsClient(config.server) as client:
        if args.job_id:
            job = await client.get_job(args.job_id)
            if job is None:
                print(f"job not found: {args.job_id}", file=sys.stderr)
                return None
            request = RunRequest.for_job(job)
        else:
            request = _adhoc_request(args)

        runner = JobRunner(client, ResultRecorder(inbox, logger), logger)
        runner.add_listener(_print_progress)
        handle = runner.start_run(request)
        print(f"Running {request.job_name} on {len(request.project_paths)} projects...")
        try:
            result = await wait_for_run(handle)
        except asyncio.CancelledError:
            if handle.result is not None:
                _print_result(handle.result, show_output=args.show_output)
            raise
        _print_result(result, show_output=args.show_output)
        return result


def cmd_run(config: AppConfig, args: argparse.Namespace) -> int:
    inbox = _open_inbox(config)
    try:
        result = asyncio.run(_run_async(config, inbox, args))
    except KeyboardInterrupt:
        log_with_fields(logging.getLogger(LOGGER_NAME), logging.INFO, "shutdown", reason="keyboard_interrupt")
        return EXIT_INTERRUPTED
    except (ValueError, JobsApiError, httpx.HTTPError) as exc:
        print(f"run failed: {exc}", file=sys.stderr)
        return 2
    finally:
        inbox.close()
    if result is None:
        return 2
    return 0 if result.status is RunStatus.COMPLETE else 1


async def _startup_async(config: AppConfig, inbox: ResultsInbox) -> list[JobResult]:
    logger = logging.getLogger(LOGGER_NAME)
    async with JobsClient(config.server) as client:
        runner = JobRunner(client, ResultRecorder(inbox, logger), logger)
        runner.add_listener(_print_progress)
        startup = StartupJobs(config.startup, client, runner, inbox, logger)
        jobs = await startup.pending_jobs()
        if not jobs:
            print("No startup jobs to run")
            return []
        results: list[JobResult] = []
        for job in jobs:
            print(f"Running {job.name} on {len(job.project_paths)} projects...")
            (result,) = await startup.run_jobs([job])
            _print_result(result)
            results.append(result)
        return results


def cmd_startup(config: AppConfig) -> int:
    inbox = _open_inbox(config)
    try:
        results = asyncio.run(_startup_async(config, inbox))
    except KeyboardInterrupt:
        log_with_fields(logging.getLogger(LOGGER_NAME), logging.INFO, "shutdown", reason="keyboard_interrupt")
        return EXIT_INTERRUPTED
    finally:
        inbox.close()
    return 0 if all(result.status is RunStatus.COMPLETE for result in results) else 1


def cmd_inbox(config: AppConfig, args: argparse.Namespace) -> int:
    inbox = _open_inbox(config)
    try:
        command = args.inbox_command
        if command == "list":
            results = inbox.list_results(unread_only=bool(args.unread))
            if not results:
                print("(no results)")
            for result in results:
                marker = " " if result.is_read else "*"
                print(
                    f"{marker} {result.id}  {result.status.value:11} {result.job_name}  "
                    f"{result.completed_at}  {result.summary}"
                )
            return 0
        if command == "show":
            result = inbox.get_result(args.result_id)
            if result is None:
                print(f"result not found: {args.result_id}", file=sys.stderr)
                return 2
            _print_result(result, show_output=True)
            inbox.mark_read(result.id)
            return 0
        if command == "read":
            if not inbox.mark_read(args.result_id):
                print(f"result not found: {args.result_id}", file=sys.stderr)
                return 2
            return 0
        if command == "read-all":
            print(f"marked {inbox.mark_all_read()} results read")
            return 0
        if command == "delete":
            if not inbox.delete_result(args.result_id):
                print(f"result not found: {args.result_id}", file=sys.stderr)
                return 2
            return 0
        if command == "counts":
            counts = inbox.counts()
            print(f"total        {counts.total}")
            print(f"unread       {counts.unread}")
            print(f"needs-human  {counts.needs_human}")
            for status, count in counts.by_status.items():
                print(f"  {status:11} {count}")
            return 0
        print(f"unknown inbox command: {command}", file=sys.stderr)
        return 2
    finally:
        inbox.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)
    ensure_local_paths(config)
    setup_logger(config.paths.log, verbose=bool(args.verbose))

    if args.command == "run":
        if args.prompt is not None and not args.projects:
            parser.error("--prompt requires at least one --project")
        return cmd_run(config, args)
    if args.command == "startup":
        return cmd_startup(config)
    if args.command == "inbox":
        return cmd_inbox(config, args)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
