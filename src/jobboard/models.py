from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .utils import project_name_from_path

ADHOC_JOB_ID = "adhoc"
ADHOC_JOB_NAME = "Ad-hoc Job"
PRE_CHECK_OUTPUT_LABEL = "Pre-check output:"


class ProjectStatus(str, Enum):
    PENDING = "pending"
    PRE_CHECK = "pre-check"
    RUNNING = "running"
    SKIPPED = "skipped"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == _TERMINAL_RANK


_TERMINAL_RANK = 3
_STATUS_RANK = {
    ProjectStatus.PENDING: 0,
    ProjectStatus.PRE_CHECK: 1,
    ProjectStatus.RUNNING: 2,
    ProjectStatus.SKIPPED: _TERMINAL_RANK,
    ProjectStatus.COMPLETE: _TERMINAL_RANK,
    ProjectStatus.ERROR: _TERMINAL_RANK,
}


class RunStatus(str, Enum):
    COMPLETE = "complete"
    NEEDS_HUMAN = "needs-human"
    ERROR = "error"


class JobTrigger(str, Enum):
    MANUAL = "manual"
    ON_LOGIN = "on-login"


class JobBackend(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"


class JobStatus(str, Enum):
    """Server-side status of a saved job definition."""

    IDLE = "idle"
    RUNNING = "running"
    NEEDS_HUMAN = "needs-human"
    ERROR = "error"


class SkipIf(str, Enum):
    EMPTY = "empty"
    NON_EMPTY = "non-empty"
    MATCHES = "matches"


@dataclass(slots=True, frozen=True)
class PreCheck:
    command: str
    skip_if: SkipIf
    pattern: str | None = None

    def __post_init__(self) -> None:
        if not self.command.strip():
            raise ValueError("pre-check command must not be empty")
        if self.skip_if is SkipIf.MATCHES and not self.pattern:
            raise ValueError("pre-check `matches` mode requires a pattern")

    def to_payload(self) -> dict[str, str]:
        payload = {"command": self.command, "skipIf": self.skip_if.value}
        if self.pattern is not None:
            payload["pattern"] = self.pattern
        return payload

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> PreCheck:
        return cls(
            command=str(raw.get("command", "")),
            skip_if=SkipIf(raw.get("skipIf", SkipIf.EMPTY.value)),
            pattern=raw.get("pattern"),
        )


@dataclass(slots=True)
class JobDefinition:
    id: str
    name: str
    prompt: str
    project_paths: list[str]
    trigger: JobTrigger = JobTrigger.MANUAL
    backend: JobBackend = JobBackend.CLAUDE
    pre_check: PreCheck | None = None
    max_parallel: int = 3
    last_run: str | None = None
    last_skipped: str | None = None
    status: JobStatus | None = None

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> JobDefinition:
        for key in ("id", "name", "prompt", "projectPaths"):
            if key not in raw:
                raise ValueError(f"job definition is missing `{key}`")
        paths = raw["projectPaths"]
        if not isinstance(paths, list):
            raise ValueError("`projectPaths` must be a list")
        pre_check_raw = raw.get("preCheck")
        status_raw = raw.get("status")
        return cls(
            id=str(raw["id"]),
            name=str(raw["name"]),
            prompt=str(raw["prompt"]),
            project_paths=[str(path) for path in paths],
            trigger=JobTrigger(raw.get("trigger", JobTrigger.MANUAL.value)),
            backend=JobBackend(raw.get("backend") or JobBackend.CLAUDE.value),
            pre_check=PreCheck.from_payload(pre_check_raw) if isinstance(pre_check_raw, dict) else None,
            max_parallel=int(raw.get("maxParallel") or 3),
            last_run=raw.get("lastRun"),
            last_skipped=raw.get("lastSkipped"),
            status=JobStatus(status_raw) if status_raw else None,
        )


@dataclass(slots=True)
class RunRequest:
    """Parameters for one run: either a saved job (``job_id``) or an ad-hoc prompt."""

    project_paths: list[str]
    job_id: str | None = None
    job_name: str = ADHOC_JOB_NAME
    prompt: str | None = None
    pre_check: PreCheck | None = None
    max_parallel: int | None = None
    backend: JobBackend | None = None

    def __post_init__(self) -> None:
        if not self.project_paths:
            raise ValueError("a run needs at least one project path")
        if len(set(self.project_paths)) != len(self.project_paths):
            raise ValueError("project paths must be unique")
        if self.job_id is None and not (self.prompt or "").strip():
            raise ValueError("ad-hoc runs require a prompt")
        if self.max_parallel is not None and self.max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")

    @classmethod
    def for_job(cls, job: JobDefinition) -> RunRequest:
        return cls(project_paths=list(job.project_paths), job_id=job.id, job_name=job.name)

    @property
    def result_job_id(self) -> str:
        return self.job_id or ADHOC_JOB_ID

    def to_payload(self) -> dict[str, Any]:
        if self.job_id is not None:
            return {"jobId": self.job_id}
        payload: dict[str, Any] = {"prompt": self.prompt, "projectPaths": list(self.project_paths)}
        if self.pre_check is not None:
            payload["preCheck"] = self.pre_check.to_payload()
        if self.max_parallel is not None:
            payload["maxParallel"] = self.max_parallel
        if self.backend is not None:
            payload["backend"] = self.backend.value
        return payload


@dataclass(slots=True)
class ProjectProgress:
    path: str
    name: str
    status: ProjectStatus = ProjectStatus.PENDING
    output: str = ""
    error: str | None = None
    needs_human: bool = False
    started_at: str | None = None
    completed_at: str | None = None

    @classmethod
    def for_path(cls, path: str) -> ProjectProgress:
        return cls(path=path, name=project_name_from_path(path))


@dataclass(slots=True, frozen=True)
class ProjectRunResult:
    path: str
    name: str
    pre_check_skipped: bool
    output: str
    error: str | None
    needs_human: bool
    started_at: str
    completed_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "pre_check_skipped": self.pre_check_skipped,
            "output": self.output,
            "error": self.error,
            "needs_human": self.needs_human,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ProjectRunResult:
        return cls(
            path=raw["path"],
            name=raw["name"],
            pre_check_skipped=bool(raw["pre_check_skipped"]),
            output=raw.get("output") or "",
            error=raw.get("error"),
            needs_human=bool(raw.get("needs_human")),
            started_at=raw["started_at"],
            completed_at=raw["completed_at"],
        )


@dataclass(slots=True, frozen=True)
class JobResult:
    id: str
    job_id: str
    job_name: str
    started_at: str
    completed_at: str
    projects: tuple[ProjectRunResult, ...]
    status: RunStatus
    is_read: bool = False
    summary: str | None = None


@dataclass(slots=True)
class InboxCounts:
    total: int = 0
    unread: int = 0
    needs_human: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
