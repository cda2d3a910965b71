from __future__ import annotations

from collections.abc import Iterator

from .events import (
    CompleteEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    JobStreamEvent,
    PreCheckEvent,
    StartEvent,
)
from .models import PRE_CHECK_OUTPUT_LABEL, ProjectProgress, ProjectStatus
from .utils import utc_now_iso

UNKNOWN_ERROR = "Unknown error"


class ProgressTable:
    """Per-project progress for one run, keyed by project path in request order.

    ``apply`` is the only way events change a record. Status only ever moves
    forward: pending, pre-check, running, then one terminal state.
    """

    def __init__(self, project_paths: list[str]) -> None:
        self._projects: dict[str, ProjectProgress] = {}
        for path in project_paths:
            self._projects[path] = ProjectProgress.for_path(path)

    def __iter__(self) -> Iterator[ProjectProgress]:
        return iter(self._projects.values())

    def __len__(self) -> int:
        return len(self._projects)

    def get(self, path: str) -> ProjectProgress | None:
        return self._projects.get(path)

    def apply(self, event: JobStreamEvent) -> bool:
        """Fold one event into its project. Returns False when the event was ignored."""
        if isinstance(event, DoneEvent) or event.project is None:
            return False
        project = self._projects.get(event.project)
        if project is None:
            return False

        if isinstance(event, PreCheckEvent):
            return self._apply_pre_check(project, event)
        if isinstance(event, StartEvent):
            if project.status.rank >= ProjectStatus.RUNNING.rank:
                return False
            project.status = ProjectStatus.RUNNING
            project.started_at = utc_now_iso()
            return True
        if isinstance(event, ContentEvent):
            # appended in any state; stray text never changes status
            project.output += event.text
            return True
        if isinstance(event, CompleteEvent):
            if project.status.is_terminal:
                return False
            if event.error:
                self._fail(project, event.error)
            else:
                project.status = ProjectStatus.COMPLETE
                project.completed_at = utc_now_iso()
            if event.needs_human:
                project.needs_human = True
            return True
        if isinstance(event, ErrorEvent):
            if project.status.is_terminal:
                return False
            self._fail(project, event.error or UNKNOWN_ERROR)
            return True
        return False

    def fail_active(self, message: str) -> list[str]:
        """Mark every pending or running project as errored. Returns the affected paths."""
        failed: list[str] = []
        for project in self._projects.values():
            if project.status in (ProjectStatus.PENDING, ProjectStatus.RUNNING):
                self._fail(project, message or UNKNOWN_ERROR)
                failed.append(project.path)
        return failed

    def counts(self) -> dict[str, int]:
        output = {status.value: 0 for status in ProjectStatus}
        for project in self._projects.values():
            output[project.status.value] += 1
        return output

    def finished_count(self) -> int:
        return sum(1 for project in self._projects.values() if project.status.is_terminal)

    def _apply_pre_check(self, project: ProjectProgress, event: PreCheckEvent) -> bool:
        if project.status.rank > ProjectStatus.PRE_CHECK.rank:
            return False
        if event.pre_check_output:
            project.output = f"{PRE_CHECK_OUTPUT_LABEL}\n{event.pre_check_output}\n\n" + project.output
        if event.skipped:
            project.status = ProjectStatus.SKIPPED
            project.completed_at = utc_now_iso()
        else:
            project.status = ProjectStatus.PRE_CHECK
        return True

    @staticmethod
    def _fail(project: ProjectProgress, message: str) -> None:
        project.status = ProjectStatus.ERROR
        project.error = message
        project.completed_at = utc_now_iso()
