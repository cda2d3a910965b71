"""Typed events carried by the job run stream."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar


class EventType(str, Enum):
    PRE_CHECK = "pre-check"
    START = "start"
    CONTENT = "content"
    COMPLETE = "complete"
    ERROR = "error"
    DONE = "done"


@dataclass(slots=True, frozen=True)
class JobStreamEvent:
    project: str | None = None
    run_id: str | None = None

    event_type: ClassVar[EventType | None] = None


@dataclass(slots=True, frozen=True)
class PreCheckEvent(JobStreamEvent):
    skipped: bool = False
    pre_check_output: str | None = None

    event_type: ClassVar[EventType] = EventType.PRE_CHECK


@dataclass(slots=True, frozen=True)
class StartEvent(JobStreamEvent):
    event_type: ClassVar[EventType] = EventType.START


@dataclass(slots=True, frozen=True)
class ContentEvent(JobStreamEvent):
    text: str = ""

    event_type: ClassVar[EventType] = EventType.CONTENT


@dataclass(slots=True, frozen=True)
class CompleteEvent(JobStreamEvent):
    needs_human: bool = False
    error: str | None = None

    event_type: ClassVar[EventType] = EventType.COMPLETE


@dataclass(slots=True, frozen=True)
class ErrorEvent(JobStreamEvent):
    error: str | None = None

    event_type: ClassVar[EventType] = EventType.ERROR


@dataclass(slots=True, frozen=True)
class DoneEvent(JobStreamEvent):
    event_type: ClassVar[EventType] = EventType.DONE


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def parse_event(payload: Any) -> JobStreamEvent:
    """Build a typed event from a decoded JSON frame.

    Raises ``ValueError`` for anything that is not an object with a known ``type``.
    """
    if not isinstance(payload, dict):
        raise ValueError("event payload must be a JSON object")
    try:
        event_type = EventType(payload.get("type"))
    except ValueError as exc:
        raise ValueError(f"unknown event type: {payload.get('type')!r}") from exc

    project = _optional_str(payload.get("project"))
    run_id = _optional_str(payload.get("runId"))

    if event_type is EventType.PRE_CHECK:
        return PreCheckEvent(
            project=project,
            run_id=run_id,
            skipped=bool(payload.get("skipped")),
            pre_check_output=_optional_str(payload.get("preCheckOutput")),
        )
    if event_type is EventType.START:
        return StartEvent(project=project, run_id=run_id)
    if event_type is EventType.CONTENT:
        return ContentEvent(project=project, run_id=run_id, text=str(payload.get("text") or ""))
    if event_type is EventType.COMPLETE:
        return CompleteEvent(
            project=project,
            run_id=run_id,
            needs_human=payload.get("needsHuman") is True,
            error=_optional_str(payload.get("error")) or None,
        )
    if event_type is EventType.ERROR:
        return ErrorEvent(project=project, run_id=run_id, error=_optional_str(payload.get("error")))
    return DoneEvent(project=project, run_id=run_id)
