"""Event types emitted while a job run is in progress.

Each event is a typed dataclass. The server turns them into
``data: <json>\\n\\n`` frames; the CLI renders them with rich.
Every event carries the run id that scopes it.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from ..engine.models import ProjectRunResult, project_name

logger = logging.getLogger(__name__)


@dataclass
class RunEvent:
    """Base event for one run."""
    event_type: str = ""
    run_id: str = ""


@dataclass
class ProjectStarted(RunEvent):
    event_type: str = "project-started"
    project: str = ""

    @property
    def project_name(self) -> str:
        return project_name(self.project)


@dataclass
class ProjectOutput(RunEvent):
    event_type: str = "project-output"
    project: str = ""
    text: str = ""

    @property
    def project_name(self) -> str:
        return project_name(self.project)


@dataclass
class ProjectSkipped(RunEvent):
    event_type: str = "project-skipped"
    project: str = ""
    pre_check_output: str = ""

    @property
    def project_name(self) -> str:
        return project_name(self.project)


@dataclass
class ProjectDone(RunEvent):
    event_type: str = "project-done"
    project: str = ""
    result: ProjectRunResult | None = None

    @property
    def project_name(self) -> str:
        return project_name(self.project)


@dataclass
class RunDone(RunEvent):
    """Terminal: the whole batch finished."""
    event_type: str = "done"
    status: str = ""
    results: list[ProjectRunResult] = field(default_factory=list)


@dataclass
class RunError(RunEvent):
    """Terminal: the run failed outside any single target."""
    event_type: str = "error"
    error: str = ""


TERMINAL_EVENT_TYPES = frozenset({"done", "error"})


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def event_to_dict(event: RunEvent) -> dict[str, Any]:
    """Convert a typed event to its JSON wire form (camelCase keys)."""
    d: dict[str, Any] = {"type": event.event_type, "runId": event.run_id}
    for name in event.__dataclass_fields__:
        if name in ("event_type", "run_id"):
            continue
        val = getattr(event, name)
        if val is None:
            continue
        if isinstance(val, ProjectRunResult):
            val = val.to_dict()
        elif isinstance(val, list):
            val = [v.to_dict() if isinstance(v, ProjectRunResult) else v for v in val]
        d[_camel(name)] = val
    if hasattr(event, "project"):
        d["projectName"] = event.project_name
    return d


def format_sse(event: RunEvent) -> bytes:
    """Frame one event as a server-sent events message."""
    return f"data: {json.dumps(event_to_dict(event))}\n\n".encode("utf-8")


class RunStream:
    """Buffers the events of one run for a single consumer.

    ``publish`` is the runner's event callback. The stream ends after
    the first terminal event; anything published after it is dropped.
    A consumer that goes away calls ``detach`` so that later events
    are no longer buffered.
    """

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self._queue: asyncio.Queue[RunEvent] = asyncio.Queue()
        self._terminated = False
        self._detached = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    async def publish(self, event: RunEvent) -> None:
        if self._terminated:
            logger.debug(
                "Dropping %s for run %s after terminal event",
                event.event_type, self.run_id,
            )
            return
        if event.event_type in TERMINAL_EVENT_TYPES:
            self._terminated = True
        if not self._detached:
            self._queue.put_nowait(event)

    def detach(self) -> None:
        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()

    async def __aiter__(self) -> AsyncIterator[RunEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.event_type in TERMINAL_EVENT_TYPES:
                return
