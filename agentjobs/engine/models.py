"""Core data models for the job engine.

All dataclasses, enums, and wire conversions. Single source of truth
to avoid circular imports. Python attributes are snake_case; the JSON
wire form is camelCase.
"""
from __future__ import annotations

import os
import random
import re
import string
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .config import BACKENDS
from .errors import ValidationError


class JobStatus(str, Enum):
    """Job lifecycle states. Mutated only at run start and run end."""
    IDLE = "idle"
    RUNNING = "running"
    NEEDS_HUMAN = "needs-human"
    ERROR = "error"


class JobTrigger(str, Enum):
    """When a job is meant to be started."""
    MANUAL = "manual"
    ON_LOGIN = "on-login"
    ON_DEVICE_CHANGE = "on-device-change"
    BEFORE_FIRST_PROMPT = "before-first-prompt"


class SkipIf(str, Enum):
    """Pre-check classification rule applied to trimmed stdout."""
    EMPTY = "empty"
    NON_EMPTY = "non-empty"
    MATCHES = "matches"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# job_id recorded for runs that are not tied to a saved job.
ADHOC_JOB_ID = "adhoc"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_id(prefix: str) -> str:
    """``<prefix>_<epoch ms>_<7 random base36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def project_name(project_path: str) -> str:
    """Display name of a target: the last path segment."""
    return os.path.basename(os.path.normpath(project_path))


def _enum_values(enum_cls: type[Enum]) -> str:
    return ", ".join(member.value for member in enum_cls)


@dataclass(frozen=True)
class PreCheckSpec:
    """Optional gating command run per target before invoking a backend."""
    command: str
    skip_if: SkipIf
    pattern: str | None = None

    def validate(self) -> None:
        if not self.command or not self.command.strip():
            raise ValidationError("preCheck.command is required when preCheck is provided")
        if "\x00" in self.command:
            raise ValidationError("preCheck.command must not contain NUL characters")
        if self.skip_if == SkipIf.MATCHES:
            if not self.pattern:
                raise ValidationError('preCheck.pattern is required when skipIf is "matches"')
            try:
                re.compile(self.pattern)
            except re.error as exc:
                raise ValidationError(f"preCheck.pattern is not a valid regex: {exc}") from exc
        elif self.pattern:
            raise ValidationError('preCheck.pattern is only allowed when skipIf is "matches"')

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"command": self.command, "skipIf": self.skip_if.value}
        if self.pattern:
            d["pattern"] = self.pattern
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PreCheckSpec:
        if not isinstance(data, dict):
            raise ValidationError("preCheck must be an object")
        raw_skip = data.get("skipIf", data.get("skip_if"))
        try:
            skip_if = SkipIf(raw_skip)
        except ValueError:
            raise ValidationError(
                f"Invalid preCheck.skipIf. Must be one of: {_enum_values(SkipIf)}"
            ) from None
        spec = cls(
            command=str(data.get("command") or ""),
            skip_if=skip_if,
            pattern=data.get("pattern") or None,
        )
        spec.validate()
        return spec


@dataclass(frozen=True)
class ProjectRunResult:
    """Outcome of one target within one run. Immutable once emitted."""
    project_path: str
    output: str = ""
    error: str | None = None
    needs_human: bool = False
    skipped: bool = False
    pre_check_output: str | None = None
    duration_ms: int = 0
    started_at: str = ""
    completed_at: str = ""

    @property
    def project_name(self) -> str:
        return project_name(self.project_path)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "projectPath": self.project_path,
            "projectName": self.project_name,
            "output": self.output,
            "needsHuman": self.needs_human,
            "skipped": self.skipped,
            "durationMs": self.duration_ms,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }
        if self.error is not None:
            d["error"] = self.error
        if self.pre_check_output is not None:
            d["preCheckOutput"] = self.pre_check_output
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectRunResult:
        return cls(
            project_path=data.get("projectPath", ""),
            output=data.get("output", "") or "",
            error=data.get("error"),
            needs_human=bool(data.get("needsHuman", False)),
            skipped=bool(data.get("skipped", False)),
            pre_check_output=data.get("preCheckOutput"),
            duration_ms=int(data.get("durationMs", 0) or 0),
            started_at=data.get("startedAt", ""),
            completed_at=data.get("completedAt", ""),
        )


def derive_run_status(results: Iterable[ProjectRunResult]) -> JobStatus:
    """Worst outcome wins: error > needs-human > idle."""
    results = list(results)
    if any(r.error for r in results):
        return JobStatus.ERROR
    if any(r.needs_human for r in results):
        return JobStatus.NEEDS_HUMAN
    return JobStatus.IDLE


@dataclass
class JobRun:
    """One execution of a job (or ad-hoc prompt) across its targets."""
    id: str
    job_id: str
    job_name: str
    started_at: str
    completed_at: str | None = None
    projects: list[ProjectRunResult] = field(default_factory=list)
    # Set when the run as a whole failed (e.g. cancelled on shutdown).
    error: str | None = None

    @property
    def status(self) -> JobStatus:
        if self.error:
            return JobStatus.ERROR
        return derive_run_status(self.projects)

    def summary(self) -> str:
        skipped = sum(1 for p in self.projects if p.skipped)
        failed = sum(1 for p in self.projects if p.error)
        flagged = sum(1 for p in self.projects if p.needs_human)
        ran = len(self.projects) - skipped
        parts = [f"{ran} ran", f"{skipped} skipped"]
        if failed:
            parts.append(f"{failed} failed")
        if flagged:
            parts.append(f"{flagged} need review")
        return ", ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "jobId": self.job_id,
            "jobName": self.job_name,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "projects": [p.to_dict() for p in self.projects],
            "status": self.status.value,
        }
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class RunRecord:
    """Persisted run history entry (results inbox)."""
    run: JobRun
    is_read: bool = False

    def to_dict(self) -> dict[str, Any]:
        d = self.run.to_dict()
        d["isRead"] = self.is_read
        d["summary"] = self.run.summary()
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunRecord:
        run = JobRun(
            id=data["id"],
            job_id=data.get("jobId", ADHOC_JOB_ID),
            job_name=data.get("jobName", ""),
            started_at=data.get("startedAt", ""),
            completed_at=data.get("completedAt"),
            projects=[ProjectRunResult.from_dict(p) for p in data.get("projects", [])],
            error=data.get("error"),
        )
        return cls(run=run, is_read=bool(data.get("isRead", False)))


@dataclass
class Job:
    """A saved job definition."""
    id: str
    name: str
    prompt: str
    target_paths: list[str]
    trigger: JobTrigger = JobTrigger.MANUAL
    backend: str = "claude"
    pre_check: PreCheckSpec | None = None
    max_parallel: int | None = None
    status: JobStatus = JobStatus.IDLE
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    last_run: str | None = None
    last_skipped: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "prompt": self.prompt,
            "targetPaths": list(self.target_paths),
            "trigger": self.trigger.value,
            "backend": self.backend,
            "status": self.status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.pre_check is not None:
            d["preCheck"] = self.pre_check.to_dict()
        if self.max_parallel is not None:
            d["maxParallel"] = self.max_parallel
        if self.last_run is not None:
            d["lastRun"] = self.last_run
        if self.last_skipped is not None:
            d["lastSkipped"] = self.last_skipped
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        pre_check_raw = data.get("preCheck")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            prompt=data.get("prompt", ""),
            target_paths=list(data.get("targetPaths") or data.get("projectPaths") or []),
            trigger=JobTrigger(data.get("trigger", JobTrigger.MANUAL.value)),
            backend=data.get("backend") or "claude",
            pre_check=PreCheckSpec.from_dict(pre_check_raw) if pre_check_raw else None,
            max_parallel=data.get("maxParallel"),
            status=JobStatus(data.get("status") or JobStatus.IDLE.value),
            created_at=data.get("createdAt") or utcnow_iso(),
            updated_at=data.get("updatedAt") or utcnow_iso(),
            last_run=data.get("lastRun"),
            last_skipped=data.get("lastSkipped"),
        )


@dataclass
class JobRequest:
    """Validated create/update payload for a job definition."""
    name: str
    prompt: str
    target_paths: list[str]
    trigger: JobTrigger
    backend: str = "claude"
    pre_check: PreCheckSpec | None = None
    max_parallel: int | None = None
    id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobRequest:
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        name = data.get("name")
        prompt = data.get("prompt")
        target_paths = data.get("targetPaths") or data.get("projectPaths")
        if not name or not prompt or not target_paths:
            raise ValidationError("name, prompt, and targetPaths are required")
        if not data.get("trigger"):
            raise ValidationError("trigger is required")
        try:
            trigger = JobTrigger(data["trigger"])
        except ValueError:
            raise ValidationError(
                f"Invalid trigger. Must be one of: {_enum_values(JobTrigger)}"
            ) from None
        pre_check_raw = data.get("preCheck")
        return cls(
            id=data.get("id") or None,
            name=str(name),
            prompt=str(prompt),
            target_paths=validate_target_paths(target_paths),
            trigger=trigger,
            backend=validate_backend(data.get("backend") or "claude"),
            pre_check=PreCheckSpec.from_dict(pre_check_raw) if pre_check_raw else None,
            max_parallel=validate_max_parallel(data.get("maxParallel"), allow_none=True),
        )


@dataclass(frozen=True)
class WindowStatus:
    exists: bool
    running: bool


@dataclass
class WindowInfo:
    """A named long-lived process inside the session."""
    name: str
    script_path: str | None
    output_path: str
    pid: int | None = None
    running: bool = False


def validate_backend(backend: Any) -> str:
    if backend not in BACKENDS:
        raise ValidationError(
            f"Unknown backend '{backend}'. Must be one of: {', '.join(BACKENDS)}"
        )
    return backend


def validate_target_paths(target_paths: Any) -> list[str]:
    if not isinstance(target_paths, list) or not target_paths:
        raise ValidationError("targetPaths must be a non-empty list")
    cleaned: list[str] = []
    for path in target_paths:
        if not isinstance(path, str) or not path.strip():
            raise ValidationError("targetPaths entries must be non-empty strings")
        cleaned.append(path)
    return cleaned


def validate_max_parallel(value: Any, *, allow_none: bool = False) -> int | None:
    if value is None and allow_none:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError("maxParallel must be an integer >= 1")
    return value
