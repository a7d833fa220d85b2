"""Exception hierarchy for the job execution engine.

Only request-level failures (ConfigurationError, ValidationError) are
meant to reach an HTTP caller. Per-target failures are captured into
ProjectRunResult.error and never raised past the runner.
"""
from __future__ import annotations


class JobsError(Exception):
    """Base exception for all job engine errors."""


class ConfigurationError(JobsError):
    """Deployment or lookup precondition not met. Terminal, never retried."""


class SessionDependencyError(ConfigurationError):
    """The process container mechanism (tmux, /bin/sh) is not installed."""
    def __init__(self, dependency: str, reason: str = "") -> None:
        self.dependency = dependency
        detail = f": {reason}" if reason else ""
        super().__init__(f"{dependency} is required but not installed{detail}")


class JobNotFoundError(ConfigurationError):
    """Requested job definition does not exist."""
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class ValidationError(JobsError):
    """Malformed request. Raised before any process is spawned."""


class PreCheckExecutionError(JobsError):
    """The gating command itself could not run."""
    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"Pre-check '{command}' failed: {reason}")


class AgentProcessError(JobsError):
    """Backend CLI exited non-zero or could not be started."""
    def __init__(
        self,
        backend: str,
        reason: str,
        exit_code: int | None = None,
        output: str = "",
    ) -> None:
        self.backend = backend
        self.reason = reason
        self.exit_code = exit_code
        # Whatever the agent printed before failing.
        self.output = output
        super().__init__(f"{backend} failed: {reason}")


class SessionSpawnError(JobsError):
    """A window could not be launched inside the session."""
    def __init__(self, window_name: str, reason: str) -> None:
        self.window_name = window_name
        self.reason = reason
        super().__init__(f"Failed to spawn window {window_name}: {reason}")
