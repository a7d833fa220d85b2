"""Batch job execution engine for AI coding-agent CLIs."""
from .config import JobsConfig
from .errors import (
    AgentProcessError,
    ConfigurationError,
    JobNotFoundError,
    JobsError,
    PreCheckExecutionError,
    SessionDependencyError,
    SessionSpawnError,
    ValidationError,
)
from .models import (
    Job,
    JobRun,
    JobStatus,
    JobTrigger,
    PreCheckSpec,
    ProjectRunResult,
    RunRecord,
    SkipIf,
    WindowInfo,
    WindowStatus,
)

__all__ = [
    # Runner and session manager import adapters; load them from their
    # modules (engine.runner, engine.session_manager) to avoid cycles.
    "JobsConfig",
    # Errors
    "AgentProcessError",
    "ConfigurationError",
    "JobNotFoundError",
    "JobsError",
    "PreCheckExecutionError",
    "SessionDependencyError",
    "SessionSpawnError",
    "ValidationError",
    # Models
    "Job",
    "JobRun",
    "JobStatus",
    "JobTrigger",
    "PreCheckSpec",
    "ProjectRunResult",
    "RunRecord",
    "SkipIf",
    "WindowInfo",
    "WindowStatus",
]
