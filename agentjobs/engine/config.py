"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via JOBS_* env vars.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Async callback receiving every RunEvent emitted during a run.
# Signature: async def callback(event: RunEvent) -> None
EventCallback = Callable[[Any], Awaitable[None]]

BACKENDS = ("claude", "codex", "gemini")
SESSION_BACKENDS = ("process", "tmux")

# Carried over from the dashboard's heuristic for "the agent wants a person".
DEFAULT_NEEDS_HUMAN_PATTERNS = [
    r"needs?.human",
    r"requires?.human",
    r"human.review",
    r"manual.intervention",
    r"please.review",
    r"attention.required",
    r"conflict",
    r"critical.vulnerability",
    r"high.severity",
    r"security.issue",
]


async def fire_event(
    callback: EventCallback | None,
    event: Any,
) -> None:
    """Fire an event callback if set, logging but never propagating errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # A broken observer must not fail the run it is watching.
        logger.warning("Event callback failed for %s", type(event).__name__, exc_info=True)


def _default_output_dir() -> str:
    return os.path.join(tempfile.gettempdir(), "ai-workspace")


@dataclass
class JobsConfig:
    """Job engine configuration."""

    default_backend: str = "claude"
    default_max_parallel: int = 3
    # Pre-checks are assumed cheap; anything slower is an execution failure.
    precheck_timeout_seconds: float = 30.0

    # Job definitions + run history
    storage_dir: str = ".jobs-data"
    max_run_history: int = 50

    # Persistent sessions for long-running conversations
    session_backend: str = "process"
    session_name: str = "ai-workspace"
    session_output_dir: str = field(default_factory=_default_output_dir)
    kill_grace_seconds: float = 3.0

    # Logging
    log_level: str = "INFO"

    needs_human_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_NEEDS_HUMAN_PATTERNS)
    )
    # Per-backend settings from YAML, keyed by backend name.
    # Values are raw dicts consumed by providers.settings.
    provider_settings: dict[str, dict[str, Any]] = field(default_factory=dict)
    provider_commands: dict[str, str] = field(default_factory=dict)
    provider_api_key_envs: dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        from .errors import ConfigurationError

        if self.default_backend not in BACKENDS:
            raise ConfigurationError(
                f"Unknown default backend '{self.default_backend}'. "
                f"Must be one of: {', '.join(BACKENDS)}"
            )
        if self.session_backend not in SESSION_BACKENDS:
            raise ConfigurationError(
                f"Unknown session backend '{self.session_backend}'. "
                f"Must be one of: {', '.join(SESSION_BACKENDS)}"
            )
        if self.default_max_parallel < 1:
            raise ConfigurationError("default_max_parallel must be >= 1")
        if self.precheck_timeout_seconds <= 0:
            raise ConfigurationError("precheck_timeout_seconds must be > 0")
        for pattern in self.needs_human_patterns:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ConfigurationError(
                    f"Invalid needs-human pattern {pattern!r}: {exc}"
                ) from exc

    @classmethod
    def from_env(cls) -> JobsConfig:
        """Load configuration from JOBS_* environment variables."""
        jobs_vars = {
            k: v for k, v in os.environ.items() if k.startswith("JOBS_")
        }
        if jobs_vars:
            logger.info(
                "JobsConfig.from_env: JOBS_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(jobs_vars.items())),
            )
        else:
            logger.debug("JobsConfig.from_env: no JOBS_* env vars set, using defaults")

        config = cls(
            default_backend=os.getenv(
                "JOBS_DEFAULT_BACKEND", cls.default_backend
            ),
            default_max_parallel=int(os.getenv(
                "JOBS_DEFAULT_MAX_PARALLEL", str(cls.default_max_parallel)
            )),
            precheck_timeout_seconds=float(os.getenv(
                "JOBS_PRECHECK_TIMEOUT", str(cls.precheck_timeout_seconds)
            )),
            storage_dir=os.getenv("JOBS_STORAGE_DIR", cls.storage_dir),
            max_run_history=int(os.getenv(
                "JOBS_MAX_RUN_HISTORY", str(cls.max_run_history)
            )),
            session_backend=os.getenv(
                "JOBS_SESSION_BACKEND", cls.session_backend
            ).lower(),
            session_name=os.getenv("JOBS_SESSION_NAME", cls.session_name),
            session_output_dir=(
                os.getenv("JOBS_SESSION_OUTPUT_DIR") or _default_output_dir()
            ),
            kill_grace_seconds=float(os.getenv(
                "JOBS_KILL_GRACE", str(cls.kill_grace_seconds)
            )),
            log_level=os.getenv("JOBS_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "JobsConfig.from_env: backend=%s max_parallel=%d storage=%s sessions=%s",
            config.default_backend, config.default_max_parallel,
            config.storage_dir, config.session_backend,
        )
        return config
