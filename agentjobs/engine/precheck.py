"""Pre-flight gating commands.

A pre-check runs a shell command inside a target directory and decides,
from its trimmed stdout, whether the agent run for that target can be
skipped. Any failure to run the command fails open: the target is not
skipped and the failure is reported alongside the result.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from dataclasses import dataclass

from .errors import PreCheckExecutionError
from .models import PreCheckSpec, SkipIf

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreCheckOutcome:
    skip: bool
    output: str = ""
    error: str | None = None


def should_skip(spec: PreCheckSpec, output: str) -> bool:
    """Apply the skip rule to already-trimmed stdout."""
    if spec.skip_if == SkipIf.EMPTY:
        return output == ""
    if spec.skip_if == SkipIf.NON_EMPTY:
        return output != ""
    return re.search(spec.pattern or "", output) is not None


class PreCheckEvaluator:
    """Runs pre-check commands with a timeout."""

    def __init__(self, timeout_seconds: float = 30.0) -> None:
        self._timeout = timeout_seconds

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    async def evaluate(self, spec: PreCheckSpec, target: str) -> PreCheckOutcome:
        try:
            output = await self._run(spec.command, target)
        except PreCheckExecutionError as exc:
            logger.warning("Pre-check failed in %s: %s", target, exc)
            return PreCheckOutcome(skip=False, error=str(exc))

        skip = should_skip(spec, output)
        logger.debug(
            "Pre-check in %s: skip=%s output=%r", target, skip, output[:200],
        )
        return PreCheckOutcome(skip=skip, output=output)

    async def _run(self, command: str, cwd: str) -> str:
        if not os.path.isdir(cwd):
            raise PreCheckExecutionError(command, f"directory does not exist: {cwd}")
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            # ValueError: the command cannot be passed to exec (e.g. a NUL byte).
            raise PreCheckExecutionError(command, str(exc)) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            _kill_group(proc)
            await proc.wait()
            raise PreCheckExecutionError(
                command, f"timed out after {self._timeout:g}s",
            ) from None
        except asyncio.CancelledError:
            _kill_group(proc)
            raise

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            reason = f"exited with code {proc.returncode}"
            if detail:
                reason = f"{reason}: {detail[-500:]}"
            raise PreCheckExecutionError(command, reason)

        return stdout.decode("utf-8", errors="replace").strip()


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    # The shell may have forked children; take the whole group down.
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
