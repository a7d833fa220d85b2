"""Abstract base for backend CLI providers.

Each provider wraps one agent CLI (claude, codex, gemini). The job
runner never talks to a provider directly; it goes through
BackendInvoker (registry.py), which drains run_agent() into an
InvocationResult.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from .settings import ChatSettings

logger = logging.getLogger(__name__)

# stream-json lines from agent CLIs can be far larger than asyncio's 64 KiB default.
_STREAM_LIMIT = 16 * 1024 * 1024
_STDERR_TAIL_CHARS = 2000


@dataclass
class ProviderMessage:
    """A streaming message from an agent execution.

    The final message has is_result=True and carries ``exit_code``
    (and ``error`` when the run failed) in metadata.
    """
    text: str = ""
    is_result: bool = False
    is_error: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamState:
    """Mutable parse state for one CLI invocation."""
    output_parts: list[str] = field(default_factory=list)
    error: str | None = None
    needs_human: bool | None = None

    @property
    def output(self) -> str:
        return "".join(self.output_parts)


class Provider(abc.ABC):
    """Abstract provider interface.

    Subclasses supply the argv (build_command) and, optionally, a
    line parser for structured output formats. Process handling is
    shared: argv spawn without a shell, line-by-line streaming, and
    kill-on-cancel.
    """

    def __init__(
        self,
        command: str,
        api_key_env: str | None = None,
        settings: ChatSettings | None = None,
    ) -> None:
        self._command = self.resolve_command(command, self.name)
        self._api_key_env = api_key_env
        self._settings = settings or ChatSettings()

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'claude', 'codex')."""

    @property
    def display_name(self) -> str:
        return self.name.capitalize()

    @property
    def command(self) -> str:
        return self._command

    @abc.abstractmethod
    def build_command(self, prompt: str, settings: ChatSettings | None = None) -> list[str]:
        """Full argv for a one-shot, non-interactive run on *prompt*."""

    def parse_line(self, line: str, state: StreamState) -> str | None:
        """Turn one stdout line into an output chunk (None to drop it)."""
        return line

    def is_available(self) -> bool:
        """Check if this provider's CLI is installed."""
        return shutil.which(self._command) is not None

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a provider binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command:
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s for provider %s",
                    command, fallback, self.name,
                )
                return fallback
            return command
        return fallback or command

    def _api_key_var(self) -> str | None:
        """Env var name the CLI reads its API key from, if any."""
        return None

    def _build_env(self) -> dict[str, str] | None:
        """Build subprocess environment with optional API key."""
        target = self._api_key_var()
        if self._api_key_env and target:
            key = os.environ.get(self._api_key_env)
            if key:
                env = os.environ.copy()
                env[target] = key
                return env
        return None

    async def run_agent(
        self,
        prompt: str,
        *,
        cwd: str | None = None,
        settings: ChatSettings | None = None,
    ) -> AsyncIterator[ProviderMessage]:
        """Run the CLI once against *prompt* in *cwd*.

        Uses asyncio.create_subprocess_exec (array-based, no shell)
        for safe argument passing. Yields one ProviderMessage per
        output chunk, then a final is_result message.
        """
        cmd = self.build_command(prompt, settings)
        state = StreamState()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                cwd=cwd,
                limit=_STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            # Raised for a missing binary and for a missing cwd alike.
            missing = cwd if cwd and not os.path.isdir(cwd) else cmd[0]
            error = f"'{missing}' not found: {exc.strerror or exc}"
            yield ProviderMessage(
                text=f"ERROR: {error}",
                is_result=True,
                is_error=True,
                metadata={"exit_code": None, "error": error},
            )
            return
        except OSError as exc:
            error = f"Failed to start {self.display_name} CLI: {exc}"
            yield ProviderMessage(
                text=f"ERROR: {error}",
                is_result=True,
                is_error=True,
                metadata={"exit_code": None, "error": error},
            )
            return

        logger.debug("%s started pid=%s cwd=%s", self.name, proc.pid, cwd)
        # Drain stderr concurrently so a chatty CLI cannot block on a full pipe.
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace")
                chunk = self.parse_line(text, state)
                if chunk:
                    state.output_parts.append(chunk)
                    yield ProviderMessage(text=chunk)

            await proc.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")
        finally:
            if proc.returncode is None:
                _kill_process(proc, self.name)
            if not stderr_task.done():
                stderr_task.cancel()

        returncode = proc.returncode
        error = state.error
        if error is None and returncode != 0:
            error = f"{self.display_name} CLI exited with code {returncode}"
            tail = stderr.strip()[-_STDERR_TAIL_CHARS:]
            if tail:
                error = f"{error}: {tail}"
        if stderr.strip():
            logger.debug("%s stderr: %s", self.name, stderr.strip()[-_STDERR_TAIL_CHARS:])

        metadata: dict[str, Any] = {"exit_code": returncode}
        if error is not None:
            metadata["error"] = error
        if state.needs_human is not None:
            metadata["needs_human"] = state.needs_human
        yield ProviderMessage(
            text=state.output,
            is_result=True,
            is_error=error is not None,
            metadata=metadata,
        )


def _kill_process(proc: asyncio.subprocess.Process, name: str) -> None:
    try:
        proc.kill()
        logger.info("Killed %s pid=%s after cancellation", name, proc.pid)
    except ProcessLookupError:
        pass
