"""Persistent named worker processes ("windows") for long-running conversations.

A SessionManager owns one session and a set of uniquely named windows
inside it. Each window writes its stdout and stderr to
``<output_dir>/<name>.out`` so that a client reconnecting later can
recover what the process printed.

Two backends:

- ProcessWindowBackend: native process groups tracked in an injected
  in-memory registry. No external dependency beyond /bin/sh.
- TmuxWindowBackend: one tmux session, one tmux window per name.
  Windows survive a server restart.

Everything except ensure_session() treats "does not exist" as a
normal answer rather than an error.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import os
import re
import shlex
import shutil
import signal
import stat
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import ConfigurationError, SessionDependencyError, SessionSpawnError, ValidationError
from .models import WindowInfo, WindowStatus

if TYPE_CHECKING:
    from .config import JobsConfig

logger = logging.getLogger(__name__)

WINDOW_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")

_KILL_POLL_INTERVAL = 0.05


def validate_window_name(name: str) -> str:
    if not isinstance(name, str) or not WINDOW_NAME_RE.match(name):
        raise ValidationError(
            f"Invalid window name {name!r}: use letters, digits, '_' or '-'"
        )
    return name


def render_wrapper_script(command: str, cwd: str, output_path: str) -> str:
    """Shell script that runs *command* in *cwd* with all output captured."""
    return (
        "#!/bin/sh\n"
        "{\n"
        f"cd {shlex.quote(cwd)} || exit 1\n"
        f"{command}\n"
        f"}} > {shlex.quote(output_path)} 2>&1\n"
    )


# ── Backends ──


class WindowBackend(abc.ABC):
    """Launches and tracks windows for a SessionManager."""

    # Whether spawn() accepts an argv plus an output file directly.
    supports_argv: bool = False

    @abc.abstractmethod
    async def ensure_session(self) -> None: ...

    @abc.abstractmethod
    async def session_exists(self) -> bool: ...

    @abc.abstractmethod
    async def spawn(
        self,
        name: str,
        argv: Sequence[str],
        cwd: str | None = None,
        output_path: str | None = None,
    ) -> None: ...

    @abc.abstractmethod
    async def status(self, name: str) -> WindowStatus: ...

    @abc.abstractmethod
    async def kill(self, name: str) -> bool: ...

    @abc.abstractmethod
    async def list_windows(self) -> list[str]: ...

    async def pid(self, name: str) -> int | None:
        return None


@dataclass
class ProcessWindow:
    name: str
    process: subprocess.Popen
    argv: list[str]


class ProcessRegistry:
    """Live windows of a ProcessWindowBackend, keyed by name."""

    def __init__(self) -> None:
        self._windows: dict[str, ProcessWindow] = {}

    def add(self, window: ProcessWindow) -> None:
        self._windows[window.name] = window

    def get(self, name: str) -> ProcessWindow | None:
        return self._windows.get(name)

    def remove(self, name: str) -> ProcessWindow | None:
        return self._windows.pop(name, None)

    def names(self) -> list[str]:
        return list(self._windows.keys())

    def __len__(self) -> int:
        return len(self._windows)


class ProcessWindowBackend(WindowBackend):
    """Windows as process groups started with ``start_new_session``.

    Killing a window signals the whole group: SIGTERM first, SIGKILL
    after ``kill_grace_seconds``. The record is dropped once the group
    is gone, so a killed window no longer exists.
    """

    supports_argv = True

    def __init__(
        self,
        registry: ProcessRegistry | None = None,
        kill_grace_seconds: float = 3.0,
        shell: str = "/bin/sh",
    ) -> None:
        self._registry = registry if registry is not None else ProcessRegistry()
        self._kill_grace = kill_grace_seconds
        self._shell = shell
        self._started = False

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    async def ensure_session(self) -> None:
        if self._started:
            return
        if not os.access(self._shell, os.X_OK):
            raise SessionDependencyError(self._shell, "needed to run wrapper scripts")
        self._started = True
        logger.info("Process session ready (shell=%s)", self._shell)

    async def session_exists(self) -> bool:
        return self._started

    async def spawn(
        self,
        name: str,
        argv: Sequence[str],
        cwd: str | None = None,
        output_path: str | None = None,
    ) -> None:
        argv = list(argv)
        out = subprocess.DEVNULL
        try:
            if output_path:
                out = open(output_path, "wb")
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            raise SessionSpawnError(name, exc.strerror or str(exc)) from exc
        finally:
            if out is not subprocess.DEVNULL:
                out.close()
        self._registry.add(ProcessWindow(name=name, process=proc, argv=argv))
        logger.info("Window %s started pid=%d", name, proc.pid)

    async def status(self, name: str) -> WindowStatus:
        if not self._started:
            return WindowStatus(exists=False, running=False)
        window = self._registry.get(name)
        if window is None:
            return WindowStatus(exists=False, running=False)
        return WindowStatus(exists=True, running=window.process.poll() is None)

    async def kill(self, name: str) -> bool:
        window = self._registry.get(name)
        if window is None:
            return False
        proc = window.process
        was_running = proc.poll() is None
        if was_running:
            await self._terminate_group(proc)
        self._registry.remove(name)
        logger.info("Window %s killed (was_running=%s)", name, was_running)
        return was_running

    async def _terminate_group(self, proc: subprocess.Popen) -> None:
        _signal_group(proc, signal.SIGTERM)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._kill_grace
        while proc.poll() is None and loop.time() < deadline:
            await asyncio.sleep(_KILL_POLL_INTERVAL)
        if proc.poll() is None:
            logger.warning("pid %d ignored SIGTERM, sending SIGKILL", proc.pid)
            _signal_group(proc, signal.SIGKILL)
            while proc.poll() is None:
                await asyncio.sleep(_KILL_POLL_INTERVAL)

    async def list_windows(self) -> list[str]:
        if not self._started:
            return []
        return self._registry.names()

    async def pid(self, name: str) -> int | None:
        window = self._registry.get(name)
        return window.process.pid if window else None

    async def shutdown(self) -> None:
        """Kill every window still tracked."""
        for name in self._registry.names():
            await self.kill(name)


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.send_signal(sig)


class TmuxWindowBackend(WindowBackend):
    """One tmux session; each name is a tmux window.

    Windows are created with ``remain-on-exit on`` so an exited
    process stays visible as a dead pane until killed.
    """

    def __init__(self, session_name: str = "ai-workspace", tmux: str = "tmux") -> None:
        self._session = session_name
        self._tmux = tmux

    @property
    def session_name(self) -> str:
        return self._session

    def _window_target(self, name: str) -> str:
        # "=" forces an exact name match.
        return f"={self._session}:={name}"

    async def _run(self, *args: str) -> tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._tmux, *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise SessionDependencyError("tmux") from exc
        stdout, stderr = await proc.communicate()
        return (
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def session_exists(self) -> bool:
        if shutil.which(self._tmux) is None:
            return False
        rc, _, _ = await self._run("has-session", "-t", f"={self._session}")
        return rc == 0

    async def ensure_session(self) -> None:
        if shutil.which(self._tmux) is None:
            raise SessionDependencyError("tmux")
        if await self.session_exists():
            return
        rc, _, err = await self._run("new-session", "-d", "-s", self._session)
        if rc != 0:
            # Another caller may have created it in the meantime.
            if not await self.session_exists():
                raise ConfigurationError(
                    f"Could not create tmux session {self._session}: {err.strip()}"
                )
        logger.info("tmux session %s ready", self._session)

    async def spawn(
        self,
        name: str,
        argv: Sequence[str],
        cwd: str | None = None,
        output_path: str | None = None,
    ) -> None:
        args = ["new-window", "-d", "-t", f"={self._session}:", "-n", name]
        if cwd:
            args.extend(["-c", cwd])
        # A single argument is run by tmux through the default shell.
        args.append(shlex.join(argv))
        # Chained in one tmux command so the option is set before the
        # pane can exit.
        args.extend([";", "set-option", "-w", "-t", self._window_target(name),
                     "remain-on-exit", "on"])
        rc, _, err = await self._run(*args)
        if rc != 0:
            raise SessionSpawnError(name, err.strip() or f"tmux exited with code {rc}")
        logger.info("tmux window %s:%s started", self._session, name)

    async def _pane_field(self, name: str, fmt: str) -> str | None:
        if not await self.session_exists():
            return None
        rc, out, _ = await self._run(
            "list-panes", "-t", self._window_target(name), "-F", fmt,
        )
        if rc != 0:
            return None
        lines = out.strip().splitlines()
        return lines[0].strip() if lines else None

    async def status(self, name: str) -> WindowStatus:
        pane_dead = await self._pane_field(name, "#{pane_dead}")
        if pane_dead is None:
            return WindowStatus(exists=False, running=False)
        return WindowStatus(exists=True, running=pane_dead == "0")

    async def kill(self, name: str) -> bool:
        current = await self.status(name)
        if not current.exists:
            return False
        rc, _, _ = await self._run("kill-window", "-t", self._window_target(name))
        return rc == 0 and current.running

    async def list_windows(self) -> list[str]:
        if not await self.session_exists():
            return []
        rc, out, _ = await self._run(
            "list-windows", "-t", f"={self._session}", "-F", "#{window_name}",
        )
        if rc != 0:
            return []
        return [line for line in out.strip().splitlines() if line]

    async def pid(self, name: str) -> int | None:
        raw = await self._pane_field(name, "#{pane_pid}")
        return int(raw) if raw and raw.isdigit() else None


# ── Manager ──


class SessionManager:
    """Named long-lived processes with captured output."""

    def __init__(self, backend: WindowBackend, output_dir: str) -> None:
        self._backend = backend
        self._output_dir = output_dir

    @classmethod
    def from_config(cls, config: JobsConfig) -> SessionManager:
        if config.session_backend == "tmux":
            backend: WindowBackend = TmuxWindowBackend(config.session_name)
        else:
            backend = ProcessWindowBackend(kill_grace_seconds=config.kill_grace_seconds)
        return cls(backend, config.session_output_dir)

    @property
    def backend(self) -> WindowBackend:
        return self._backend

    @property
    def output_dir(self) -> str:
        return self._output_dir

    def output_path(self, name: str) -> str:
        return os.path.join(self._output_dir, f"{validate_window_name(name)}.out")

    def script_path(self, name: str) -> str:
        return os.path.join(self._output_dir, f"{validate_window_name(name)}.sh")

    async def ensure_session(self) -> None:
        await self._backend.ensure_session()

    async def spawn_in_window(
        self,
        name: str,
        command: str | Sequence[str],
        cwd: str,
    ) -> None:
        """Launch *command* in *cwd* as window *name*.

        A string is run by /bin/sh through a wrapper script. An argv
        list is exec'd directly when the backend allows it.
        """
        validate_window_name(name)
        if isinstance(command, str):
            if not command.strip():
                raise ValidationError("command is required")
        elif not command:
            raise ValidationError("command is required")

        await self.ensure_session()
        try:
            os.makedirs(self._output_dir, exist_ok=True)
        except OSError as exc:
            raise SessionSpawnError(name, f"cannot create output dir: {exc}") from exc

        current = await self._backend.status(name)
        if current.running:
            raise SessionSpawnError(name, "a window with this name is already running")
        if current.exists:
            await self._backend.kill(name)

        output_path = self.output_path(name)
        if not isinstance(command, str) and self._backend.supports_argv:
            await self._backend.spawn(name, list(command), cwd=cwd, output_path=output_path)
            return

        shell_command = command if isinstance(command, str) else shlex.join(command)
        script_path = self.script_path(name)
        try:
            with open(script_path, "w") as f:
                f.write(render_wrapper_script(shell_command, cwd, output_path))
            os.chmod(script_path, stat.S_IRWXU | stat.S_IRGRP | stat.S_IXGRP | stat.S_IROTH | stat.S_IXOTH)
        except OSError as exc:
            raise SessionSpawnError(name, f"cannot write wrapper script: {exc}") from exc
        await self._backend.spawn(name, [script_path])

    async def get_window_status(self, name: str) -> WindowStatus:
        validate_window_name(name)
        return await self._backend.status(name)

    async def kill_window(self, name: str) -> bool:
        validate_window_name(name)
        return await self._backend.kill(name)

    async def list_windows(self) -> list[str]:
        return await self._backend.list_windows()

    async def read_output(self, name: str) -> str | None:
        path = self.output_path(name)
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                return f.read()
        except FileNotFoundError:
            return None

    async def cleanup_output(self, name: str) -> None:
        for path in (self.output_path(name), self.script_path(name)):
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass

    async def window_info(self, name: str) -> WindowInfo | None:
        current = await self.get_window_status(name)
        if not current.exists:
            return None
        script_path = self.script_path(name)
        return WindowInfo(
            name=name,
            script_path=script_path if os.path.exists(script_path) else None,
            output_path=self.output_path(name),
            pid=await self._backend.pid(name),
            running=current.running,
        )

    async def shutdown(self) -> None:
        """Stop windows that would otherwise die with this process."""
        if isinstance(self._backend, ProcessWindowBackend):
            await self._backend.shutdown()
