"""Best-effort cleanup of agent CLI runs left behind by a dead server.

Batch runs spawn one-shot ``claude --print``, ``codex exec`` and
``gemini --prompt=`` processes. If the server is killed mid-run those
children are re-parented to init and keep burning tokens. At startup
we terminate any such orphan that no live agentjobs server owns.
"""
from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Argument signatures of the one-shot invocations the runner makes.
ONE_SHOT_PATTERNS = [
    r"\bclaude\b.*--print\b.*--output-format\s+stream-json",
    r"\bcodex\b\s+exec\b",
    r"\bgemini\b.*--prompt=",
]

_SERVER_MARKERS = ("agentjobs --server", "agentjobs.app --server")


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            pid, ppid = int(parts[0]), int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


def _owned_by_server(
    proc: ProcessInfo,
    table: dict[int, ProcessInfo],
    current_pid: int,
) -> bool:
    """True when an ancestor is this process or another agentjobs server."""
    cur = proc
    for _ in range(32):
        if cur.pid == current_pid:
            return True
        if any(marker in cur.args for marker in _SERVER_MARKERS):
            return True
        parent = table.get(cur.ppid)
        if parent is None:
            return False
        cur = parent
    return False


def is_one_shot_agent(args: str) -> bool:
    return any(re.search(pat, args) for pat in ONE_SHOT_PATTERNS)


def cleanup_stale_agent_processes(*, current_pid: int | None = None) -> int:
    """SIGTERM orphaned one-shot agent runs. Returns how many were signalled.

    A process is reaped only when it matches a one-shot signature, is
    orphaned (parent is PID 1 or gone), and has no agentjobs server
    ancestor.
    """
    pid = current_pid or os.getpid()
    try:
        table = _list_processes()
    except (OSError, subprocess.CalledProcessError) as exc:
        logger.warning("Stale process scan skipped: %s", exc)
        return 0

    killed = 0
    for proc in table.values():
        if proc.pid == pid or not is_one_shot_agent(proc.args):
            continue
        if proc.ppid != 1 and proc.ppid in table:
            continue
        if _owned_by_server(proc, table, pid):
            continue
        try:
            os.kill(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger.warning("Cannot reap pid=%d: %s", proc.pid, exc)
            continue
        killed += 1
        logger.info(
            "Reaped stale agent process pid=%d ppid=%d cmd=%s",
            proc.pid, proc.ppid, proc.args[:180],
        )
    return killed
