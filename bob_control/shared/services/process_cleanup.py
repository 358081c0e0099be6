"""Best-effort cleanup for stale agent subprocesses.

This targets agent CLI processes that were originally spawned by a
bob-control server but outlived it (crash, SIGKILL, closed terminal).
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

# Argument shapes produced by the agent sessions in engine/providers.
_AGENT_SIGNATURES = (
    r"\bclaude\b.*--input-format\s+stream-json",
    r"\bclaude\b.*\s-p\s.*--output-format\s+stream-json",
    r"\bcodex\b.*\bexec\b.*--json",
    r"\bgemini\b.*--output-format=stream-json",
    r"\baider\b.*--message\b.*--no-git",
)


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
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


def _has_server_ancestor(
    proc: ProcessInfo,
    table: dict[int, ProcessInfo],
    current_pid: int,
) -> bool:
    """True when a live bob-control server is somewhere up the tree."""
    cur = proc
    hops = 0
    while hops < 32:
        if cur.pid == current_pid:
            return True
        if "bob-control" in cur.args or "bob_control.app" in cur.args:
            return True
        parent = table.get(cur.ppid)
        if parent is None:
            return False
        cur = parent
        hops += 1
    return False


def is_agent_process(args: str) -> bool:
    """Match command lines of agent CLIs started by an agent session."""
    return any(re.search(pat, args) for pat in _AGENT_SIGNATURES)


def _is_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def cleanup_stale_runtime_processes(
    *,
    current_pid: int | None = None,
    grace_seconds: float = 2.0,
    log: Callable[[str], None] | None = None,
) -> int:
    """Terminate orphaned agent subprocesses left by a dead server.

    A process is considered stale only when:
    - it matches an agent command signature, and
    - it has no live bob-control ancestry, and
    - it is orphaned (parent is PID 1 or parent is missing).

    Survivors of SIGTERM are sent SIGKILL after *grace_seconds*.
    """
    pid = current_pid or os.getpid()
    emit = log or logger.info
    table = _list_processes()
    terminated: list[ProcessInfo] = []

    for proc in table.values():
        if proc.pid == pid:
            continue
        if not is_agent_process(proc.args):
            continue

        is_orphan = proc.ppid == 1 or proc.ppid not in table
        if not is_orphan:
            continue

        if _has_server_ancestor(proc, table, pid):
            continue

        try:
            os.kill(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        except OSError as exc:
            emit(
                f"Failed to reap stale process pid={proc.pid}: "
                f"{type(exc).__name__}: {exc}"
            )
            continue
        terminated.append(proc)
        emit(
            f"Reaped stale agent process pid={proc.pid} "
            f"ppid={proc.ppid} cmd={proc.args[:180]}"
        )

    if terminated and grace_seconds > 0:
        deadline = time.monotonic() + grace_seconds
        while time.monotonic() < deadline and any(_is_alive(p.pid) for p in terminated):
            time.sleep(0.1)
    for proc in terminated:
        if not _is_alive(proc.pid):
            continue
        try:
            os.kill(proc.pid, signal.SIGKILL)
            emit(f"Force-killed stale agent process pid={proc.pid}")
        except ProcessLookupError:
            continue
        except OSError as exc:
            emit(f"Failed to kill stale process pid={proc.pid}: {exc}")

    return len(terminated)
