"""Abstract base for agent sessions.

Each session wraps one coding-agent CLI driven as a subprocess for
one room. Two send strategies are supported:

- interactive: one long-lived process with piped stdio; each prompt
  is one line on stdin, replies stream back as JSON lines on stdout.
- one-shot: a process per send with no stdin; stdout is scanned the
  same way and the reply is settled when the process exits.

Subclasses provide the command lines and pick a translator from
translate.py; everything else (parsing, settlement, teardown) lives
here so a new agent kind never touches Room logic.
"""
from __future__ import annotations

import abc
import asyncio
import codecs
import json
import logging
import os
import shutil
from collections import deque
from typing import Any

from ...adapters.events import (
    AgentErrorEvent,
    AgentEvent,
    AgentReply,
    StreamChunk,
)
from ..config import AgentEventCallback, fire_event
from ..errors import (
    AgentBusyError,
    AgentFailureError,
    AgentReportedError,
    SubprocessFailureError,
    UnavailableExecutableError,
)
from ..models import AgentStatus
from .translate import TRANSLATORS

logger = logging.getLogger(__name__)

_READ_CHUNK = 65536
_STDERR_TAIL_LINES = 20


def option(options: dict[str, Any], name: str, camel: str, default: Any = None) -> Any:
    """Read an agent option given in snake_case or camelCase."""
    if name in options:
        return options[name]
    if camel in options:
        return options[camel]
    return default


class AgentSession(abc.ABC):
    """One agent CLI bound to one working directory.

    ``start()`` verifies the executable, ``send()`` delivers one prompt
    and returns the full reply, ``stop()`` tears the process down and
    is idempotent. At most one send may be in flight.
    """

    kind: str = ""
    default_command: str = ""
    interactive: bool = False
    # command basename -> install hint
    install_hints: dict[str, str] = {}

    def __init__(
        self,
        directory: str,
        options: dict[str, Any] | None = None,
        *,
        event_callback: AgentEventCallback | None = None,
        stop_grace_seconds: float = 2.0,
    ) -> None:
        self.directory = directory
        self.options = dict(options or {})
        self.command: str = self.options.get("command") or self.default_command
        self.model: str | None = self.options.get("model")
        self.auto_accept = bool(option(self.options, "auto_accept", "autoAccept", True))
        self.stop_grace_seconds = stop_grace_seconds
        self.status = AgentStatus.IDLE
        self.process: asyncio.subprocess.Process | None = None
        self._event_callback = event_callback
        self._buffer = ""
        self._active_tools: dict[str, str] = {}
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._reply: asyncio.Future[str] | None = None
        self._in_flight = False
        self._readers: set[asyncio.Task] = set()
        self._spawn_count = 0
        self._stopped = False

    # ── Subclass hooks ──

    def build_interactive_command(self) -> list[str]:
        raise NotImplementedError(f"{self.kind} has no interactive mode")

    def encode_prompt(self, text: str) -> str:
        """Serialize one prompt as a single stdin line (interactive mode)."""
        return json.dumps({"type": "user", "message": {"role": "user", "content": text}})

    @abc.abstractmethod
    def build_one_shot_command(self, text: str) -> list[str]:
        """Full argv for a one-shot invocation carrying *text*."""

    # ── Public API ──

    @property
    def install_hint(self) -> str:
        name = self.command.rsplit("/", 1)[-1]
        return self.install_hints.get(name, self.install_hints.get(self.default_command, ""))

    def is_available(self) -> bool:
        return shutil.which(self.command) is not None

    def set_event_callback(self, callback: AgentEventCallback | None) -> None:
        self._event_callback = callback

    async def start(self) -> None:
        """Verify the executable and, in interactive mode, spawn it."""
        self._check_directory()
        if not self.is_available():
            self.status = AgentStatus.ERROR
            raise UnavailableExecutableError(self.command, self.install_hint)
        if self.interactive:
            await self._spawn_interactive()
        self.status = AgentStatus.READY
        logger.info(
            "%s session ready cwd=%s mode=%s",
            self.kind, self.directory,
            "interactive" if self.interactive else "one-shot",
        )

    async def send(self, text: str) -> str:
        """Deliver one prompt; return the full reply or raise."""
        if self._stopped:
            raise AgentFailureError(f"{self.kind} session is stopped")
        if self._in_flight:
            raise AgentBusyError(self.kind)
        self._in_flight = True
        try:
            if self.interactive:
                return await self._send_interactive(text)
            return await self._send_one_shot(text)
        finally:
            self._in_flight = False

    async def abort(self) -> None:
        """Terminate the current subprocess but keep the session usable.

        Interactive sessions respawn on the next send.
        """
        proc = self.process
        self.process = None
        self._settle(error=SubprocessFailureError(self.command, None, "Request aborted"))
        if proc is not None:
            await self._terminate(proc)
        if not self._stopped:
            self.status = AgentStatus.READY

    async def stop(self) -> None:
        """Tear down the subprocess. Never raises; safe to call twice."""
        proc = self.process
        self.process = None
        self._stopped = True
        self.status = AgentStatus.STOPPED
        self._settle(error=AgentFailureError(f"{self.kind} session stopped"))
        try:
            if proc is not None:
                await self._terminate(proc)
        except OSError as exc:
            logger.warning("%s stop: %s", self.kind, exc)
        finally:
            readers = list(self._readers)
            for task in readers:
                task.cancel()
            if readers:
                await asyncio.gather(*readers, return_exceptions=True)

    # ── Line handling ──

    def translate(self, record: dict[str, Any]) -> list[AgentEvent]:
        return TRANSLATORS[self.kind](record, self._active_tools)

    def _feed(self, data: str) -> list[str]:
        """Append *data* to the partial-line buffer; return complete lines."""
        self._buffer += data
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines if line.strip()]

    def _flush(self) -> list[str]:
        tail, self._buffer = self._buffer.strip(), ""
        return [tail] if tail else []

    def _parse_line(self, line: str) -> list[AgentEvent]:
        try:
            record = json.loads(line)
        except (json.JSONDecodeError, ValueError):
            return [StreamChunk(text=line + "\n")]
        if not isinstance(record, dict):
            return [StreamChunk(text=line + "\n")]
        return self.translate(record)

    async def _emit(self, event: AgentEvent) -> None:
        await fire_event(self._event_callback, event)

    def _settle(self, *, result: str | None = None, error: Exception | None = None) -> None:
        fut = self._reply
        if fut is None or fut.done():
            return
        if error is not None:
            fut.set_exception(error)
        else:
            fut.set_result(result or "")

    def _exit_detail(self, code: int | None) -> str:
        detail = f"Process exited with code {code}"
        tail = "\n".join(self._stderr_tail).strip()
        if tail:
            detail += f": {tail}"
        return detail

    def _check_directory(self) -> None:
        """Fail with SubprocessFailureError, not a missing-executable error, when the cwd is gone."""
        if not os.path.isdir(self.directory):
            self.status = AgentStatus.ERROR
            raise SubprocessFailureError(
                self.command, None, f"Working directory does not exist: {self.directory}",
            )

    async def _spawn(self, cmd: list[str], *, stdin: int | None) -> asyncio.subprocess.Process:
        self._check_directory()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.directory,
            )
        except FileNotFoundError as exc:
            self.status = AgentStatus.ERROR
            raise UnavailableExecutableError(self.command, self.install_hint) from exc
        except OSError as exc:
            self.status = AgentStatus.ERROR
            raise SubprocessFailureError(
                self.command, None, f"Failed to start {self.command}: {exc}",
            ) from exc
        self._spawn_count += 1
        self._buffer = ""
        self._stderr_tail.clear()
        logger.info("%s spawned pid=%s cwd=%s", self.kind, proc.pid, self.directory)
        return proc

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> str:
        lines: list[str] = []
        assert proc.stderr is not None
        while True:
            raw = await proc.stderr.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                lines.append(line)
                self._stderr_tail.append(line)
                logger.debug("%s stderr: %s", self.kind, line)
        return "\n".join(lines)

    def _track(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._readers.add(task)
        task.add_done_callback(self._readers.discard)
        return task

    # ── Interactive strategy ──

    async def _spawn_interactive(self) -> None:
        proc = await self._spawn(
            self.build_interactive_command(), stdin=asyncio.subprocess.PIPE,
        )
        self.process = proc
        self._track(self._pump_stdout(proc))
        self._track(self._read_stderr(proc))

    async def _pump_stdout(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await proc.stdout.read(_READ_CHUNK)
            if not chunk:
                break
            if proc is not self.process:
                continue
            for line in self._feed(decoder.decode(chunk)):
                await self._dispatch_line(line)
        if proc is self.process:
            for line in self._flush():
                await self._dispatch_line(line)
        code = await proc.wait()
        await self._on_interactive_exit(proc, code)

    async def _dispatch_line(self, line: str) -> None:
        for event in self._parse_line(line):
            await self._emit(event)
            if isinstance(event, AgentReply):
                self.status = AgentStatus.READY
                self._settle(result=event.text)
            elif isinstance(event, AgentErrorEvent):
                self.status = AgentStatus.ERROR
                self._settle(error=AgentReportedError(event.message))

    async def _on_interactive_exit(self, proc: asyncio.subprocess.Process, code: int) -> None:
        if proc is not self.process:
            return  # stopped or aborted on purpose
        self.process = None
        detail = self._exit_detail(code)
        logger.warning("%s exited unexpectedly: %s", self.kind, detail)
        # The next send respawns with --resume.
        self.status = AgentStatus.IDLE if code == 0 else AgentStatus.ERROR
        if (self._reply is not None and not self._reply.done()) or code != 0:
            await self._emit(AgentErrorEvent(message=detail))
        self._settle(error=SubprocessFailureError(self.command, code, detail))

    async def _send_interactive(self, text: str) -> str:
        if self.process is None or self.process.returncode is not None:
            await self._spawn_interactive()
        proc = self.process
        assert proc is not None and proc.stdin is not None
        self._reply = asyncio.get_running_loop().create_future()
        self.status = AgentStatus.BUSY
        try:
            try:
                proc.stdin.write((self.encode_prompt(text) + "\n").encode("utf-8"))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                self.status = AgentStatus.ERROR
                raise SubprocessFailureError(
                    self.command, proc.returncode, f"Failed to write prompt: {exc}",
                ) from exc
            return await self._reply
        finally:
            self._reply = None

    # ── One-shot strategy ──

    async def _send_one_shot(self, text: str) -> str:
        self._active_tools.clear()
        proc = await self._spawn(
            self.build_one_shot_command(text), stdin=asyncio.subprocess.DEVNULL,
        )
        self.process = proc
        self.status = AgentStatus.BUSY
        stderr_task = asyncio.create_task(self._read_stderr(proc))

        reply: str | None = None
        streamed: list[str] = []
        captured: list[str] = []

        async def handle(line: str) -> None:
            nonlocal reply
            for event in self._parse_line(line):
                if isinstance(event, AgentReply):
                    reply = event.text  # last one wins, settled on exit
                    continue
                if isinstance(event, StreamChunk):
                    streamed.append(event.text)
                await self._emit(event)

        try:
            assert proc.stdout is not None
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await proc.stdout.read(_READ_CHUNK)
                if not chunk:
                    break
                data = decoder.decode(chunk)
                captured.append(data)
                for line in self._feed(data):
                    await handle(line)
            for line in self._flush():
                await handle(line)
            code = await proc.wait()
            stderr_text = await stderr_task
        finally:
            # On cancellation the process is left in self.process for abort().
            if not stderr_task.done():
                stderr_task.cancel()

        output = "".join(captured).strip()
        logger.info("%s one-shot exited code=%s bytes=%d", self.kind, code, len(output))
        if self.process is not proc:
            # abort() or stop() took the process away mid-send
            raise SubprocessFailureError(self.command, code, "Request aborted")
        self.process = None

        if code == 0 or output:
            if reply is None:
                reply = "".join(streamed).strip() or output
            self.status = AgentStatus.READY
            await self._emit(AgentReply(text=reply))
            return reply

        detail = stderr_text.strip() or f"{self.command} exited with code {code}"
        self.status = AgentStatus.ERROR
        await self._emit(AgentErrorEvent(message=detail))
        raise SubprocessFailureError(self.command, code, detail)

    # ── Teardown ──

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """End-of-input, then SIGTERM, then SIGKILL after the grace period."""
        if proc.returncode is not None:
            return
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.stop_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "%s pid=%s ignored SIGTERM for %.1fs; killing",
                self.kind, proc.pid, self.stop_grace_seconds,
            )
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()
        logger.info("%s process stopped (pid=%s)", self.kind, proc.pid)
