"""Fake agent sessions and observers shared by the room/gateway tests."""
from __future__ import annotations

import asyncio
from typing import Any

from bob_control.adapters.events import AgentErrorEvent, AgentReply, StreamChunk
from bob_control.engine.errors import (
    AgentReportedError,
    SubprocessFailureError,
    UnavailableExecutableError,
)
from bob_control.engine.models import AgentStatus
from bob_control.engine.providers.base import AgentSession
from bob_control.engine.providers.registry import AgentRegistry


class EchoAgent(AgentSession):
    """Replies with the prompt after ``delay`` seconds.

    Options: ``delay``, ``fail_with`` (subprocess failure text) and
    ``report_error`` (agent error event text).
    """

    kind = "echo"
    default_command = "echo-agent"

    def __init__(self, directory: str, options: dict[str, Any] | None = None, **kwargs: Any) -> None:
        super().__init__(directory, options, **kwargs)
        self.delay = float(self.options.get("delay", 0.05))
        self.fail_with = self.options.get("fail_with")
        self.report_error = self.options.get("report_error")
        self.prompts: list[str] = []
        self.aborts = 0
        self.stopped = False

    def is_available(self) -> bool:
        return True

    def build_one_shot_command(self, text: str) -> list[str]:
        return [self.command, text]

    async def start(self) -> None:
        self.status = AgentStatus.READY

    async def send(self, text: str) -> str:
        self.prompts.append(text)
        self.status = AgentStatus.BUSY
        await self._emit(StreamChunk(text=text))
        await asyncio.sleep(self.delay)
        if self.report_error:
            self.status = AgentStatus.ERROR
            await self._emit(AgentErrorEvent(message=self.report_error))
            raise AgentReportedError(self.report_error)
        if self.fail_with:
            self.status = AgentStatus.ERROR
            raise SubprocessFailureError(self.command, 1, self.fail_with)
        await self._emit(AgentReply(text=text))
        self.status = AgentStatus.READY
        return text

    async def abort(self) -> None:
        self.aborts += 1
        self.status = AgentStatus.READY

    async def stop(self) -> None:
        self.stopped = True
        self.status = AgentStatus.STOPPED


class MissingAgent(EchoAgent):
    kind = "missing"
    default_command = "definitely-not-installed-agent"

    def is_available(self) -> bool:
        return False

    async def start(self) -> None:
        raise UnavailableExecutableError(self.command, "Install it first")


def make_registry() -> AgentRegistry:
    registry = AgentRegistry()
    registry.register("echo", EchoAgent, aliases=["parrot"])
    registry.register("missing", MissingAgent)
    return registry


class RecordingConnection:
    """Observer that records every delivered payload."""

    def __init__(self, client_id: str, name: str | None = None) -> None:
        self.client_id = client_id
        self.name = name
        self.is_open = True
        self.events: list[dict[str, Any]] = []

    def deliver(self, payload: dict[str, Any]) -> None:
        self.events.append(payload)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]


class ExplodingConnection(RecordingConnection):
    def deliver(self, payload: dict[str, Any]) -> None:
        raise ConnectionResetError("peer went away")
