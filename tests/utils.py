"""Shared test utilities for agentdeck tests."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from agentdeck.session.protocols import Command, EventKind, ExecutionContext, ExecutionEvent


def make_event(
    kind: EventKind,
    session_id: str = "s1",
    /,
    *,
    message_id: str | None = None,
    tool_call_id: str | None = None,
    **payload: Any,
) -> ExecutionEvent:
    """Build an ExecutionEvent with payload from keyword arguments."""
    return ExecutionEvent(
        kind=kind,
        session_id=session_id,
        message_id=message_id,
        tool_call_id=tool_call_id,
        payload=payload,
    )


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0)


@dataclass
class Run:
    """One call into GatedExecutor.execute."""

    command: Command
    context: ExecutionContext
    gate: asyncio.Event = field(default_factory=asyncio.Event)
    output: str | None = "done"
    error: BaseException | None = None

    def emit(self, kind: EventKind, **kwargs: Any) -> None:
        self.context.emit(make_event(kind, self.context.session_id, **kwargs))

    def release(self, output: str | None = "done", error: BaseException | None = None) -> None:
        self.output = output
        self.error = error
        self.gate.set()


class GatedExecutor:
    """AgentExecutor whose runs block until the test releases them.

    With ``honour_cancel`` (the default) a run also ends as soon as its
    token is cancelled, raising TaskCancelledError like a well-behaved agent.
    """

    def __init__(
        self,
        honour_cancel: bool = True,
        script: Callable[[Run], Awaitable[None]] | None = None,
        auto_release: bool = False,
    ) -> None:
        self.honour_cancel = honour_cancel
        self.script = script
        self.auto_release = auto_release
        self.runs: list[Run] = []

    @property
    def texts(self) -> list[str]:
        return [run.command.text for run in self.runs]

    async def execute(self, command: Command, context: ExecutionContext) -> str | None:
        run = Run(command, context)
        self.runs.append(run)
        if self.script is not None:
            await self.script(run)
        if self.auto_release:
            run.gate.set()

        waiters = {asyncio.ensure_future(run.gate.wait())}
        if self.honour_cancel:
            waiters.add(asyncio.ensure_future(context.token.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        if self.honour_cancel:
            context.token.raise_if_cancelled()
        if run.error is not None:
            raise run.error
        return run.output


class RecordingCompactor:
    """Compactor that records its calls and optionally fails."""

    def __init__(self, error: Exception | None = None) -> None:
        self.calls = 0
        self.error = error

    async def compact(self, session: Any, token: Any) -> None:
        self.calls += 1
        if self.error is not None:
            raise self.error


def notices(session: Any) -> list[str]:
    return [m.content for m in session.messages if m.kind.value == "notice"]
