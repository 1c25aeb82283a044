"""FIFO buffer for commands submitted while a task is running."""

from __future__ import annotations

from collections import deque

from agentdeck.session.protocols import Command


class CommandQueue:
    """Commands waiting for the current task of a session to settle.

    The queue owns its commands until they are dequeued into a task.
    """

    def __init__(self) -> None:
        self._items: deque[Command] = deque()

    def enqueue(self, command: Command) -> int:
        """Append a command; returns the new queue length."""
        self._items.append(command)
        return len(self._items)

    def dequeue(self) -> Command | None:
        """Pop the oldest command, or None when empty."""
        if not self._items:
            return None
        return self._items.popleft()

    def peek(self) -> Command | None:
        return self._items[0] if self._items else None

    def clear(self) -> list[Command]:
        """Drop every queued command and return what was dropped."""
        dropped = list(self._items)
        self._items.clear()
        return dropped

    def snapshot(self) -> list[str]:
        """Display texts of queued commands, oldest first."""
        return [command.display_text for command in self._items]

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)
