"""Streaming primitives shared by every wire format.

Line parsers turn one line of network text into a :class:`LineDelta`.
The :class:`ToolCallAccumulator` reassembles tool calls whose arguments
arrive in fragments across multiple lines of one response.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class ToolInvocation:
    """A complete tool call: a name plus an ordered argument mapping."""

    id: str = ""
    name: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class LineDelta:
    """What one line of a response contributes to the stream.

    An empty delta (every field unset) is the result of a line that
    could not be parsed.
    """

    thinking: str | None = None
    content: str | None = None
    is_done: bool = False
    tool_call_fragments: list[ToolCallFragment] | None = None
    tool_calls: list[ToolInvocation] | None = None

    @property
    def is_empty(self) -> bool:
        return not (
            self.thinking or self.content or self.is_done
            or self.tool_call_fragments or self.tool_calls
        )


@dataclass
class _PendingCall:
    call_id: str | None = None
    name: str | None = None
    arguments: str = ""


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments.

    Fragments are joined on their positional index, which is only
    meaningful within a single response.  Build a new accumulator for
    every response.
    """

    def __init__(self) -> None:
        self._pending: dict[int, _PendingCall] = {}

    def feed(self, fragment: ToolCallFragment) -> None:
        if fragment.index not in self._pending:
            self._pending[fragment.index] = _PendingCall()
        pending = self._pending[fragment.index]
        if fragment.call_id is not None:
            pending.call_id = fragment.call_id
        if fragment.name is not None:
            pending.name = fragment.name
        if fragment.arguments_delta is not None:
            pending.arguments += fragment.arguments_delta

    def finalize(self) -> list[ToolInvocation]:
        """Return completed tool calls in index order.

        Entries without a name, or whose arguments are not a JSON
        object, are dropped.
        """
        completed = []
        for index in sorted(self._pending):
            pending = self._pending[index]
            if not pending.name:
                continue
            text = pending.arguments.strip()
            try:
                arguments = json.loads(text) if text else {}
            except json.JSONDecodeError as e:
                logger.warning(f"Dropping tool call {pending.name}: invalid arguments ({e})")
                continue
            if not isinstance(arguments, dict):
                logger.warning(f"Dropping tool call {pending.name}: arguments are not an object")
                continue
            completed.append(ToolInvocation(
                id=pending.call_id or f"call_{index}",
                name=pending.name,
                arguments=arguments,
            ))
        return completed
