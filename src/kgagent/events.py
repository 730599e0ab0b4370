"""Events emitted while a conversation turn streams."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from kgagent.streaming import ToolInvocation


@dataclass
class StreamEvent:
    """Base for all streaming events."""


@dataclass
class TextEvent(StreamEvent):
    """A run of answer text, thinking text, or a segment separator."""

    content: str = ""


@dataclass
class ToolCallEvent(StreamEvent):
    """A finished tool invocation reported by the provider.

    Its markup form has already been emitted as a :class:`TextEvent`.
    """

    invocation: ToolInvocation = field(default_factory=ToolInvocation)


@dataclass
class DoneEvent(StreamEvent):
    """Final event of one provider response."""


@dataclass
class RunItemEvent(StreamEvent):
    """A display item produced by the orchestrator, not by a provider.

    ``name`` values: ``"tool_result"``.
    """

    name: str = ""
    data: dict[str, Any] = field(default_factory=dict)
