"""Turn parsed line deltas into the canonical event stream."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from kgagent.events import DoneEvent, StreamEvent, TextEvent, ToolCallEvent
from kgagent.markup import serialize_invocation
from kgagent.streaming import LineDelta, ToolCallAccumulator, ToolInvocation
from kgagent.wire import SEGMENT_SEPARATOR

logger = logging.getLogger(__name__)


class _Segments:
    """Tracks the kind of the last text segment emitted."""

    def __init__(self) -> None:
        self.last: str | None = None

    def emit(self, kind: str, text: str | None) -> list[TextEvent]:
        if not text:
            return []
        events = []
        if self.last is not None and self.last != kind:
            events.append(TextEvent(content=SEGMENT_SEPARATOR))
        events.append(TextEvent(content=text))
        self.last = kind
        return events


async def compose(deltas: AsyncIterator[LineDelta]) -> AsyncIterator[StreamEvent]:
    """Yield text, tool-call and done events for one response.

    Thinking and content segments are kept apart by a separator event
    whenever the kind changes.  Tool calls are held back until the
    response signals completion, then emitted as markup text plus a
    :class:`ToolCallEvent` each, followed by a single :class:`DoneEvent`.
    A response that ends without a done marker is finished the same way.
    """
    segments = _Segments()
    accumulator = ToolCallAccumulator()
    single_shot: list[ToolInvocation] = []

    async for delta in deltas:
        for event in segments.emit("thinking", delta.thinking):
            yield event
        for event in segments.emit("content", delta.content):
            yield event
        for fragment in delta.tool_call_fragments or []:
            accumulator.feed(fragment)
        if delta.tool_calls:
            single_shot.extend(delta.tool_calls)
        if delta.is_done:
            break
    else:
        logger.debug("Stream ended without a done marker")

    invocations = single_shot + accumulator.finalize()
    for invocation in invocations:
        for event in segments.emit("tool_call", serialize_invocation(invocation)):
            yield event
        yield ToolCallEvent(invocation=invocation)
    yield DoneEvent()


def complete_text(thinking: str | None, content: str | None) -> str:
    """Join the parts of a single-shot answer the way the stream would."""
    if thinking and content:
        return f"{thinking}{SEGMENT_SEPARATOR}{content}"
    return thinking or content or ""


def append_tool_calls(text: str, invocations: list[ToolInvocation]) -> str:
    """Append rendered tool calls to single-shot answer text."""
    parts = [text] if text else []
    parts.extend(serialize_invocation(inv) for inv in invocations)
    return SEGMENT_SEPARATOR.join(parts)
