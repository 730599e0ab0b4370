from collections.abc import Callable

import pytest

from kgagent.events import DoneEvent, StreamEvent, TextEvent
from kgagent.markup import block_name
from kgagent.provider import CompletionResult, ModelProvider
from kgagent.tools import ToolResult, tool


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

class ScriptedProvider(ModelProvider):
    """Provider that replays pre-queued responses. No network calls.

    Each queued stream is a list of events; an exception in the list is
    raised at that point of the stream instead of being yielded.
    """

    name = "scripted"

    def __init__(self):
        super().__init__("scripted-model")
        self.streams: list[list] = []
        self.completions: list[CompletionResult] = []
        self.call_log: list[dict] = []
        self.streams_closed = 0
        self.closed = False

    async def generate_stream(self, conversation, system_prompt, tools=None):
        self.call_log.append({
            "conversation": list(conversation),
            "system_prompt": system_prompt,
            "tools": tools,
        })
        script = self.streams.pop(0)
        try:
            for item in script:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.streams_closed += 1

    async def generate_completion(self, conversation, system_prompt, tools=None):
        self.call_log.append({
            "conversation": list(conversation),
            "system_prompt": system_prompt,
            "tools": tools,
        })
        return self.completions.pop(0)

    async def aclose(self):
        self.closed = True


def text_stream(*chunks: str) -> list[StreamEvent]:
    """A response made of text chunks followed by done."""
    return [*(TextEvent(content=c) for c in chunks), DoneEvent()]


# ---------------------------------------------------------------------------
# Recording executor
# ---------------------------------------------------------------------------

class RecordingExecutor:
    """ToolExecutor test double that records every block it is given.

    ``on_execute`` runs before the result is returned, which lets tests
    act while a tool is "running".
    """

    def __init__(self, on_execute: Callable[[str], None] | None = None):
        self.blocks: list[str] = []
        self.on_execute = on_execute

    async def execute(self, block: str) -> list[ToolResult]:
        self.blocks.append(block)
        if self.on_execute is not None:
            self.on_execute(block)
        return [ToolResult(success=True, result=f"ran {block_name(block)}")]


async def collect(stream) -> list:
    return [event async for event in stream]


@pytest.fixture
def scripted_provider():
    return ScriptedProvider()


@pytest.fixture
def recording_executor():
    return RecordingExecutor()


@pytest.fixture
def sample_tool():
    @tool
    def greet(name: str):
        """Say hello."""
        return f"Hello {name}"
    return greet


@pytest.fixture
def sample_async_tool():
    @tool
    async def async_greet(name: str):
        """Async greeting."""
        return f"Hello async {name}"
    return async_greet
