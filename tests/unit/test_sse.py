import json

import pytest

from kgagent.events import DoneEvent, RunItemEvent, TextEvent, ToolCallEvent
from kgagent.sse import sse_generator
from kgagent.streaming import ToolInvocation
from tests.conftest import collect


async def events(*items):
    for item in items:
        yield item


@pytest.mark.asyncio
async def test_text_and_done_events():
    frames = await collect(sse_generator(events(TextEvent("hi"), DoneEvent())))

    assert frames == [
        'event: TextEvent\ndata: {"content": "hi"}\n\n',
        "event: DoneEvent\ndata: {}\n\n",
        "event: done\ndata: {}\n\n",
    ]


@pytest.mark.asyncio
async def test_tool_call_and_run_item_payloads():
    call = ToolInvocation(id="c1", name="read_music", arguments={"track_id": 1})
    result = RunItemEvent("tool_result", {"tool_name": "read_music", "success": True, "result": "ok"})

    frames = await collect(sse_generator(events(ToolCallEvent(call), result)))

    first = json.loads(frames[0].split("data: ", 1)[1])
    assert frames[0].startswith("event: ToolCallEvent\n")
    assert first == {"invocation": {"id": "c1", "name": "read_music", "arguments": {"track_id": 1}}}
    second = json.loads(frames[1].split("data: ", 1)[1])
    assert second["name"] == "tool_result"
    assert second["data"]["success"] is True


@pytest.mark.asyncio
async def test_empty_stream_still_terminates():
    assert await collect(sse_generator(events())) == ["event: done\ndata: {}\n\n"]
