"""Wire-format parsers for streamed model output.

Every parser takes one stripped, non-empty line of response text and
returns a :class:`~kgagent.streaming.LineDelta`.  Parsers keep no state
between lines; a line that cannot be parsed, or whose JSON does not have
the expected shape, contributes an empty delta rather than breaking the
stream.

Two families are auto-detected from the first line of a response:
Server-Sent-Event framed JSON deltas (OpenAI and compatible servers)
and line-delimited raw JSON (Ollama).  Anthropic and Gemini envelopes
have their own parsers.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any

from kgagent.exceptions import ProviderError
from kgagent.streaming import LineDelta, ToolCallFragment, ToolInvocation, new_call_id

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data: "
SSE_DONE_MARKER = "[DONE]"
SEGMENT_SEPARATOR = "\n\n"

# Keys some OpenAI-compatible servers use for reasoning deltas.
THINKING_KEYS = ("thinking", "reasoning", "reasoning_content")

LineParser = Callable[[str], LineDelta]


class WireFormat(Enum):
    SSE = "sse"
    NDJSON = "ndjson"


def _load_object(text: str) -> dict[str, Any] | None:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _obj(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _items(value: Any) -> list:
    return value if isinstance(value, list) else []


def _index(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def thinking_text(fields: dict[str, Any]) -> str | None:
    for key in THINKING_KEYS:
        text = _text(fields.get(key))
        if text:
            return text
    return None


def _strip_sse(line: str) -> str | None:
    if not line.startswith(SSE_DATA_PREFIX):
        return None
    return line[len(SSE_DATA_PREFIX):].strip()


def detect_format(line: str) -> WireFormat:
    """Classify a response from its first non-empty line."""
    line = line.strip()
    if line.startswith(SSE_DATA_PREFIX):
        return WireFormat.SSE
    data = _load_object(line)
    if data is not None and isinstance(data.get("done"), bool):
        return WireFormat.NDJSON
    return WireFormat.SSE


class FormatDetector:
    """Per-response format classification.

    The first line seen decides the format for the rest of the
    response.  Use a fresh detector for every request.
    """

    def __init__(self) -> None:
        self.format: WireFormat | None = None

    def classify(self, line: str) -> WireFormat:
        if self.format is None:
            self.format = detect_format(line)
            logger.debug(f"Detected {self.format.value} stream format")
        return self.format

    def parse(self, line: str) -> LineDelta:
        if self.classify(line) is WireFormat.NDJSON:
            return parse_ndjson_line(line)
        return parse_sse_line(line)


def parse_sse_line(line: str) -> LineDelta:
    """Parse an OpenAI-style ``data: {...}`` line."""
    payload = _strip_sse(line)
    if payload is None:
        return LineDelta()
    if payload == SSE_DONE_MARKER:
        return LineDelta(is_done=True)

    chunk = _load_object(payload)
    if chunk is None:
        logger.debug(f"Skipping malformed SSE payload: {payload[:120]}")
        return LineDelta()

    choices = _items(chunk.get("choices"))
    choice = _obj(choices[0]) if choices else {}
    delta = _obj(choice.get("delta"))

    fragments = []
    for tc in _items(delta.get("tool_calls")):
        if not isinstance(tc, dict):
            logger.debug(f"Skipping malformed tool call fragment: {tc!r}")
            continue
        function = _obj(tc.get("function"))
        arguments = function.get("arguments")
        fragments.append(ToolCallFragment(
            index=_index(tc.get("index")),
            call_id=_text(tc.get("id")),
            name=_text(function.get("name")),
            arguments_delta=arguments if isinstance(arguments, str) else None,
        ))

    return LineDelta(
        thinking=thinking_text(delta),
        content=_text(delta.get("content")),
        tool_call_fragments=fragments or None,
    )


def parse_tool_calls(raw_calls: Any) -> list[ToolInvocation]:
    """Read whole OpenAI/Ollama-style tool calls.

    Arguments may be an object or a JSON string; calls whose arguments
    are neither are skipped.
    """
    calls = []
    for tc in _items(raw_calls):
        if not isinstance(tc, dict):
            logger.debug(f"Skipping malformed tool call: {tc!r}")
            continue
        function = _obj(tc.get("function"))
        name = _text(function.get("name"))
        arguments = function.get("arguments") or {}
        if isinstance(arguments, str):
            arguments = _load_object(arguments)
        if not name or not isinstance(arguments, dict):
            logger.debug(f"Skipping malformed tool call: {tc}")
            continue
        calls.append(ToolInvocation(
            id=_text(tc.get("id")) or new_call_id(),
            name=name,
            arguments=arguments,
        ))
    return calls


def parse_ndjson_line(line: str) -> LineDelta:
    """Parse an Ollama-style raw JSON line (chat or completion)."""
    chunk = _load_object(line)
    if chunk is None:
        logger.debug(f"Skipping malformed JSON line: {line[:120]}")
        return LineDelta()

    message = _obj(chunk.get("message"))
    tool_calls = parse_tool_calls(message.get("tool_calls"))
    return LineDelta(
        thinking=_text(message.get("thinking")),
        content=_text(message.get("content")) or _text(chunk.get("response")),
        is_done=chunk.get("done") is True,
        tool_calls=tool_calls or None,
    )


def parse_anthropic_line(line: str) -> LineDelta:
    """Parse one line of the Anthropic Messages streaming protocol.

    ``event:`` lines are ignored; the ``type`` inside each data payload
    carries the same information.
    """
    payload = _strip_sse(line)
    if payload is None:
        return LineDelta()
    if payload == SSE_DONE_MARKER:
        return LineDelta(is_done=True)

    event = _load_object(payload)
    if event is None:
        logger.debug(f"Skipping malformed Anthropic payload: {payload[:120]}")
        return LineDelta()

    kind = event.get("type")
    index = _index(event.get("index"))
    if kind == "content_block_start":
        block = _obj(event.get("content_block"))
        if block.get("type") == "tool_use":
            return LineDelta(tool_call_fragments=[ToolCallFragment(
                index=index, call_id=_text(block.get("id")), name=_text(block.get("name")),
            )])
        return LineDelta(content=_text(block.get("text")))
    if kind == "content_block_delta":
        delta = _obj(event.get("delta"))
        delta_type = delta.get("type")
        if delta_type == "thinking_delta":
            return LineDelta(thinking=_text(delta.get("thinking")))
        if delta_type == "input_json_delta":
            return LineDelta(tool_call_fragments=[ToolCallFragment(
                index=index, arguments_delta=_text(delta.get("partial_json")) or "",
            )])
        return LineDelta(content=_text(delta.get("text")))
    if kind == "message_stop":
        return LineDelta(is_done=True)
    if kind == "error":
        error = _obj(event.get("error"))
        raise ProviderError(
            f"Claude stream error: {error.get('type', 'unknown')} {error.get('message', '')}".strip()
        )
    return LineDelta()


def parse_gemini_line(line: str) -> LineDelta:
    """Parse one Gemini ``GenerateContentResponse`` line.

    Accepts both ``alt=sse`` framing and bare JSON lines.  Function
    calls arrive whole, so they are returned as finished invocations.
    """
    payload = _strip_sse(line)
    chunk = _load_object(payload if payload is not None else line)
    if chunk is None:
        return LineDelta()
    return gemini_delta(chunk)


def gemini_delta(chunk: dict[str, Any]) -> LineDelta:
    """Read text and function calls from a decoded Gemini response."""
    if chunk.get("done") is True:
        return LineDelta(is_done=True)

    candidates = _items(chunk.get("candidates"))
    candidate = _obj(candidates[0]) if candidates else {}
    if not candidate:
        return LineDelta()

    thinking, content, calls = [], [], []
    for part in _items(_obj(candidate.get("content")).get("parts")):
        if not isinstance(part, dict):
            continue
        if "functionCall" in part:
            call = _obj(part["functionCall"])
            if _text(call.get("name")):
                calls.append(ToolInvocation(
                    id=_text(call.get("id")) or new_call_id(),
                    name=call["name"],
                    arguments=_obj(call.get("args")),
                ))
        elif _text(part.get("text")):
            (thinking if part.get("thought") else content).append(part["text"])

    return LineDelta(
        thinking="".join(thinking) or None,
        content="".join(content) or None,
        is_done=bool(candidate.get("finishReason")),
        tool_calls=calls or None,
    )


async def iter_line_deltas(
    lines: AsyncIterator[str],
    parser: LineParser | None = None,
) -> AsyncIterator[LineDelta]:
    """Parse a response line by line.

    With no ``parser`` the format is detected from the first non-empty
    line and kept for the rest of this response.
    """
    if parser is None:
        parser = FormatDetector().parse
    async for raw in lines:
        line = raw.strip()
        if not line:
            continue
        yield parser(line)
