"""The tool dispatch loop.

Finished assistant text is scanned for tagged tool blocks; each
actionable block is executed in textual order, one at a time, through
a :class:`ToolExecutor`.  Results are reported one by one for display
and folded into a single text block for the model.
"""

import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Protocol

from kgagent.exceptions import MarkupError
from kgagent.instrumentation import record_error, tool_span
from kgagent.markup import block_name, extract_actionable_blocks, extract_blocks, is_thinking_name, parse_block
from kgagent.tools import Tool, ToolResult

logger = logging.getLogger(__name__)

RESULT_DIVIDER = "------------"


class ToolExecutor(Protocol):
    """Executes the tool invocations found in a block of markup."""

    async def execute(self, block: str) -> list[ToolResult]:
        """Return one result per invocation in ``block``."""
        ...


@dataclass
class DispatchItem:
    tool_name: str
    result: ToolResult


def format_tool_result(tool_name: str, result: ToolResult) -> str:
    """Render one result the way it is reported back to the model."""
    if is_thinking_name(tool_name):
        return ""
    success = "true" if result.success else "false"
    return f"tool: {tool_name}\nsuccess: {success}\nresult:\n{result.result}\n{RESULT_DIVIDER}\n"


class ToolDispatcher:
    """Runs the actionable tool blocks of one assistant turn.

    Args:
        executor: The collaborator that actually performs invocations.
    """

    def __init__(self, executor: ToolExecutor):
        self.executor = executor

    async def dispatch(
        self,
        text: str,
        should_continue: Callable[[], bool] | None = None,
    ) -> AsyncIterator[DispatchItem]:
        """Execute every actionable block in ``text``, in order.

        ``should_continue`` is consulted before each invocation starts;
        an invocation that has started always runs to completion.
        """
        blocks = extract_actionable_blocks(text)
        for position, block in enumerate(blocks, start=1):
            if should_continue is not None and not should_continue():
                logger.info(f"Skipping {len(blocks) - position + 1} remaining tool call(s)")
                return
            name = block_name(block)
            logger.info(f"Executing tool {position} of {len(blocks)}: {name}")
            result = await self._execute(name, block)
            yield DispatchItem(tool_name=name, result=result)

    async def _execute(self, name: str, block: str) -> ToolResult:
        async with tool_span(name) as span:
            try:
                results = await self.executor.execute(block)
            except Exception as e:
                logger.error(f"Tool {name} raised: {e}")
                record_error(span, e)
                return ToolResult(success=False, result=f"Tool execution failed: {e}")
        if not results:
            return ToolResult(success=False, result="No result returned from tool execution")
        return results[0]


class RegistryToolExecutor:
    """A :class:`ToolExecutor` backed by a registry of :class:`Tool` objects.

    Args:
        tools: The tools the agent may call, keyed by their names.
    """

    def __init__(self, tools: list[Tool]):
        self.tool_registry = {t.name: t for t in tools}

    def schemas(self) -> list[dict]:
        return [t.model_dump() for t in self.tool_registry.values()]

    async def execute(self, block: str) -> list[ToolResult]:
        return [await self._execute_one(b) for b in extract_blocks(block)]

    async def _execute_one(self, block: str) -> ToolResult:
        try:
            invocation = parse_block(block)
        except MarkupError as e:
            logger.warning(f"Invalid tool block: {e}")
            return ToolResult(success=False, result=str(e))

        tool_obj = self.tool_registry.get(invocation.name)
        if tool_obj is None:
            logger.warning(f"Tool not found: {invocation.name}")
            return ToolResult(success=False, result=f"Unknown tool: {invocation.name}")

        logger.info(f"Calling {invocation.name} with {invocation.arguments}")
        try:
            call = await tool_obj(**invocation.arguments)
        except Exception as e:
            logger.error(f"Tool {invocation.name} raised: {e}")
            return ToolResult(success=False, result=f"Tool execution failed: {e}")

        output = call.output
        if isinstance(output, ToolResult):
            return output
        if not isinstance(output, str):
            output = json.dumps(output, default=str)
        return ToolResult(success=True, result=output)
