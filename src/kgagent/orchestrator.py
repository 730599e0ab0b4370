import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from kgagent.config import AgentConfig
from kgagent.dispatch import ToolDispatcher, ToolExecutor, format_tool_result
from kgagent.events import DoneEvent, RunItemEvent, StreamEvent, TextEvent
from kgagent.exceptions import NoProviderError, OrchestratorBusyError, ProviderError
from kgagent.markup import extract_actionable_blocks
from kgagent.message import Message, MessageRole
from kgagent.provider import CompletionResult, ModelProvider, create_provider
from kgagent.state import AgentState

logger = logging.getLogger(__name__)

SystemPromptSource = str | Callable[[], str | Awaitable[str]]


class Phase(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    ABORTING = "aborting"


@dataclass
class _Request:
    """Bookkeeping for the request currently in flight.

    A fresh object per request, so a stream that outlives an abort only
    ever sees its own ``cancelled`` flag.
    """

    user_id: str | None = None
    assistant_id: str | None = None
    cancelled: bool = False


class Orchestrator:
    """Drives one conversation through the model and its tools.

    The orchestrator owns the conversation store and allows a single
    request in flight.  ``submit()`` streams one answer; ``run()`` also
    executes the tool calls found in each answer and feeds their results
    back to the model until it stops asking for tools, the working-task
    flag is lowered, or the request is aborted.

    Args:
        provider: The model backend.  Can be bound later with
            :meth:`set_provider`.
        system_prompt: A string, or a zero-argument callable returning a
            string (or an awaitable of one).  Evaluated per request.
        executor: Runs tool blocks.  Without one, ``run()`` behaves like
            ``submit()``.
        state: Existing conversation state to continue.
        tools: Function schemas forwarded to the provider.
        max_turns: Maximum number of provider round-trips per ``run()``.
            Must be at least 1.

    Example::

        async with Orchestrator(provider, system_prompt=prompt,
                                executor=RegistryToolExecutor(tools)) as agent:
            async for event in agent.run("add a bass line"):
                ...
    """

    def __init__(
        self,
        provider: ModelProvider | None = None,
        system_prompt: SystemPromptSource = "",
        executor: ToolExecutor | None = None,
        state: AgentState | None = None,
        tools: list[dict] | None = None,
        max_turns: int = 50,
    ):
        if max_turns < 1:
            raise ValueError(f"max_turns must be at least 1, got {max_turns}")
        self._provider = provider
        self.system_prompt = system_prompt
        self.dispatcher = ToolDispatcher(executor) if executor is not None else None
        self.state = state or AgentState()
        self.tools = tools
        self.max_turns = max_turns
        self._phase = Phase.IDLE
        self._request: _Request | None = None

    @classmethod
    def from_config(cls, config: AgentConfig, **kwargs) -> "Orchestrator":
        """Build an orchestrator with the provider ``config`` selects."""
        kwargs.setdefault("max_turns", config.max_turns)
        return cls(provider=create_provider(config), **kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def provider(self) -> ModelProvider | None:
        return self._provider

    def set_provider(self, provider: ModelProvider) -> None:
        if self._phase is not Phase.IDLE:
            raise OrchestratorBusyError(self._phase.value)
        self._provider = provider

    async def aclose(self) -> None:
        if self._provider is not None:
            await self._provider.aclose()

    async def __aenter__(self) -> "Orchestrator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def is_streaming(self) -> bool:
        return self._phase is Phase.STREAMING

    def messages(self) -> list[Message]:
        return self.state.session.messages()

    def find_message(self, message_id: str) -> Message | None:
        return self.state.session.get(message_id)

    def clear_conversation(self) -> None:
        if self._phase is not Phase.IDLE:
            raise OrchestratorBusyError(self._phase.value)
        self.state.session.clear()
        self.state.is_working_on_task = False

    def stand_down(self) -> None:
        """Lower the working-task flag; pending tool results are not sent back."""
        self.state.is_working_on_task = False

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _check_ready(self) -> None:
        if self._phase is not Phase.IDLE:
            raise OrchestratorBusyError(self._phase.value)
        if self._provider is None:
            raise NoProviderError()

    def _begin_turn(self, request: _Request, text: str) -> tuple[Message, ...]:
        session = self.state.session
        request.user_id = session.add_message(MessageRole.USER, text)
        snapshot = session.snapshot()
        request.assistant_id = session.add_message(MessageRole.ASSISTANT, "")
        self._phase = Phase.STREAMING
        return snapshot

    def _release(self, request: _Request) -> None:
        if self._request is request:
            self._phase = Phase.IDLE
            self._request = None

    async def _system_prompt(self) -> str:
        source = self.system_prompt
        if callable(source):
            source = source()
            if inspect.isawaitable(source):
                source = await source
        return source or ""

    def submit(self, user_text: str) -> AsyncIterator[StreamEvent]:
        """Send ``user_text`` and stream the answer.

        The user message and an empty assistant placeholder are added
        before this returns; the placeholder is filled in as text
        arrives.

        Raises:
            OrchestratorBusyError: If a request is already in flight.
            NoProviderError: If no provider is bound.
        """
        self._check_ready()
        request = _Request()
        self._request = request
        snapshot = self._begin_turn(request, user_text)
        return self._stream(request, snapshot, standalone=True)

    async def _stream(
        self,
        request: _Request,
        snapshot: Sequence[Message],
        standalone: bool,
    ) -> AsyncIterator[StreamEvent]:
        session = self.state.session
        content = ""
        stream = None
        try:
            system_prompt = await self._system_prompt()
            if request.cancelled:
                logger.info("Request aborted before the provider was contacted")
                return
            stream = self._provider.generate_stream(snapshot, system_prompt, self.tools)
            async for event in stream:
                if request.cancelled:
                    logger.info("Request aborted, dropping the rest of the stream")
                    return
                if isinstance(event, TextEvent):
                    content += event.content
                    session.update_message(request.assistant_id, content)
                elif isinstance(event, DoneEvent) and standalone:
                    self._release(request)
                yield event
                if isinstance(event, DoneEvent):
                    return
        except ProviderError as e:
            logger.error(f"Provider error while streaming: {e}")
            if not request.cancelled:
                session.update_message(request.assistant_id, f"Error: {e}")
            raise
        finally:
            if stream is not None:
                await stream.aclose()
            if standalone:
                self._release(request)

    def run(self, user_text: str) -> AsyncIterator[StreamEvent]:
        """Send ``user_text`` and keep going until the task is done.

        Yields the streamed events of every answer plus one
        ``RunItemEvent("tool_result")`` per executed tool.

        Raises:
            OrchestratorBusyError: If a request is already in flight.
            NoProviderError: If no provider is bound.
        """
        self._check_ready()
        request = _Request()
        self._request = request
        self.state.is_working_on_task = True
        snapshot = self._begin_turn(request, user_text)
        return self._run(request, snapshot)

    async def _run(
        self,
        request: _Request,
        snapshot: Sequence[Message],
    ) -> AsyncIterator[StreamEvent]:
        try:
            for turn in range(self.max_turns):
                if turn > 0:
                    snapshot = self._begin_turn(request, combined)
                async for event in self._stream(request, snapshot, standalone=False):
                    yield event
                if request.cancelled:
                    return

                answer = self.state.session.get(request.assistant_id)
                blocks = extract_actionable_blocks(answer.content if answer else "")
                if not blocks:
                    self.state.is_working_on_task = False
                    return
                if self.dispatcher is None:
                    logger.warning(f"Found {len(blocks)} tool call(s) but no executor is configured")
                    self.state.is_working_on_task = False
                    return

                self._phase = Phase.TOOL_DISPATCH
                results = []
                async for item in self.dispatcher.dispatch(
                    answer.content, should_continue=lambda: not request.cancelled,
                ):
                    results.append(format_tool_result(item.tool_name, item.result))
                    yield RunItemEvent(name="tool_result", data={
                        "tool_name": item.tool_name,
                        "success": item.result.success,
                        "result": item.result.result,
                    })

                if request.cancelled:
                    return
                if not self.state.is_working_on_task:
                    logger.info("No longer working on the task, discarding tool results")
                    return
                combined = "".join(results)

            logger.warning(f"Maximum turns ({self.max_turns}) reached, stopping")
            self.state.is_working_on_task = False
        finally:
            self._release(request)

    async def complete(self, user_text: str) -> CompletionResult:
        """Send ``user_text`` and wait for the whole answer.

        Tool calls in the answer are not executed.
        """
        self._check_ready()
        request = _Request()
        self._request = request
        session = self.state.session
        self._phase = Phase.STREAMING
        try:
            request.user_id = session.add_message(MessageRole.USER, user_text)
            snapshot = session.snapshot()
            system_prompt = await self._system_prompt()
            if request.cancelled:
                return CompletionResult(content="", finished=False)
            result = await self._provider.generate_completion(snapshot, system_prompt, self.tools)
            if not request.cancelled:
                request.assistant_id = session.add_message(MessageRole.ASSISTANT, result.content)
            return result
        finally:
            self._release(request)

    def abort(self) -> str | None:
        """Cancel the request in flight.

        While streaming, the in-flight assistant message and its user
        message are removed and the user text is returned.  During tool
        dispatch the running tool finishes, the rest are skipped and
        nothing more is sent to the model; ``None`` is returned.  With
        nothing in flight this does nothing and returns ``None``.
        """
        request = self._request
        if self._phase is Phase.IDLE or request is None or request.cancelled:
            return None
        request.cancelled = True
        self.state.is_working_on_task = False

        if self._phase is Phase.TOOL_DISPATCH:
            logger.info("Abort requested during tool dispatch, skipping remaining tools")
            self._phase = Phase.ABORTING
            return None

        self._phase = Phase.ABORTING
        session = self.state.session
        user_text = None
        if request.assistant_id is not None:
            session.remove_message(request.assistant_id)
        if request.user_id is not None:
            user = session.get(request.user_id)
            if user is not None:
                user_text = user.content
            session.remove_message(request.user_id)
        request.user_id = request.assistant_id = None
        logger.info("Aborted streaming request")
        self._release(request)
        return user_text
