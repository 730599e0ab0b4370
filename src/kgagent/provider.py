"""Model providers.

Every provider turns a conversation snapshot plus a system prompt into
the canonical event stream (:func:`kgagent.composer.compose`) or a
single :class:`CompletionResult`.  Providers differ only in endpoint,
authentication and wire format; the HTTP plumbing lives in
:class:`HttpTransport` and the parsing in :mod:`kgagent.wire`.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from kgagent.composer import append_tool_calls, complete_text, compose
from kgagent.config import AgentConfig
from kgagent.events import StreamEvent
from kgagent.exceptions import ConfigurationError, ProviderError
from kgagent.instrumentation import record_error, request_span
from kgagent.message import Message, MessageRole
from kgagent.streaming import LineDelta, ToolCallFragment, ToolInvocation
from kgagent.wire import (
    LineParser,
    gemini_delta,
    iter_line_deltas,
    parse_anthropic_line,
    parse_gemini_line,
    parse_tool_calls,
    thinking_text,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600.0
ANTHROPIC_VERSION = "2023-06-01"
MAX_OUTPUT_TOKENS = 8192


@dataclass
class CompletionResult:
    """A single-shot answer.

    ``content`` already carries any tool calls rendered as markup;
    ``tool_calls`` holds the same calls in structured form.
    """

    content: str
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    finished: bool = True


class ModelProvider(ABC):
    """Interface every model backend implements."""

    name: str = ""

    def __init__(self, model: str):
        self.model = model

    @abstractmethod
    def generate_stream(
        self,
        conversation: Sequence[Message],
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one response as text, tool-call and done events."""

    @abstractmethod
    async def generate_completion(
        self,
        conversation: Sequence[Message],
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> CompletionResult:
        """Request one response in a single round-trip."""

    async def aclose(self) -> None:
        """Release network resources held by the provider."""


# ------------------------------------------------------------------
# Shared helpers
# ------------------------------------------------------------------

class HttpTransport:
    """POSTs JSON to a vendor endpoint and reads the reply.

    Args:
        vendor: Name used in error messages.
        headers: Sent with every request.
        timeout: Seconds before a request is abandoned.
        client: An existing ``httpx.AsyncClient`` to use instead of
            creating one.  A supplied client is not closed by
            :meth:`aclose`.
    """

    def __init__(
        self,
        vendor: str,
        headers: dict[str, str],
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.vendor = vendor
        self.headers = headers
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _status_error(self, response: httpx.Response, body: str) -> ProviderError:
        logger.error(f"{self.vendor} API error {response.status_code}: {body[:500]}")
        return ProviderError(
            f"{self.vendor} API error: {response.status_code} {response.reason_phrase}",
            status_code=response.status_code,
        )

    @asynccontextmanager
    async def lines(self, url: str, payload: dict[str, Any]):
        """Open a streaming POST and yield its response lines."""
        try:
            async with self.client.stream("POST", url, json=payload, headers=self.headers) as response:
                if not response.is_success:
                    body = (await response.aread()).decode(errors="replace")
                    raise self._status_error(response, body)
                yield response.aiter_lines()
        except httpx.HTTPError as e:
            logger.error(f"{self.vendor} stream HTTP error: {e}")
            raise ProviderError(f"{self.vendor} request failed: {e}") from e

    async def post_json(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.client.post(url, json=payload, headers=self.headers)
        except httpx.HTTPError as e:
            logger.error(f"{self.vendor} HTTP error: {e}")
            raise ProviderError(f"{self.vendor} request failed: {e}") from e
        if not response.is_success:
            raise self._status_error(response, response.text)
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise ProviderError(f"{self.vendor} returned an invalid response body") from e
        if not isinstance(data, dict):
            raise ProviderError(f"{self.vendor} returned an invalid response body")
        return data

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def chat_messages(
    conversation: Sequence[Message],
    system_prompt: str,
    content_parts: bool = False,
) -> list[dict[str, Any]]:
    """Build an OpenAI-style ``messages`` array.

    With ``content_parts`` every content is sent as a list holding one
    ``{"type": "text"}`` part, as OpenRouter expects for Claude models.
    """
    def body(text: str):
        return [{"type": "text", "text": text}] if content_parts else text

    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": body(system_prompt)})
    for message in conversation:
        messages.append({"role": message.role.value, "content": body(message.content)})
    return messages


async def _stream_events(
    provider: ModelProvider,
    transport: HttpTransport,
    url: str,
    payload: dict[str, Any],
    parser: LineParser | None = None,
) -> AsyncIterator[StreamEvent]:
    async with request_span(provider.name, provider.model) as span:
        try:
            async with transport.lines(url, payload) as lines:
                async for event in compose(iter_line_deltas(lines, parser)):
                    yield event
        except ProviderError as e:
            record_error(span, e)
            raise


# ------------------------------------------------------------------
# OpenAI-compatible HTTP (OpenAI, Ollama, vLLM, OpenRouter)
# ------------------------------------------------------------------

class OpenAICompatibleProvider(ModelProvider):
    """Any server speaking the chat-completions shape over raw HTTP.

    The stream format is detected per response, so both SSE servers and
    Ollama's line-delimited JSON work against the same endpoint code.

    Args:
        base_url: The full chat endpoint, e.g.
            ``http://localhost:11434/api/chat``.
        api_key: Sent as a bearer token when given.
        model: Model name passed through to the server.
        flex: Request OpenAI's ``flex`` service tier.
        content_parts: Send message content as a list of text parts.
        timeout: Request timeout in seconds.
        client: Optional shared ``httpx.AsyncClient``.
    """

    name = "openai_compatible"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        model: str = "",
        flex: bool = False,
        content_parts: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(model)
        if not base_url:
            raise ConfigurationError(f"{self.name} requires a base_url")
        self.base_url = base_url.rstrip("/")
        self.flex = flex
        self.content_parts = content_parts
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.transport = HttpTransport(self.name, headers, timeout=timeout, client=client)

    def _payload(self, conversation, system_prompt, tools, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": chat_messages(conversation, system_prompt, self.content_parts),
            "stream": stream,
        }
        if self.flex:
            payload["service_tier"] = "flex"
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    async def generate_stream(
        self,
        conversation: Sequence[Message],
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        payload = self._payload(conversation, system_prompt, tools, stream=True)
        logger.info(f"Streaming request to {self.base_url}: model={self.model}")
        async for event in _stream_events(self, self.transport, self.base_url, payload):
            yield event

    async def generate_completion(
        self,
        conversation: Sequence[Message],
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> CompletionResult:
        payload = self._payload(conversation, system_prompt, tools, stream=False)
        async with request_span(self.name, self.model, streaming=False):
            data = await self.transport.post_json(self.base_url, payload)

        if "message" in data:
            # Ollama
            message = data.get("message") or {}
            text = complete_text(
                thinking_text(message),
                message.get("content") or data.get("response") or None,
            )
            calls = parse_tool_calls(message.get("tool_calls") or [])
            finished = data.get("done") is True or data.get("done_reason") == "stop"
        else:
            choice = (data.get("choices") or [{}])[0]
            message = choice.get("message") or {}
            text = complete_text(thinking_text(message), message.get("content") or None)
            calls = parse_tool_calls(message.get("tool_calls") or [])
            finished = choice.get("finish_reason") in ("stop", "tool_calls")

        return CompletionResult(
            content=append_tool_calls(text, calls),
            tool_calls=calls,
            finished=finished,
        )

    async def aclose(self) -> None:
        await self.transport.aclose()


class OpenRouter(OpenAICompatibleProvider):
    """Claude (or any model) through OpenRouter's chat endpoint."""

    name = "claude_openrouter"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1/chat/completions",
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(
            base_url=base_url,
            api_key=api_key,
            model=model,
            content_parts=True,
            timeout=timeout,
            client=client,
        )


# ------------------------------------------------------------------
# Anthropic Messages API
# ------------------------------------------------------------------

def _anthropic_tools(tools: list[dict]) -> list[dict]:
    converted = []
    for schema in tools:
        function = schema.get("function", schema)
        converted.append({
            "name": function["name"],
            "description": function.get("description", ""),
            "input_schema": function.get("parameters") or {"type": "object", "properties": {}},
        })
    return converted


class ClaudeProvider(ModelProvider):
    """Anthropic's Messages API, streamed as typed SSE events."""

    name = "claude"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.anthropic.com/v1/messages",
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(model)
        self.base_url = base_url
        headers = {
            "x-api-key": api_key,
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        self.transport = HttpTransport("Claude", headers, timeout=timeout, client=client)

    def _payload(self, conversation, system_prompt, tools, stream: bool) -> dict[str, Any]:
        # The Messages API rejects empty turns.
        messages = [m.to_wire() for m in conversation if m.content]
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": MAX_OUTPUT_TOKENS,
            "messages": messages,
            "stream": stream,
        }
        if system_prompt:
            payload["system"] = system_prompt
        if tools:
            payload["tools"] = _anthropic_tools(tools)
        return payload

    async def generate_stream(
        self,
        conversation: Sequence[Message],
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        payload = self._payload(conversation, system_prompt, tools, stream=True)
        async for event in _stream_events(
            self, self.transport, self.base_url, payload, parse_anthropic_line,
        ):
            yield event

    async def generate_completion(
        self,
        conversation: Sequence[Message],
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> CompletionResult:
        payload = self._payload(conversation, system_prompt, tools, stream=False)
        async with request_span(self.name, self.model, streaming=False):
            data = await self.transport.post_json(self.base_url, payload)

        thinking, content, calls = [], [], []
        for block in data.get("content") or []:
            kind = block.get("type")
            if kind == "text":
                content.append(block.get("text", ""))
            elif kind == "thinking":
                thinking.append(block.get("thinking", ""))
            elif kind == "tool_use":
                calls.append(ToolInvocation(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    arguments=block.get("input") or {},
                ))
        text = complete_text("".join(thinking) or None, "".join(content) or None)
        return CompletionResult(
            content=append_tool_calls(text, calls),
            tool_calls=calls,
            finished=data.get("stop_reason") in ("end_turn", "tool_use", "stop_sequence"),
        )

    async def aclose(self) -> None:
        await self.transport.aclose()


# ------------------------------------------------------------------
# Google Gemini
# ------------------------------------------------------------------

def _gemini_tools(tools: list[dict]) -> list[dict]:
    declarations = []
    for schema in tools:
        function = schema.get("function", schema)
        declaration = {
            "name": function["name"],
            "description": function.get("description", ""),
        }
        if function.get("parameters"):
            declaration["parameters"] = function["parameters"]
        declarations.append(declaration)
    return [{"functionDeclarations": declarations}]


class GeminiProvider(ModelProvider):
    """Google's Gemini ``generateContent`` API."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta/models",
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(model)
        self.endpoint = f"{base_url.rstrip('/')}/{model}"
        headers = {"x-goog-api-key": api_key, "Content-Type": "application/json"}
        self.transport = HttpTransport("Gemini", headers, timeout=timeout, client=client)

    def _payload(self, conversation, system_prompt, tools) -> dict[str, Any]:
        contents = []
        for message in conversation:
            if not message.content:
                continue
            role = "model" if message.role is MessageRole.ASSISTANT else "user"
            contents.append({"role": role, "parts": [{"text": message.content}]})
        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": 0.7, "maxOutputTokens": MAX_OUTPUT_TOKENS},
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        if tools:
            payload["tools"] = _gemini_tools(tools)
        return payload

    async def generate_stream(
        self,
        conversation: Sequence[Message],
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        url = f"{self.endpoint}:streamGenerateContent?alt=sse"
        payload = self._payload(conversation, system_prompt, tools)
        async for event in _stream_events(self, self.transport, url, payload, parse_gemini_line):
            yield event

    async def generate_completion(
        self,
        conversation: Sequence[Message],
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> CompletionResult:
        url = f"{self.endpoint}:generateContent"
        payload = self._payload(conversation, system_prompt, tools)
        async with request_span(self.name, self.model, streaming=False):
            data = await self.transport.post_json(url, payload)

        delta = gemini_delta(data)
        calls = delta.tool_calls or []
        candidate = (data.get("candidates") or [{}])[0]
        return CompletionResult(
            content=append_tool_calls(complete_text(delta.thinking, delta.content), calls),
            tool_calls=calls,
            finished=candidate.get("finishReason") == "STOP",
        )

    async def aclose(self) -> None:
        await self.transport.aclose()


# ------------------------------------------------------------------
# OpenAI SDK
# ------------------------------------------------------------------

def _sdk_delta(chunk) -> LineDelta:
    """Map one SDK ``ChatCompletionChunk`` onto a line delta."""
    if not chunk.choices:
        return LineDelta()
    choice = chunk.choices[0]
    delta = choice.delta
    fragments = []
    for tc in delta.tool_calls or []:
        function = tc.function
        fragments.append(ToolCallFragment(
            index=tc.index,
            call_id=tc.id,
            name=function.name if function else None,
            arguments_delta=function.arguments if function else None,
        ))
    return LineDelta(
        thinking=thinking_text(getattr(delta, "model_extra", None) or {}),
        content=delta.content or None,
        is_done=choice.finish_reason is not None,
        tool_call_fragments=fragments or None,
    )


class OpenAIProvider(ModelProvider):
    """OpenAI through the official async SDK.

    Args:
        api_key: Falls back to ``OPENAI_API_KEY``.
        model: Chat model name.
        base_url: Optional override for the API base.
        flex: Request the ``flex`` service tier.
        timeout: Request timeout in seconds.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4.1-mini",
        base_url: str | None = None,
        flex: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        super().__init__(model)
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        self.flex = flex
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or None,
            max_retries=5,
            timeout=timeout,
        )

    def _request(self, conversation, system_prompt, tools) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": self.model,
            "messages": chat_messages(conversation, system_prompt),
        }
        if self.flex:
            request["service_tier"] = "flex"
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"
        return request

    async def _deltas(self, stream) -> AsyncIterator[LineDelta]:
        async for chunk in stream:
            yield _sdk_delta(chunk)

    async def generate_stream(
        self,
        conversation: Sequence[Message],
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        request = self._request(conversation, system_prompt, tools)
        async with request_span(self.name, self.model) as span:
            try:
                stream = await self.client.chat.completions.create(**request, stream=True)
            except openai.APIError as e:
                record_error(span, e)
                raise ProviderError(f"OpenAI request failed: {e}", getattr(e, "status_code", None)) from e
            try:
                async for event in compose(self._deltas(stream)):
                    yield event
            except openai.APIError as e:
                record_error(span, e)
                raise ProviderError(f"OpenAI stream failed: {e}", getattr(e, "status_code", None)) from e
            finally:
                await stream.close()

    async def generate_completion(
        self,
        conversation: Sequence[Message],
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> CompletionResult:
        request = self._request(conversation, system_prompt, tools)
        async with request_span(self.name, self.model, streaming=False) as span:
            try:
                response = await self.client.chat.completions.create(**request)
            except openai.APIError as e:
                record_error(span, e)
                raise ProviderError(f"OpenAI request failed: {e}", getattr(e, "status_code", None)) from e

        choice = response.choices[0]
        message = choice.message
        calls = parse_tool_calls([
            {"id": tc.id, "function": {"name": tc.function.name, "arguments": tc.function.arguments}}
            for tc in message.tool_calls or []
        ])
        text = complete_text(
            thinking_text(getattr(message, "model_extra", None) or {}),
            message.content or None,
        )
        return CompletionResult(
            content=append_tool_calls(text, calls),
            tool_calls=calls,
            finished=choice.finish_reason in ("stop", "tool_calls"),
        )

    async def aclose(self) -> None:
        await self.client.close()


# ------------------------------------------------------------------
# Factory
# ------------------------------------------------------------------

def create_provider(config: AgentConfig) -> ModelProvider:
    """Build the provider selected by ``config.llm_provider``.

    Raises:
        ConfigurationError: For an unknown provider name.
    """
    name = config.llm_provider
    settings = config.provider_settings(name)
    timeout = config.request_timeout
    logger.info(f"Creating {name} provider for model {settings.model}")

    if name == "openai":
        return OpenAIProvider(
            api_key=settings.api_key or None,
            model=settings.model,
            base_url=settings.base_url or None,
            flex=config.openai.flex,
            timeout=timeout,
        )
    if name == "openai_compatible":
        return OpenAICompatibleProvider(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            timeout=timeout,
        )
    if name == "claude":
        return ClaudeProvider(settings.api_key, settings.model, base_url=settings.base_url, timeout=timeout)
    if name == "claude_openrouter":
        return OpenRouter(settings.api_key, settings.model, base_url=settings.base_url, timeout=timeout)
    if name == "gemini":
        return GeminiProvider(settings.api_key, settings.model, base_url=settings.base_url, timeout=timeout)
    raise ConfigurationError(f"Unknown LLM provider: {name}")
