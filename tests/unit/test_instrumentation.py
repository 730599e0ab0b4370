"""Unit tests for the instrumentation module.

OTel interactions are mocked with unittest.mock; ``opentelemetry-api``
is a test dependency so ``SpanKind`` / ``StatusCode`` are imported
directly for the assertions.
"""

import logging
from unittest.mock import MagicMock, patch

import httpx
import pytest
from opentelemetry.trace import SpanKind, StatusCode

import kgagent.instrumentation as inst
from kgagent.exceptions import ProviderError
from kgagent.instrumentation import record_error, request_span, tool_span, uninstrument
from kgagent.message import Message, MessageRole
from kgagent.provider import OpenAICompatibleProvider
from tests.conftest import collect


@pytest.fixture(autouse=True)
def _reset_tracer():
    inst._tracer = None
    yield
    inst._tracer = None


@pytest.fixture
def mock_tracer():
    span = MagicMock()
    tracer = MagicMock()
    tracer.start_as_current_span.return_value.__enter__ = MagicMock(return_value=span)
    tracer.start_as_current_span.return_value.__exit__ = MagicMock(return_value=False)
    tracer.span = span
    inst._tracer = tracer
    return tracer


def _mock_otel(mock_trace):
    return (
        patch("importlib.util.find_spec", return_value=MagicMock()),
        patch.dict(
            "sys.modules",
            {
                "opentelemetry": MagicMock(trace=mock_trace),
                "opentelemetry.trace": mock_trace,
            },
        ),
    )


class TestInstrument:
    def test_raises_without_otel_installed(self):
        with patch("importlib.util.find_spec", return_value=None):
            with pytest.raises(ImportError, match="kgagent\\[otel\\]"):
                inst.instrument()

    def test_sets_global_tracer(self):
        tracer = MagicMock()
        mock_trace = MagicMock()
        mock_trace.get_tracer.return_value = tracer
        mock_trace.NoOpTracer = type("NoOpTracer", (), {})

        p1, p2 = _mock_otel(mock_trace)
        with p1, p2:
            inst.instrument()

        assert inst._tracer is tracer
        mock_trace.get_tracer.assert_called_once_with("kgagent")

    def test_logs_noop_tracer(self, caplog):
        NoOpTracer = type("NoOpTracer", (), {})
        mock_trace = MagicMock()
        mock_trace.get_tracer.return_value = NoOpTracer()
        mock_trace.NoOpTracer = NoOpTracer

        p1, p2 = _mock_otel(mock_trace)
        with p1, p2, caplog.at_level(logging.INFO, logger="kgagent.instrumentation"):
            inst.instrument(tracer_name="music-agent")

        mock_trace.get_tracer.assert_called_once_with("music-agent")
        assert any("No TracerProvider configured" in r.message for r in caplog.records)

    def test_uninstrument_clears_tracer(self):
        inst._tracer = MagicMock()
        uninstrument()
        assert inst._tracer is None


class TestSpans:
    @pytest.mark.asyncio
    async def test_spans_yield_none_without_tracer(self):
        async with request_span("openai", "m") as s:
            assert s is None
        async with tool_span("read_music") as s:
            assert s is None

    @pytest.mark.asyncio
    async def test_request_span(self, mock_tracer):
        async with request_span("claude", "claude-sonnet", streaming=False) as s:
            assert s is mock_tracer.span

        mock_tracer.start_as_current_span.assert_called_once_with(
            "chat claude-sonnet",
            kind=SpanKind.CLIENT,
            attributes={
                "gen_ai.operation.name": "chat",
                "gen_ai.provider.name": "claude",
                "gen_ai.request.model": "claude-sonnet",
                "kgagent.streaming": False,
            },
        )

    @pytest.mark.asyncio
    async def test_tool_span(self, mock_tracer):
        async with tool_span("add_notes") as s:
            assert s is mock_tracer.span

        mock_tracer.start_as_current_span.assert_called_once_with(
            "execute_tool add_notes",
            attributes={
                "gen_ai.operation.name": "execute_tool",
                "gen_ai.tool.name": "add_notes",
            },
        )

    @pytest.mark.asyncio
    async def test_provider_failure_is_recorded(self, mock_tracer):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503, content=b"busy")),
        )
        provider = OpenAICompatibleProvider(base_url="https://x/v1/chat", model="m", client=client)

        with pytest.raises(ProviderError):
            await collect(provider.generate_stream([Message(role=MessageRole.USER, content="hi")], ""))

        mock_tracer.span.set_status.assert_called_once()
        mock_tracer.span.set_attribute.assert_called_once_with("error.type", "ProviderError")


class TestRecordError:
    def test_sets_status_and_records_exception(self):
        span = MagicMock()
        exc = RuntimeError("boom")
        record_error(span, exc)

        span.set_status.assert_called_once_with(StatusCode.ERROR, "boom")
        span.record_exception.assert_called_once_with(exc)
        span.set_attribute.assert_called_once_with("error.type", "RuntimeError")

    def test_noop_on_none_span(self):
        record_error(None, RuntimeError("boom"))
