"""Single-shot response building and the streaming re-framer."""

import json
import logging
from typing import Any, Dict, List, Tuple

import pytest

from gateway_bridge.exceptions import UpstreamError
from gateway_bridge.models import (
    Finish, ReasoningDelta, StreamError, TextDelta, ToolCall, ToolCallDelta,
    ToolCallEnd, ToolCallStart, UpstreamCompletion, UpstreamToolCall, UpstreamUsage,
)
from gateway_bridge.response_processor import ResponseProcessor, StreamReframer, map_stop_reason


def parse_sse(chunks: List[str]) -> List[Tuple[str, Dict[str, Any]]]:
    events = []
    for chunk in chunks:
        lines = chunk.strip().split("\n")
        assert lines[0].startswith("event: ")
        assert lines[1].startswith("data: ")
        events.append((lines[0][len("event: "):], json.loads(lines[1][len("data: "):])))
    return events


async def _iterate(events):
    for event in events:
        if isinstance(event, Exception):
            raise event
        yield event


async def render(events, **kwargs) -> List[Tuple[str, Dict[str, Any]]]:
    reframer = StreamReframer("claude-test", **kwargs)
    return parse_sse([chunk async for chunk in reframer.render(_iterate(events))])


def assert_block_framing(events: List[Tuple[str, Dict[str, Any]]]) -> None:
    """Indices start at 0 and increase; each open has one close; never two open at once."""
    open_index = None
    next_index = 0
    for name, data in events:
        if name == "content_block_start":
            assert open_index is None
            assert data["index"] == next_index
            open_index = data["index"]
        elif name == "content_block_delta":
            assert data["index"] == open_index
        elif name == "content_block_stop":
            assert data["index"] == open_index
            open_index = None
            next_index += 1
    assert open_index is None


def block_types(events) -> List[str]:
    return [data["content_block"]["type"] for name, data in events if name == "content_block_start"]


class TestStopReason:
    @pytest.mark.parametrize(
        "finish_reason, stop_sequence, expected",
        [
            ("tool_calls", None, "tool_use"),
            ("function_call", None, "tool_use"),
            ("length", None, "max_tokens"),
            ("stop", None, "end_turn"),
            ("stop", "END", "stop_sequence"),
            ("content_filter", None, "end_turn"),
            (None, None, "end_turn"),
        ],
    )
    def test_mapping(self, finish_reason, stop_sequence, expected):
        assert map_stop_reason(finish_reason, stop_sequence) == expected


class TestMessageResponse:
    def test_block_order_and_usage(self):
        completion = UpstreamCompletion(
            text="Let me check.",
            reasoning="User wants weather.",
            tool_calls=[
                UpstreamToolCall(id="call_1", name="get_weather", arguments={"city": "Paris"}),
                UpstreamToolCall(id="call_2", name="get_time", arguments={}),
            ],
            finish_reason="tool_calls",
            usage=UpstreamUsage(prompt_tokens=30, completion_tokens=12),
        )
        response = ResponseProcessor().create_message_response(completion, "claude-test")

        assert response["id"].startswith("msg_")
        assert response["type"] == "message"
        assert response["role"] == "assistant"
        assert response["model"] == "claude-test"
        assert [b["type"] for b in response["content"]] == ["thinking", "text", "tool_use", "tool_use"]
        assert response["content"][2] == {"type": "tool_use", "id": "call_1", "name": "get_weather", "input": {"city": "Paris"}}
        assert response["stop_reason"] == "tool_use"
        assert response["stop_sequence"] is None
        assert response["usage"] == {"input_tokens": 30, "output_tokens": 12}

    def test_empty_text_is_omitted(self):
        completion = UpstreamCompletion(
            text="",
            tool_calls=[UpstreamToolCall(id="call_1", name="noop")],
            finish_reason="tool_calls",
        )
        response = ResponseProcessor().create_message_response(completion, "m")
        assert [b["type"] for b in response["content"]] == ["tool_use"]

    def test_cache_usage_is_additive(self):
        completion = UpstreamCompletion(
            text="hi",
            finish_reason="stop",
            usage=UpstreamUsage(prompt_tokens=100, completion_tokens=5, cache_read_tokens=80, cache_creation_tokens=0),
        )
        usage = ResponseProcessor().create_message_response(completion, "m")["usage"]
        assert usage == {
            "input_tokens": 100,
            "output_tokens": 5,
            "cache_creation_input_tokens": 0,
            "cache_read_input_tokens": 80,
        }

    def test_matched_stop_sequence_is_reported(self):
        completion = UpstreamCompletion(text="a", finish_reason="stop", stop_sequence="END")
        response = ResponseProcessor().create_message_response(completion, "m")
        assert response["stop_reason"] == "stop_sequence"
        assert response["stop_sequence"] == "END"


class TestStreamReframer:
    @pytest.mark.asyncio
    async def test_message_start_comes_first(self):
        events = await render([TextDelta(text="hi"), Finish(finish_reason="stop")])
        name, data = events[0]
        assert name == "message_start"
        assert data["message"]["content"] == []
        assert data["message"]["usage"] == {"input_tokens": 0, "output_tokens": 0}

    @pytest.mark.asyncio
    async def test_text_stream(self):
        events = await render([
            TextDelta(text="Hel"),
            TextDelta(text="lo"),
            Finish(finish_reason="stop", usage=UpstreamUsage(prompt_tokens=4, completion_tokens=2)),
        ])
        assert [name for name, _ in events] == [
            "message_start",
            "content_block_start",
            "content_block_delta",
            "content_block_delta",
            "content_block_stop",
            "message_delta",
            "message_stop",
        ]
        deltas = [data["delta"]["text"] for name, data in events if name == "content_block_delta"]
        assert "".join(deltas) == "Hello"
        message_delta = events[-2][1]
        assert message_delta["delta"]["stop_reason"] == "end_turn"
        assert message_delta["usage"] == {"output_tokens": 2}

    @pytest.mark.asyncio
    async def test_mixed_stream_keeps_block_framing(self):
        events = await render([
            ReasoningDelta(text="thinking..."),
            ReasoningDelta(text=" more"),
            TextDelta(text="Calling tools."),
            ToolCallStart(id="call_1", name="get_weather"),
            ToolCallDelta(id="call_1", arguments_delta='{"city":'),
            ToolCallDelta(id="call_1", arguments_delta='"Paris"}'),
            ToolCallEnd(id="call_1"),
            ToolCall(id="call_2", name="get_time", arguments={"tz": "UTC"}),
            TextDelta(text="Done."),
            Finish(finish_reason="tool_calls"),
        ])
        assert_block_framing(events)
        assert block_types(events) == ["thinking", "text", "tool_use", "tool_use", "text"]

        partial = [
            data["delta"]["partial_json"] for name, data in events
            if name == "content_block_delta" and data["delta"]["type"] == "input_json_delta"
        ]
        assert partial == ['{"city":', '"Paris"}', '{"tz":"UTC"}']
        assert events[-2][1]["delta"]["stop_reason"] == "tool_use"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "sequence",
        [
            [TextDelta(text="a"), ReasoningDelta(text="b"), TextDelta(text="c")],
            [ToolCall(id="x", name="n"), ToolCall(id="y", name="n"), TextDelta(text="z")],
            [ToolCallStart(id="x", name="n"), TextDelta(text="interrupts"), ToolCallDelta(id="x", arguments_delta="{}")],
            [ToolCallEnd(id="never-opened"), TextDelta(text="t"), ToolCallEnd(id="never-opened")],
            [ReasoningDelta(text="r"), ToolCallStart(id="x", name="n"), ToolCallStart(id="y", name="m")],
        ],
    )
    async def test_block_framing_invariant(self, sequence):
        events = await render(sequence + [Finish(finish_reason="stop")])
        assert_block_framing(events)
        assert events[-1][0] == "message_stop"

    @pytest.mark.asyncio
    async def test_delta_for_closed_tool_block_is_dropped(self, caplog):
        caplog.set_level(logging.WARNING)
        events = await render([
            ToolCallStart(id="x", name="n"),
            TextDelta(text="closes the tool block"),
            ToolCallDelta(id="x", arguments_delta='{"late": true}'),
            Finish(finish_reason="stop"),
        ])
        assert_block_framing(events)
        assert not any(
            name == "content_block_delta" and data["delta"]["type"] == "input_json_delta"
            for name, data in events
        )
        dropped = [r for r in caplog.records if "工具调用 x " in r.getMessage()]
        assert len(dropped) == 1
        assert "input JSON" in dropped[0].getMessage()
        assert '{"late": true}' in dropped[0].getMessage()

    @pytest.mark.asyncio
    async def test_zero_content_stream_yields_one_block(self):
        events = await render([Finish(finish_reason="stop")])
        assert_block_framing(events)
        assert block_types(events) == ["text"]
        assert [name for name, _ in events] == [
            "message_start", "content_block_start", "content_block_stop", "message_delta", "message_stop",
        ]

    @pytest.mark.asyncio
    async def test_empty_deltas_do_not_open_blocks(self):
        events = await render([TextDelta(text=""), ReasoningDelta(text=""), Finish(finish_reason="stop")])
        assert block_types(events) == ["text"]

    @pytest.mark.asyncio
    async def test_upstream_error_event_before_content(self):
        events = await render([StreamError(message="model overloaded", error_type="overloaded_error")])
        assert_block_framing(events)
        names = [name for name, _ in events]
        assert names == [
            "message_start",
            "error",
            "content_block_start",
            "content_block_delta",
            "content_block_stop",
            "message_delta",
            "message_stop",
        ]
        assert "model overloaded" in events[3][1]["delta"]["text"]
        assert events[1][1]["error"] == {"type": "overloaded_error", "message": "model overloaded"}

    @pytest.mark.asyncio
    async def test_exception_mid_block_closes_it(self):
        events = await render([TextDelta(text="partial"), UpstreamError("connection reset")])
        assert_block_framing(events)
        assert block_types(events) == ["text"]
        names = [name for name, _ in events]
        assert names[-3:] == ["error", "message_delta", "message_stop"]
        error = dict(events)["error"]["error"]
        assert error == {"type": "api_error", "message": "connection reset"}

    @pytest.mark.asyncio
    async def test_usage_with_cache_fields(self):
        events = await render([
            TextDelta(text="x"),
            Finish(
                finish_reason="length",
                usage=UpstreamUsage(prompt_tokens=9, completion_tokens=3, cache_read_tokens=6),
            ),
        ])
        message_delta = events[-2][1]
        assert message_delta["delta"]["stop_reason"] == "max_tokens"
        assert message_delta["usage"] == {"output_tokens": 3, "cache_read_input_tokens": 6}

    @pytest.mark.asyncio
    async def test_disconnect_stops_production(self):
        async def disconnected() -> bool:
            return True

        events = await render([TextDelta(text="a"), TextDelta(text="b"), Finish()], is_disconnected=disconnected)
        assert [name for name, _ in events] == ["message_start"]

    @pytest.mark.asyncio
    async def test_upstream_iterator_is_closed(self):
        closed = []

        async def upstream():
            try:
                yield TextDelta(text="a")
                yield Finish(finish_reason="stop")
            finally:
                closed.append(True)

        reframer = StreamReframer("m")
        [chunk async for chunk in reframer.render(upstream())]
        assert closed == [True]
