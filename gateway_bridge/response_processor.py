"""
响应处理模块
处理流式和非流式响应的所有逻辑
"""
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from gateway_bridge.constants import ContentConstants, ErrorTypes, EventConstants, LogMessages, StopReasons
from gateway_bridge.models import (
    Finish, MessagesResponse, ReasoningDelta, StreamError, TextDelta, ToolCall,
    ToolCallDelta, ToolCallEnd, ToolCallStart, UpstreamCompletion, UpstreamEvent,
    UpstreamUsage, Usage,
)
from gateway_bridge.utils import dump_json, generate_message_id, safe_str

logger = logging.getLogger(__name__)


def map_stop_reason(finish_reason: Optional[str], stop_sequence: Optional[str] = None) -> str:
    """将上游 finish_reason 映射为 Messages API stop_reason"""
    if finish_reason in (StopReasons.UPSTREAM_TOOL_CALLS, StopReasons.UPSTREAM_FUNCTION_CALL):
        return StopReasons.TOOL_USE
    if finish_reason == StopReasons.UPSTREAM_LENGTH:
        return StopReasons.MAX_TOKENS
    if finish_reason == StopReasons.UPSTREAM_STOP and stop_sequence:
        return StopReasons.STOP_SEQUENCE
    return StopReasons.END_TURN


def map_usage(usage: Optional[UpstreamUsage]) -> Usage:
    """
    输入/输出token数原样复制；缓存相关字段仅在上游报告时出现
    """
    usage = usage or UpstreamUsage()
    return Usage(
        input_tokens=usage.prompt_tokens,
        output_tokens=usage.completion_tokens,
        cache_creation_input_tokens=usage.cache_creation_tokens,
        cache_read_input_tokens=usage.cache_read_tokens,
    )


def format_sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {dump_json(data)}\n\n"


class ResponseProcessor:
    """响应处理器"""

    def create_message_response(self, completion: UpstreamCompletion, model: str) -> Dict[str, Any]:
        """
        将上游补全结果转换为 Messages API 响应

        内容顺序：思考块（如有）、文本块（非空时）、按上游顺序的 tool_use 块。
        """
        content: List[Dict[str, Any]] = []
        if completion.reasoning:
            content.append({"type": ContentConstants.THINKING_TYPE, "thinking": completion.reasoning})
        if completion.text:
            content.append({"type": ContentConstants.TEXT_TYPE, "text": completion.text})
        for tool_call in completion.tool_calls:
            content.append({
                "type": ContentConstants.TOOL_USE_TYPE,
                "id": tool_call.id,
                "name": tool_call.name,
                "input": tool_call.arguments,
            })

        stop_reason = map_stop_reason(completion.finish_reason, completion.stop_sequence)
        response = MessagesResponse(
            id=generate_message_id(),
            content=content,
            model=model,
            stop_reason=stop_reason,
            stop_sequence=completion.stop_sequence if stop_reason == StopReasons.STOP_SEQUENCE else None,
            usage=map_usage(completion.usage),
        )
        data = response.model_dump()
        # 缓存字段缺失表示不适用，而不是0
        data["usage"] = response.usage.model_dump(exclude_none=True)
        return data

    def create_stream_reframer(
        self,
        model: str,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> "StreamReframer":
        return StreamReframer(model, is_disconnected=is_disconnected)


@dataclass
class StreamRenderState:
    """单个流式响应的渲染状态"""
    block_index: int = 0
    thinking_open: bool = False
    text_open: bool = False
    open_tool_call: Optional[str] = None
    tool_blocks: Dict[str, int] = field(default_factory=dict)
    blocks_emitted: int = 0
    finish_reason: Optional[str] = None
    stop_sequence: Optional[str] = None
    usage: Optional[UpstreamUsage] = None

    @property
    def block_open(self) -> bool:
        return self.thinking_open or self.text_open or self.open_tool_call is not None


class StreamReframer:
    """
    将上游流式事件序列转换为 Messages API SSE 事件序列

    Block indices start at 0 and increase strictly; at most one block is open at a
    time and every opened block is closed exactly once.
    """

    def __init__(self, model: str, is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None):
        self.model = model
        self.is_disconnected = is_disconnected
        self.message_id = generate_message_id()
        self.state = StreamRenderState()

    # --- block framing ---
    def _open_block(self, content_block: Dict[str, Any]) -> str:
        self.state.blocks_emitted += 1
        return format_sse(EventConstants.CONTENT_BLOCK_START, {
            "type": EventConstants.CONTENT_BLOCK_START,
            "index": self.state.block_index,
            "content_block": content_block,
        })

    def _delta(self, delta: Dict[str, Any], index: Optional[int] = None) -> str:
        return format_sse(EventConstants.CONTENT_BLOCK_DELTA, {
            "type": EventConstants.CONTENT_BLOCK_DELTA,
            "index": self.state.block_index if index is None else index,
            "delta": delta,
        })

    def _close_open_block(self) -> List[str]:
        """关闭当前打开的块并前进索引"""
        if not self.state.block_open:
            return []
        event = format_sse(EventConstants.CONTENT_BLOCK_STOP, {
            "type": EventConstants.CONTENT_BLOCK_STOP,
            "index": self.state.block_index,
        })
        self.state.thinking_open = False
        self.state.text_open = False
        self.state.open_tool_call = None
        self.state.block_index += 1
        return [event]

    # --- event handlers ---
    def _on_reasoning(self, event: ReasoningDelta) -> List[str]:
        out = []
        if not self.state.thinking_open:
            out.extend(self._close_open_block())
            out.append(self._open_block({"type": ContentConstants.THINKING_TYPE, "thinking": ""}))
            self.state.thinking_open = True
        out.append(self._delta({"type": EventConstants.THINKING_DELTA, "thinking": event.text}))
        return out

    def _on_text(self, event: TextDelta) -> List[str]:
        out = []
        if not self.state.text_open:
            out.extend(self._close_open_block())
            out.append(self._open_block({"type": ContentConstants.TEXT_TYPE, "text": ""}))
            self.state.text_open = True
        out.append(self._delta({"type": EventConstants.TEXT_DELTA, "text": event.text}))
        return out

    def _start_tool_block(self, call_id: str, name: str) -> List[str]:
        out = self._close_open_block()
        self.state.tool_blocks[call_id] = self.state.block_index
        out.append(self._open_block({
            "type": ContentConstants.TOOL_USE_TYPE,
            "id": call_id,
            "name": name,
            "input": {},
        }))
        self.state.open_tool_call = call_id
        return out

    def _on_tool_call(self, event: ToolCall) -> List[str]:
        out = self._start_tool_block(event.id, event.name)
        out.append(self._delta({"type": EventConstants.INPUT_JSON_DELTA, "partial_json": dump_json(event.arguments)}))
        out.extend(self._close_open_block())
        return out

    def _on_tool_call_start(self, event: ToolCallStart) -> List[str]:
        return self._start_tool_block(event.id, event.name)

    def _on_tool_call_delta(self, event: ToolCallDelta) -> List[str]:
        # 已关闭的块不能再接收增量
        if self.state.open_tool_call != event.id:
            logger.warning(LogMessages.TOOL_DELTA_DROPPED.format(
                event.id, self.state.tool_blocks.get(event.id), safe_str(event.arguments_delta)
            ))
            return []
        index = self.state.tool_blocks[event.id]
        return [self._delta({"type": EventConstants.INPUT_JSON_DELTA, "partial_json": event.arguments_delta}, index)]

    def _on_tool_call_end(self, event: ToolCallEnd) -> List[str]:
        if self.state.open_tool_call != event.id:
            return []
        return self._close_open_block()

    def _on_finish(self, event: Finish) -> List[str]:
        self.state.finish_reason = event.finish_reason
        self.state.stop_sequence = event.stop_sequence
        if event.usage is not None:
            self.state.usage = event.usage
        return []

    def handle_event(self, event: UpstreamEvent) -> List[str]:
        """处理单个上游事件，返回需要输出的SSE字符串"""
        if isinstance(event, ReasoningDelta):
            return self._on_reasoning(event) if event.text else []
        if isinstance(event, TextDelta):
            return self._on_text(event) if event.text else []
        if isinstance(event, ToolCall):
            return self._on_tool_call(event)
        if isinstance(event, ToolCallStart):
            return self._on_tool_call_start(event)
        if isinstance(event, ToolCallDelta):
            return self._on_tool_call_delta(event)
        if isinstance(event, ToolCallEnd):
            return self._on_tool_call_end(event)
        if isinstance(event, Finish):
            return self._on_finish(event)
        raise TypeError(f"unsupported upstream event: {type(event).__name__}")

    # --- stream boundaries ---
    def message_start(self) -> str:
        return format_sse(EventConstants.MESSAGE_START, {
            "type": EventConstants.MESSAGE_START,
            "message": {
                "id": self.message_id,
                "type": "message",
                "role": "assistant",
                "content": [],
                "model": self.model,
                "stop_reason": None,
                "stop_sequence": None,
                "usage": {"input_tokens": 0, "output_tokens": 0},
            },
        })

    def _placeholder_block(self, text: str = "") -> List[str]:
        """流中没有任何内容块时补一个文本块"""
        if self.state.blocks_emitted:
            return []
        out = [self._open_block({"type": ContentConstants.TEXT_TYPE, "text": ""})]
        self.state.text_open = True
        if text:
            out.append(self._delta({"type": EventConstants.TEXT_DELTA, "text": text}))
        out.extend(self._close_open_block())
        return out

    def _message_end(self, stop_reason: str) -> List[str]:
        usage = map_usage(self.state.usage)
        delta_usage = {"output_tokens": usage.output_tokens}
        if usage.cache_creation_input_tokens is not None:
            delta_usage["cache_creation_input_tokens"] = usage.cache_creation_input_tokens
        if usage.cache_read_input_tokens is not None:
            delta_usage["cache_read_input_tokens"] = usage.cache_read_input_tokens
        return [
            format_sse(EventConstants.MESSAGE_DELTA, {
                "type": EventConstants.MESSAGE_DELTA,
                "delta": {
                    "stop_reason": stop_reason,
                    "stop_sequence": self.state.stop_sequence if stop_reason == StopReasons.STOP_SEQUENCE else None,
                },
                "usage": delta_usage,
            }),
            format_sse(EventConstants.MESSAGE_STOP, {"type": EventConstants.MESSAGE_STOP}),
        ]

    def finish(self) -> List[str]:
        out = self._close_open_block()
        out.extend(self._placeholder_block())
        out.extend(self._message_end(map_stop_reason(self.state.finish_reason, self.state.stop_sequence)))
        return out

    def fail(self, message: str, error_type: str = ErrorTypes.API_ERROR) -> List[str]:
        out = self._close_open_block()
        out.append(format_sse(EventConstants.ERROR, {
            "type": EventConstants.ERROR,
            "error": {"type": error_type, "message": message},
        }))
        out.extend(self._placeholder_block(ContentConstants.STREAM_ERROR_PLACEHOLDER.format(message)))
        out.extend(self._message_end(StopReasons.END_TURN))
        return out

    async def render(self, events: AsyncIterator[UpstreamEvent]) -> AsyncGenerator[str, None]:
        """
        渲染完整的 SSE 流

        Args:
            events: 上游事件的异步迭代器

        Yields:
            Messages API 格式的 SSE 字符串
        """
        yield self.message_start()
        try:
            async for event in events:
                if self.is_disconnected is not None and await self.is_disconnected():
                    logger.info(LogMessages.STREAM_DISCONNECTED)
                    return
                if isinstance(event, StreamError):
                    logger.error(LogMessages.STREAM_ERROR.format(safe_str(event.message)))
                    for chunk in self.fail(event.message, event.error_type or ErrorTypes.API_ERROR):
                        yield chunk
                    return
                for chunk in self.handle_event(event):
                    yield chunk
        except Exception as e:
            logger.error(LogMessages.STREAM_ERROR.format(safe_str(e)))
            for chunk in self.fail(getattr(e, "message", None) or safe_str(e), getattr(e, "error_type", ErrorTypes.API_ERROR)):
                yield chunk
            return
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

        for chunk in self.finish():
            yield chunk
