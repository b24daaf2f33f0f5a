"""
消息转换模块
将 Messages API 对话和系统提示转换为网关 chat-completions 请求
"""
import json
import logging
from typing import Any, Dict, List, Optional, Union

from gateway_bridge.constants import APIConstants, ContentConstants, LogMessages
from gateway_bridge.models import (
    DocumentBlock, ImageBlock, Message, MessagesRequest, SystemTextBlock,
    TextBlock, ThinkingBlock, ToolResultBlock, ToolUseBlock,
)
from gateway_bridge.tool_handler import convert_tool_choice, convert_tools
from gateway_bridge.utils import dump_json

logger = logging.getLogger(__name__)


def map_model_to_gateway(model: str) -> str:
    """将 Messages API 模型名映射为网关模型ID"""
    if model in APIConstants.MODEL_MAPPING:
        return APIConstants.MODEL_MAPPING[model]
    if "/" in model:
        return model
    return f"{APIConstants.GATEWAY_MODEL_PREFIX}{model}"


def _cache_fields(block) -> Dict[str, Any]:
    if block.cache_control is None:
        return {}
    return {"cache_control": block.cache_control.model_dump()}


def _media_url(source) -> str:
    if source.type == ContentConstants.URL_SOURCE and source.url:
        return source.url
    return f"data:{source.media_type};base64,{source.data}"


def stringify_tool_result(content: Any) -> str:
    """工具结果：字符串原样传递，其他值做JSON序列化"""
    if isinstance(content, str):
        return content
    if content is None:
        return ""
    return json.dumps(content, ensure_ascii=False)


def _convert_block(block) -> Dict[str, Any]:
    """转换单个非工具内容块为上游内容部件"""
    if isinstance(block, TextBlock):
        return {"type": ContentConstants.TEXT_TYPE, "text": block.text, **_cache_fields(block)}
    if isinstance(block, ThinkingBlock):
        text = f"{ContentConstants.THINKING_START_TAG}{block.thinking}{ContentConstants.THINKING_END_TAG}"
        return {"type": ContentConstants.TEXT_TYPE, "text": text}
    if isinstance(block, ImageBlock):
        return {
            "type": ContentConstants.IMAGE_URL_TYPE,
            "image_url": {"url": _media_url(block.source)},
            **_cache_fields(block),
        }
    if isinstance(block, DocumentBlock):
        return {
            "type": ContentConstants.FILE_TYPE,
            "file": {
                "file_data": block.source.data if block.source.data is not None else block.source.url,
                "media_type": block.source.media_type,
            },
            **_cache_fields(block),
        }
    raise TypeError(f"unsupported content block: {type(block).__name__}")


def _collapse(parts: List[Dict[str, Any]]) -> Union[str, List[Dict[str, Any]]]:
    """只有一个不带缓存标记的纯文本部件时折叠为字符串"""
    if len(parts) == 1 and set(parts[0]) == {"type", "text"} and parts[0]["type"] == ContentConstants.TEXT_TYPE:
        return parts[0]["text"]
    return parts


def convert_message(message: Message) -> List[Dict[str, Any]]:
    """
    转换一条消息，可能产生多条上游消息

    tool_result 块各自成为一条 role=tool 消息，排在同一轮其余内容之前；
    tool_use 块汇总到 assistant 消息的 tool_calls 中。

    Args:
        message: Messages API 消息

    Returns:
        上游消息列表
    """
    if isinstance(message.content, str):
        return [{"role": message.role, "content": message.content}]

    tool_messages: List[Dict[str, Any]] = []
    tool_calls: List[Dict[str, Any]] = []
    parts: List[Dict[str, Any]] = []

    for block in message.content:
        if isinstance(block, ToolResultBlock):
            tool_message = {
                "role": "tool",
                "tool_call_id": block.tool_use_id,
                "content": stringify_tool_result(block.content),
            }
            if block.is_error:
                tool_message["is_error"] = True
            tool_messages.append(tool_message)
        elif isinstance(block, ToolUseBlock):
            tool_calls.append({
                "id": block.id,
                "type": ContentConstants.FUNCTION_TYPE,
                "function": {"name": block.name, "arguments": dump_json(block.input)},
            })
        else:
            parts.append(_convert_block(block))

    converted = list(tool_messages)
    if parts or tool_calls or not tool_messages:
        upstream_message: Dict[str, Any] = {"role": message.role, "content": _collapse(parts) if parts else ""}
        if tool_calls:
            upstream_message["tool_calls"] = tool_calls
            if not parts:
                upstream_message["content"] = None
        converted.append(upstream_message)
    return converted


def convert_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    converted = []
    for message in messages:
        converted.extend(convert_message(message))
    return converted


def convert_system(system: Optional[Union[str, List[SystemTextBlock]]]) -> List[Dict[str, Any]]:
    """
    转换系统提示

    带缓存标记的分段必须保持独立，因此逐段生成系统消息；
    否则合并为单条系统消息。
    """
    if not system:
        return []
    if isinstance(system, str):
        return [{"role": "system", "content": system}]

    if not any(segment.cache_control for segment in system):
        joined = ContentConstants.SYSTEM_SEPARATOR.join(segment.text for segment in system)
        return [{"role": "system", "content": joined}]

    return [
        {
            "role": "system",
            "content": [{"type": ContentConstants.TEXT_TYPE, "text": segment.text, **_cache_fields(segment)}],
        }
        for segment in system
    ]


def build_gateway_payload(request: MessagesRequest) -> Dict[str, Any]:
    """构建网关 chat-completions 请求负载"""
    messages = convert_system(request.system) + convert_messages(request.messages)

    payload: Dict[str, Any] = {
        "model": map_model_to_gateway(request.model),
        "messages": messages,
        "max_tokens": request.max_tokens,
        "stream": request.stream,
    }
    if request.stream:
        payload["stream_options"] = {"include_usage": True}
    if request.temperature is not None:
        payload["temperature"] = request.temperature
    if request.top_p is not None:
        payload["top_p"] = request.top_p
    if request.top_k is not None:
        payload["top_k"] = request.top_k
    if request.stop_sequences:
        payload["stop"] = request.stop_sequences

    tools = convert_tools(request.tools)
    if tools:
        payload["tools"] = tools
        tool_choice = convert_tool_choice(request.tool_choice)
        if tool_choice is not None:
            payload["tool_choice"] = tool_choice

    if request.thinking and request.thinking.type == "enabled":
        payload["providerOptions"] = {
            "anthropic": {
                "thinking": {"type": "enabled", "budgetTokens": request.thinking.budget_tokens}
            }
        }

    logger.info(LogMessages.PAYLOAD_BUILT.format(payload["model"], len(messages)))
    return payload
