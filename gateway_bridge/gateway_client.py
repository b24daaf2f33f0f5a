"""
上游网关客户端模块
绑定单个凭证的 OpenAI 兼容网关客户端：单次调用与流式调用
"""
import json
import logging
from typing import Any, AsyncGenerator, Dict, Optional

import httpx

from gateway_bridge.constants import APIConstants, EventConstants, HeaderConstants, LogMessages
from gateway_bridge.exceptions import TimeoutError as ProxyTimeoutError, UpstreamError
from gateway_bridge.models import (
    Finish, ReasoningDelta, StreamError, TextDelta, ToolCallDelta, ToolCallEnd,
    ToolCallStart, UpstreamCompletion, UpstreamEvent, UpstreamToolCall, UpstreamUsage,
)
from gateway_bridge.utils import generate_tool_use_id, safe_str

logger = logging.getLogger(__name__)


def parse_usage(usage: Optional[Dict[str, Any]]) -> Optional[UpstreamUsage]:
    """解析上游 usage；缓存字段只在上游给出时保留"""
    if not usage:
        return None
    details = usage.get("prompt_tokens_details") or {}
    cache_read = usage.get("cache_read_input_tokens", details.get("cached_tokens"))
    cache_creation = usage.get("cache_creation_input_tokens", details.get("cache_creation_tokens"))
    return UpstreamUsage(
        prompt_tokens=usage.get("prompt_tokens") or 0,
        completion_tokens=usage.get("completion_tokens") or 0,
        cache_read_tokens=cache_read,
        cache_creation_tokens=cache_creation,
    )


def parse_arguments(arguments: Any) -> Dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        logger.warning(f"无法解析工具调用参数: {safe_str(arguments)}")
        return {}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _reasoning_of(payload: Dict[str, Any]) -> Optional[str]:
    return payload.get("reasoning_content") or payload.get("reasoning")


def parse_completion(body: Dict[str, Any]) -> UpstreamCompletion:
    """将网关 chat-completions 响应解析为 UpstreamCompletion"""
    choices = body.get("choices") or [{}]
    choice = choices[0]
    message = choice.get("message") or {}

    content = message.get("content") or ""
    if isinstance(content, list):
        content = "".join(part.get("text", "") for part in content if isinstance(part, dict))

    tool_calls = []
    for tc in message.get("tool_calls") or []:
        function = tc.get("function") or {}
        tool_calls.append(UpstreamToolCall(
            id=tc.get("id") or generate_tool_use_id(),
            name=function.get("name", ""),
            arguments=parse_arguments(function.get("arguments")),
        ))

    return UpstreamCompletion(
        id=body.get("id"),
        text=content,
        reasoning=_reasoning_of(message),
        tool_calls=tool_calls,
        finish_reason=choice.get("finish_reason"),
        stop_sequence=choice.get("stop_sequence") or message.get("stop_sequence"),
        usage=parse_usage(body.get("usage")) or UpstreamUsage(),
    )


def _error_from_body(status_code: int, text: str) -> UpstreamError:
    message, upstream_type = text, None
    try:
        body = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        body = None
    if isinstance(body, dict) and body.get("error"):
        error = body["error"]
        if isinstance(error, dict):
            message = error.get("message") or text
            upstream_type = error.get("type") or error.get("code")
        else:
            message = safe_str(error)
    return UpstreamError(message or f"Upstream returned HTTP {status_code}", status_code, upstream_type=upstream_type)


class GatewayClient:
    """绑定单个凭证的网关客户端"""

    def __init__(self, credential: str, config, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.credential = credential
        self.config = config
        self.transport = transport
        self.url = config.GATEWAY_BASE_URL.rstrip("/") + APIConstants.UPSTREAM_COMPLETIONS_PATH

    def create_http_client(self) -> httpx.AsyncClient:
        """创建HTTP客户端"""
        base_kwargs = {
            "timeout": httpx.Timeout(timeout=self.config.REQUEST_TIMEOUT, connect=self.config.CONNECT_TIMEOUT),
            "limits": httpx.Limits(
                max_keepalive_connections=self.config.MAX_KEEPALIVE_CONNECTIONS,
                max_connections=self.config.MAX_CONNECTIONS
            ),
            "follow_redirects": True
        }
        if self.transport is not None:
            base_kwargs["transport"] = self.transport
        return httpx.AsyncClient(**base_kwargs)

    def _headers(self, stream: bool) -> Dict[str, str]:
        return {
            HeaderConstants.AUTHORIZATION: f"{APIConstants.BEARER_PREFIX}{self.credential}",
            HeaderConstants.CONTENT_TYPE: HeaderConstants.APPLICATION_JSON,
            HeaderConstants.ACCEPT: HeaderConstants.TEXT_EVENT_STREAM if stream else HeaderConstants.APPLICATION_JSON,
        }

    async def complete(self, payload: Dict[str, Any]) -> UpstreamCompletion:
        """单次调用，返回补全结果"""
        body = dict(payload, stream=False)
        body.pop("stream_options", None)
        client = self.create_http_client()
        try:
            response = await client.post(self.url, json=body, headers=self._headers(False))
            if response.status_code >= 400:
                logger.error(LogMessages.UPSTREAM_STATUS_ERROR.format(response.status_code, safe_str(response.text)))
                raise _error_from_body(response.status_code, response.text)
            return parse_completion(response.json())
        except httpx.TimeoutException as e:
            logger.error(f"请求超时: {e}")
            raise ProxyTimeoutError()
        except httpx.RequestError as e:
            logger.error(f"请求异常: {safe_str(e)}")
            raise UpstreamError(f"Upstream request failed: {safe_str(e)}")
        finally:
            await client.aclose()

    async def stream(self, payload: Dict[str, Any]) -> AsyncGenerator[UpstreamEvent, None]:
        """
        流式调用，按顺序产出上游事件

        连接失败或HTTP错误状态在产出第一个事件之前抛出。
        """
        body = dict(payload, stream=True)
        client = self.create_http_client()
        try:
            async with client.stream("POST", self.url, json=body, headers=self._headers(True)) as response:
                if response.status_code >= 400:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error(LogMessages.UPSTREAM_STATUS_ERROR.format(response.status_code, safe_str(text)))
                    raise _error_from_body(response.status_code, text)

                async for event in self._parse_sse(response):
                    yield event
        except httpx.TimeoutException as e:
            logger.error(f"请求超时: {e}")
            raise ProxyTimeoutError()
        except httpx.RequestError as e:
            logger.error(f"请求异常: {safe_str(e)}")
            raise UpstreamError(f"Upstream request failed: {safe_str(e)}")
        finally:
            await client.aclose()

    async def _parse_sse(self, response: httpx.Response) -> AsyncGenerator[UpstreamEvent, None]:
        """解析 OpenAI 兼容的 SSE 数据行"""
        tool_ids: Dict[int, str] = {}
        open_tool: Optional[str] = None
        finish_reason: Optional[str] = None
        stop_sequence: Optional[str] = None
        usage: Optional[UpstreamUsage] = None

        async for line in response.aiter_lines():
            line = line.strip()
            if not line.startswith(EventConstants.UPSTREAM_DATA_PREFIX):
                continue
            data = line[len(EventConstants.UPSTREAM_DATA_PREFIX):].strip()
            if data == EventConstants.UPSTREAM_DONE_MARKER:
                break
            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"跳过无法解析的SSE数据: {safe_str(data)}")
                continue

            if chunk.get("error"):
                error = chunk["error"]
                if isinstance(error, dict):
                    yield StreamError(message=error.get("message") or safe_str(error), error_type=error.get("type"))
                else:
                    yield StreamError(message=safe_str(error))
                return

            if chunk.get("usage"):
                usage = parse_usage(chunk["usage"])

            for choice in chunk.get("choices") or []:
                delta = choice.get("delta") or {}

                reasoning = _reasoning_of(delta)
                if reasoning:
                    yield ReasoningDelta(text=reasoning)

                if delta.get("content"):
                    yield TextDelta(text=delta["content"])

                for tc in delta.get("tool_calls") or []:
                    index = tc.get("index", 0)
                    function = tc.get("function") or {}
                    if index not in tool_ids:
                        if open_tool is not None:
                            yield ToolCallEnd(id=open_tool)
                        tool_ids[index] = tc.get("id") or generate_tool_use_id()
                        open_tool = tool_ids[index]
                        yield ToolCallStart(id=open_tool, name=function.get("name", ""))
                    if function.get("arguments"):
                        yield ToolCallDelta(id=tool_ids[index], arguments_delta=function["arguments"])

                if choice.get("finish_reason"):
                    finish_reason = choice["finish_reason"]
                    stop_sequence = choice.get("stop_sequence") or stop_sequence

        if open_tool is not None:
            yield ToolCallEnd(id=open_tool)
        yield Finish(finish_reason=finish_reason, stop_sequence=stop_sequence, usage=usage)
