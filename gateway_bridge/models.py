"""
数据模型定义
Messages API 请求/响应模型，以及上游网关的补全与流式事件模型
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, PositiveInt, model_validator


class CacheControl(BaseModel):
    type: str = "ephemeral"


class MediaSource(BaseModel):
    """图像/文档的内联数据源"""
    type: str = "base64"
    media_type: Optional[str] = None
    data: Optional[str] = None
    url: Optional[str] = None


# --- Content Blocks ---
class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str
    cache_control: Optional[CacheControl] = None


class ImageBlock(BaseModel):
    type: Literal["image"] = "image"
    source: MediaSource
    cache_control: Optional[CacheControl] = None


class DocumentBlock(BaseModel):
    type: Literal["document"] = "document"
    source: MediaSource
    cache_control: Optional[CacheControl] = None


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ThinkingBlock(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: Optional[str] = None


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: Any = None
    is_error: Optional[bool] = None
    cache_control: Optional[CacheControl] = None


ContentBlock = Annotated[
    Union[TextBlock, ImageBlock, DocumentBlock, ToolUseBlock, ToolResultBlock, ThinkingBlock],
    Field(discriminator="type"),
]


class Message(BaseModel):
    role: Literal["user", "assistant"]
    content: Union[str, List[ContentBlock]]


class SystemTextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str
    cache_control: Optional[CacheControl] = None


class ToolDefinition(BaseModel):
    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object"})


class ThinkingConfig(BaseModel):
    type: Literal["enabled", "disabled"]
    budget_tokens: Optional[PositiveInt] = None

    @model_validator(mode="after")
    def require_budget_when_enabled(self) -> "ThinkingConfig":
        """启用思考时必须给出预算，原样传给上游"""
        if self.type == "enabled" and self.budget_tokens is None:
            raise ValueError("budget_tokens is required when thinking is enabled")
        return self


class MessagesRequest(BaseModel):
    model: str
    messages: List[Message]
    max_tokens: PositiveInt
    system: Optional[Union[str, List[SystemTextBlock]]] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop_sequences: Optional[List[str]] = None
    stream: bool = False
    tools: Optional[List[ToolDefinition]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None
    thinking: Optional[ThinkingConfig] = None
    metadata: Optional[Dict[str, Any]] = None


# --- Messages Response ---
class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: Optional[int] = None
    cache_read_input_tokens: Optional[int] = None


class MessagesResponse(BaseModel):
    id: str
    type: str = "message"
    role: str = "assistant"
    content: List[Dict[str, Any]]
    model: str
    stop_reason: Optional[str] = None
    stop_sequence: Optional[str] = None
    usage: Usage


# --- Upstream gateway ---
class UpstreamUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cache_creation_tokens: Optional[int] = None
    cache_read_tokens: Optional[int] = None


class UpstreamToolCall(BaseModel):
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class UpstreamCompletion(BaseModel):
    """上游单次补全结果"""
    id: Optional[str] = None
    text: str = ""
    reasoning: Optional[str] = None
    tool_calls: List[UpstreamToolCall] = Field(default_factory=list)
    finish_reason: Optional[str] = None
    stop_sequence: Optional[str] = None
    usage: UpstreamUsage = Field(default_factory=UpstreamUsage)


class ReasoningDelta(BaseModel):
    kind: Literal["reasoning-delta"] = "reasoning-delta"
    text: str


class TextDelta(BaseModel):
    kind: Literal["text-delta"] = "text-delta"
    text: str


class ToolCall(BaseModel):
    """一次性给出完整参数的工具调用"""
    kind: Literal["tool-call"] = "tool-call"
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolCallStart(BaseModel):
    kind: Literal["tool-call-start"] = "tool-call-start"
    id: str
    name: str


class ToolCallDelta(BaseModel):
    kind: Literal["tool-call-delta"] = "tool-call-delta"
    id: str
    arguments_delta: str


class ToolCallEnd(BaseModel):
    kind: Literal["tool-call-end"] = "tool-call-end"
    id: str


class Finish(BaseModel):
    kind: Literal["finish"] = "finish"
    finish_reason: Optional[str] = None
    stop_sequence: Optional[str] = None
    usage: Optional[UpstreamUsage] = None


class StreamError(BaseModel):
    kind: Literal["error"] = "error"
    message: str
    error_type: Optional[str] = None


UpstreamEvent = Union[
    ReasoningDelta, TextDelta, ToolCall, ToolCallStart, ToolCallDelta, ToolCallEnd, Finish, StreamError
]


class CredentialStatus(BaseModel):
    """凭证状态（管理接口使用）"""
    credential: str
    available: bool
    disabled_at: Optional[int] = None
    reason: Optional[str] = None
    reset_month: Optional[int] = None
