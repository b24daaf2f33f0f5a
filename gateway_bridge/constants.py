"""
常量定义模块
统一管理代理中使用的所有常量和硬编码字符串
"""

# API相关常量
class APIConstants:
    SERVICE_NAME = "Messages Gateway Proxy"
    VERSION = "2.2.0"

    MESSAGES_PATH = "/v1/messages"
    UPSTREAM_COMPLETIONS_PATH = "/chat/completions"

    # 模型映射
    GATEWAY_MODEL_PREFIX = "anthropic/"
    MODEL_MAPPING = {
        "claude-sonnet-4-20250514": "anthropic/claude-sonnet-4-20250514",
        "claude-sonnet-4-0": "anthropic/claude-sonnet-4-20250514",
        "claude-3-5-sonnet-20241022": "anthropic/claude-3-5-sonnet-20241022",
        "claude-3-5-sonnet-latest": "anthropic/claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022": "anthropic/claude-3-5-haiku-20241022",
        "claude-3-5-haiku-latest": "anthropic/claude-3-5-haiku-20241022",
        "claude-3-opus-20240229": "anthropic/claude-3-opus-20240229",
        "claude-3-opus-latest": "anthropic/claude-3-opus-20240229",
        "claude-3-sonnet-20240229": "anthropic/claude-3-sonnet-20240229",
        "claude-3-haiku-20240307": "anthropic/claude-3-haiku-20240307",
    }

    # HTTP状态码
    HTTP_OK = 200
    HTTP_BAD_REQUEST = 400
    HTTP_UNAUTHORIZED = 401
    HTTP_NOT_FOUND = 404
    HTTP_TOO_MANY_REQUESTS = 429
    HTTP_INTERNAL_ERROR = 500
    HTTP_BAD_GATEWAY = 502
    HTTP_GATEWAY_TIMEOUT = 504

    # 认证相关
    BEARER_PREFIX = "Bearer "
    BEARER_PREFIX_LENGTH = 7

    MESSAGE_ID_PREFIX = "msg_"
    TOOL_USE_ID_PREFIX = "toolu_"


# 流式事件名称
class EventConstants:
    MESSAGE_START = "message_start"
    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    CONTENT_BLOCK_STOP = "content_block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"
    ERROR = "error"

    TEXT_DELTA = "text_delta"
    THINKING_DELTA = "thinking_delta"
    INPUT_JSON_DELTA = "input_json_delta"

    # 上游 (OpenAI兼容) SSE 标记
    UPSTREAM_DATA_PREFIX = "data:"
    UPSTREAM_DONE_MARKER = "[DONE]"


# 停止原因
class StopReasons:
    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    TOOL_USE = "tool_use"

    # 上游 finish_reason
    UPSTREAM_STOP = "stop"
    UPSTREAM_LENGTH = "length"
    UPSTREAM_TOOL_CALLS = "tool_calls"
    UPSTREAM_FUNCTION_CALL = "function_call"


# 错误类型
class ErrorTypes:
    INVALID_REQUEST = "invalid_request_error"
    AUTHENTICATION = "authentication_error"
    API_ERROR = "api_error"
    QUOTA_EXHAUSTED = "quota_exhausted_error"
    CONFIGURATION = "configuration_error"
    TIMEOUT = "timeout_error"
    NOT_FOUND = "not_found_error"


# 内容处理相关常量
class ContentConstants:
    TEXT_TYPE = "text"
    IMAGE_TYPE = "image"
    DOCUMENT_TYPE = "document"
    TOOL_USE_TYPE = "tool_use"
    TOOL_RESULT_TYPE = "tool_result"
    THINKING_TYPE = "thinking"

    # 上游内容类型
    IMAGE_URL_TYPE = "image_url"
    FILE_TYPE = "file"
    FUNCTION_TYPE = "function"
    BASE64_SOURCE = "base64"
    URL_SOURCE = "url"

    # 思考内容分隔符
    THINKING_START_TAG = "<thinking>"
    THINKING_END_TAG = "</thinking>"

    SYSTEM_SEPARATOR = "\n\n"
    STREAM_ERROR_PLACEHOLDER = "[stream interrupted: {}]"


# 凭证管理相关常量
class CredentialConstants:
    DISABLED_KEY_PREFIX = "disabled_key:"
    DEFAULT_TTL_DAYS = 35
    DEFAULT_RESET_DAY = 15
    CREDENTIAL_DELIMITERS = r"[,;\n]"
    MASK_VISIBLE_CHARS = 4

    QUOTA_ERROR_KEYWORDS = (
        "quota",
        "insufficient",
        "limit",
        "billing",
        "payment",
        "credit",
        "balance",
        "spending limit",
    )


# 日志消息常量
class LogMessages:
    REQUEST_RECEIVED = "📥 收到消息请求: model={}, messages={}, stream={}, tools={}"
    PAYLOAD_BUILT = "🔄 网关请求构建完成: model={}, upstream_messages={}"
    ATTEMPT = "尝试凭证 {} (第{}/{}个候选)"
    ATTEMPT_SUCCESS = "✅ 凭证 {} 请求成功"
    QUOTA_EXHAUSTED = "⛔ 凭证 {} 额度耗尽: {}"
    NON_QUOTA_FAILURE = "❌ 凭证 {} 请求失败 (不重试): {}"
    NO_CANDIDATES = "没有可用的凭证，下次重置时间: {}"
    ALL_EXHAUSTED = "所有凭证额度均已耗尽，最后错误: {}"
    CREDENTIALS_LOADED = "成功加载 {} 个凭证"
    CREDENTIAL_DISABLED = "凭证已禁用 (digest={}...): {}"
    CREDENTIAL_RESET = "凭证额度已重置 (digest={}...), 记录月份: {}"
    STORE_WRITE_FAILED = "写入凭证禁用记录失败 (digest={}...): {}"
    STORE_READ_FAILED = "读取凭证禁用记录失败 (digest={}...): {}"
    TOOL_CONVERTED = "🔧 已转换工具: {}"
    TOOL_CONVERSION_FAILED = "工具 {} 的参数模式转换失败，使用空模式: {}"
    STREAM_ERROR = "流式响应处理错误: {}"
    STREAM_DISCONNECTED = "客户端已断开，停止流式输出"
    TOOL_DELTA_DROPPED = "⚠️ 工具调用 {} 的内容块(index={})已关闭，丢弃参数增量，该工具调用的 input JSON 将被截断: {}"
    UPSTREAM_STATUS_ERROR = "上游API返回错误状态码: {} - {}"


# HTTP头常量
class HeaderConstants:
    AUTHORIZATION = "Authorization"
    X_API_KEY = "x-api-key"
    CONTENT_TYPE = "Content-Type"
    ACCEPT = "Accept"
    CACHE_CONTROL = "Cache-Control"
    CONNECTION = "Connection"
    X_ACCEL_BUFFERING = "X-Accel-Buffering"

    APPLICATION_JSON = "application/json"
    TEXT_EVENT_STREAM = "text/event-stream"
    NO_CACHE = "no-cache"
    KEEP_ALIVE = "keep-alive"
    NO_BUFFERING = "no"


# 时间相关常量
class TimeConstants:
    ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.000Z"
    MILLIS_MULTIPLIER = 1000
    SECONDS_PER_DAY = 86400
