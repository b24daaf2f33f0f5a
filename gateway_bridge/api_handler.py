"""
API处理模块
处理 /v1/messages 的主要逻辑：凭证轮询、额度耗尽切换、流式与非流式响应
"""
import logging
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, StreamingResponse

from gateway_bridge.constants import APIConstants, HeaderConstants, LogMessages
from gateway_bridge.credential_manager import CredentialManager
from gateway_bridge.exceptions import AuthenticationError, QuotaExhaustedError
from gateway_bridge.gateway_client import GatewayClient
from gateway_bridge.message_converter import build_gateway_payload
from gateway_bridge.models import MessagesRequest, StreamError, UpstreamEvent
from gateway_bridge.response_processor import ResponseProcessor
from gateway_bridge.utils import mask_credential, safe_str

logger = logging.getLogger(__name__)


class APIHandler:
    """API处理器"""

    def __init__(
        self,
        config,
        credential_manager: CredentialManager,
        client_factory: Optional[Callable[[str], GatewayClient]] = None,
    ):
        self.config = config
        self.credential_manager = credential_manager
        self.response_processor = ResponseProcessor()
        self.client_factory = client_factory or (lambda credential: GatewayClient(credential, config))

    def validate_api_key(self, http_request: Request) -> bool:
        """验证入站共享密钥（未配置时不校验）"""
        expected = self.config.PROXY_API_KEY
        if not expected:
            return True
        api_key = http_request.headers.get(HeaderConstants.X_API_KEY, "")
        if not api_key:
            authorization = http_request.headers.get(HeaderConstants.AUTHORIZATION, "")
            if authorization.startswith(APIConstants.BEARER_PREFIX):
                api_key = authorization[APIConstants.BEARER_PREFIX_LENGTH:]
        return api_key == expected

    async def messages(self, request: MessagesRequest, http_request: Request):
        """处理消息请求"""
        if not self.validate_api_key(http_request):
            raise AuthenticationError()

        logger.info(LogMessages.REQUEST_RECEIVED.format(
            request.model, len(request.messages), request.stream, len(request.tools or [])
        ))
        payload = build_gateway_payload(request)

        if request.stream:
            return await self._handle_stream_response(request, payload, http_request)
        return await self._handle_non_stream_response(request, payload)

    def _exhausted(self, last_error: Optional[Exception] = None) -> QuotaExhaustedError:
        next_reset = self.credential_manager.next_reset()
        if last_error is None:
            logger.error(LogMessages.NO_CANDIDATES.format(next_reset))
            message = "All upstream credentials have exhausted their quota"
        else:
            logger.error(LogMessages.ALL_EXHAUSTED.format(safe_str(last_error)))
            message = getattr(last_error, "message", None) or safe_str(last_error)
        return QuotaExhaustedError(message, next_reset)

    async def dispatch(self, attempt: Callable[[GatewayClient], Awaitable[Any]]) -> Any:
        """
        按候选顺序逐个凭证尝试上游调用

        非额度错误立即抛出；额度耗尽时禁用该凭证并尝试下一个；
        全部耗尽时抛出 QuotaExhaustedError。

        Args:
            attempt: 接收网关客户端并执行一次上游调用的协程函数

        Returns:
            第一次成功调用的结果
        """
        candidates = self.credential_manager.get_candidates()
        if not candidates:
            raise self._exhausted()

        last_error: Optional[Exception] = None
        for position, credential in enumerate(candidates, start=1):
            masked = mask_credential(credential)
            logger.info(LogMessages.ATTEMPT.format(masked, position, len(candidates)))
            try:
                result = await attempt(self.client_factory(credential))
            except Exception as e:
                if not self.credential_manager.is_quota_error(e):
                    logger.warning(LogMessages.NON_QUOTA_FAILURE.format(masked, safe_str(e)))
                    raise
                logger.warning(LogMessages.QUOTA_EXHAUSTED.format(masked, safe_str(e)))
                await self.credential_manager.mark_exhausted(credential, safe_str(e))
                last_error = e
                continue

            logger.info(LogMessages.ATTEMPT_SUCCESS.format(masked))
            return result

        raise self._exhausted(last_error)

    async def _handle_non_stream_response(self, request: MessagesRequest, payload: Dict[str, Any]) -> JSONResponse:
        """处理非流式响应"""
        completion = await self.dispatch(lambda client: client.complete(payload))
        return JSONResponse(content=self.response_processor.create_message_response(completion, request.model))

    async def _open_stream(self, client: GatewayClient, payload: Dict[str, Any]) -> AsyncIterator[UpstreamEvent]:
        """
        打开上游流并预取第一个事件

        让连接阶段的错误（以及首个事件就是错误的情况）仍可以切换凭证。
        """
        events = client.stream(payload)
        try:
            first = await events.__anext__()
        except StopAsyncIteration:
            return _replay(None, events)
        except BaseException:
            await events.aclose()
            raise

        if isinstance(first, StreamError) and self.credential_manager.is_quota_error(first):
            await events.aclose()
            raise QuotaExhaustedError(first.message, self.credential_manager.next_reset())
        return _replay(first, events)

    async def _handle_stream_response(
        self,
        request: MessagesRequest,
        payload: Dict[str, Any],
        http_request: Request,
    ) -> StreamingResponse:
        """处理流式响应"""
        events = await self.dispatch(lambda client: self._open_stream(client, payload))
        reframer = self.response_processor.create_stream_reframer(
            request.model, is_disconnected=http_request.is_disconnected
        )
        return StreamingResponse(
            reframer.render(events),
            media_type=HeaderConstants.TEXT_EVENT_STREAM,
            headers={
                HeaderConstants.CACHE_CONTROL: HeaderConstants.NO_CACHE,
                HeaderConstants.CONNECTION: HeaderConstants.KEEP_ALIVE,
                HeaderConstants.X_ACCEL_BUFFERING: HeaderConstants.NO_BUFFERING
            }
        )


async def _replay(
    first: Optional[UpstreamEvent],
    rest: AsyncGenerator[UpstreamEvent, None],
) -> AsyncGenerator[UpstreamEvent, None]:
    """先产出预取的事件，再继续原始流"""
    try:
        if first is not None:
            yield first
        async for event in rest:
            yield event
    finally:
        await rest.aclose()
