"""
自定义异常类模块
统一管理所有自定义异常
"""
from typing import Optional

from gateway_bridge.constants import APIConstants, ErrorTypes


class GatewayProxyError(Exception):
    """代理服务基础异常类"""
    def __init__(self, message: str, error_type: str = ErrorTypes.API_ERROR, status_code: int = 500):
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        super().__init__(self.message)

    def to_envelope(self) -> dict:
        """渲染为 Messages API 错误信封"""
        return {
            "type": "error",
            "error": {
                "type": self.error_type,
                "message": self.message
            }
        }

class ConfigurationError(GatewayProxyError):
    """配置错误异常"""
    def __init__(self, message: str):
        super().__init__(message, ErrorTypes.CONFIGURATION, APIConstants.HTTP_INTERNAL_ERROR)

class InvalidRequestError(GatewayProxyError):
    """请求格式错误异常"""
    def __init__(self, message: str):
        super().__init__(message, ErrorTypes.INVALID_REQUEST, APIConstants.HTTP_BAD_REQUEST)

class AuthenticationError(GatewayProxyError):
    """认证错误异常"""
    def __init__(self, message: str = "Invalid API key provided"):
        super().__init__(message, ErrorTypes.AUTHENTICATION, APIConstants.HTTP_UNAUTHORIZED)

class UpstreamError(GatewayProxyError):
    """上游服务错误异常"""
    def __init__(
        self,
        message: str,
        status_code: int = APIConstants.HTTP_BAD_GATEWAY,
        error_type: Optional[str] = None,
        upstream_type: Optional[str] = None,
    ):
        self.upstream_type = upstream_type
        if error_type is None:
            error_type = (
                ErrorTypes.INVALID_REQUEST if status_code == APIConstants.HTTP_BAD_REQUEST
                else ErrorTypes.API_ERROR
            )
        super().__init__(message, error_type, status_code)

class TimeoutError(GatewayProxyError):
    """超时错误异常"""
    def __init__(self, message: str = "Upstream request timed out"):
        super().__init__(message, ErrorTypes.TIMEOUT, APIConstants.HTTP_GATEWAY_TIMEOUT)

class QuotaExhaustedError(GatewayProxyError):
    """所有凭证额度耗尽异常"""
    def __init__(self, message: str, next_reset: str):
        self.next_reset = next_reset
        super().__init__(message, ErrorTypes.QUOTA_EXHAUSTED, APIConstants.HTTP_TOO_MANY_REQUESTS)

    def to_envelope(self) -> dict:
        envelope = super().to_envelope()
        envelope["error"]["nextReset"] = self.next_reset
        return envelope
