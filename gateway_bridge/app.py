"""
FastAPI 应用工厂
组装路由、CORS、异常处理和凭证管理器
"""
import time
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from gateway_bridge.api_handler import APIHandler
from gateway_bridge.config import Config
from gateway_bridge.constants import APIConstants, ErrorTypes
from gateway_bridge.credential_manager import CredentialManager
from gateway_bridge.exceptions import GatewayProxyError, InvalidRequestError
from gateway_bridge.gateway_client import GatewayClient
from gateway_bridge.models import MessagesRequest
from gateway_bridge.utils import safe_str

logger = logging.getLogger(__name__)


def _error_response(error: GatewayProxyError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_envelope())


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ()) if p != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid request body"


def create_app(
    config=Config,
    credential_manager: Optional[CredentialManager] = None,
    client_factory: Optional[Callable[[str], GatewayClient]] = None,
) -> FastAPI:
    """
    创建FastAPI应用

    Args:
        config: 配置类（默认读取环境变量的 Config）
        credential_manager: 凭证管理器，未提供时使用 config 的单例
        client_factory: 按凭证创建网关客户端的函数，测试时可替换

    Returns:
        配置好的 FastAPI 应用
    """
    manager = credential_manager or config.get_credential_manager()
    api_handler = APIHandler(config, manager, client_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{APIConstants.SERVICE_NAME} 启动中...")
        yield
        close = getattr(manager.store, "close", None)
        if close is not None:
            await close()
        logger.info(f"{APIConstants.SERVICE_NAME} 关闭中...")

    app = FastAPI(
        title=APIConstants.SERVICE_NAME,
        description="Messages API 兼容的模型网关代理服务",
        version=APIConstants.VERSION,
        lifespan=lifespan
    )
    app.state.api_handler = api_handler
    app.state.credential_manager = manager

    # CORS配置
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def homepage():
        """首页 - 返回服务状态"""
        return JSONResponse(content={
            "status": "success",
            "message": f"{APIConstants.SERVICE_NAME} is running",
            "version": APIConstants.VERSION,
            "features": [
                "凭证轮询和额度耗尽自动切换",
                "禁用记录跨实例共享，每月自动恢复",
                "流式与非流式 Messages API"
            ],
            "endpoints": {
                "messages": APIConstants.MESSAGES_PATH,
                "health": "/health",
                "admin": {
                    "credential_status": "/admin/credentials/status",
                    "credential_stats": "/admin/credentials/stats"
                }
            }
        })

    @app.get("/health")
    async def health_check():
        """健康检查"""
        stats = manager.get_stats()
        return JSONResponse(content={
            "status": "healthy",
            "timestamp": int(time.time()),
            "config": {
                "gateway_base_url": config.GATEWAY_BASE_URL,
                "shared_store": bool(config.REDIS_URL),
                "debug_logging": config.DEBUG_LOGGING
            },
            "credentials": {
                "total": stats["total_credentials"],
                "active": stats["active_credentials"],
                "disabled": stats["disabled_credentials"]
            },
            "next_reset": manager.next_reset()
        })

    @app.get("/favicon.ico")
    async def favicon():
        """返回favicon"""
        return Response(content="", media_type="image/x-icon")

    @app.post(APIConstants.MESSAGES_PATH)
    async def messages(request: MessagesRequest, http_request: Request):
        """处理 Messages API 请求"""
        return await api_handler.messages(request, http_request)

    @app.get("/admin/credentials/status")
    async def credential_status():
        """读取共享存储中的凭证禁用状态（凭证已脱敏）"""
        statuses = await manager.get_all_statuses()
        return JSONResponse(content={
            "status": "success",
            "next_reset": manager.next_reset(),
            "data": [s.model_dump() for s in statuses]
        })

    @app.get("/admin/credentials/stats")
    async def credential_stats():
        """获取凭证池统计信息"""
        return JSONResponse(content={
            "status": "success",
            "data": manager.get_stats()
        })

    @app.exception_handler(GatewayProxyError)
    async def proxy_exception_handler(request: Request, exc: GatewayProxyError):
        """处理自定义代理异常"""
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """请求体校验失败统一返回 400"""
        return _error_response(InvalidRequestError(_validation_message(exc)))

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc):
        """处理404错误"""
        return _error_response(
            GatewayProxyError("Not Found", ErrorTypes.NOT_FOUND, APIConstants.HTTP_NOT_FOUND)
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"未处理的异常: {safe_str(exc)}", exc_info=True)
        return _error_response(GatewayProxyError(safe_str(exc)))

    return app
