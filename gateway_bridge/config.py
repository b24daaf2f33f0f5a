"""
配置管理模块
统一管理所有环境变量和配置项
"""
import os
import logging
from typing import List, Optional
from dotenv import load_dotenv

from gateway_bridge.constants import CredentialConstants
from gateway_bridge.credential_manager import CredentialManager, parse_credentials
from gateway_bridge.credential_store import build_credential_store
from gateway_bridge.exceptions import ConfigurationError

# 加载环境变量
load_dotenv()

class Config:
    """应用配置类"""

    # 入站认证配置（可选的共享密钥）
    PROXY_API_KEY: str = os.getenv("PROXY_API_KEY", "")

    # 上游网关配置
    GATEWAY_BASE_URL: str = os.getenv("GATEWAY_BASE_URL", "https://ai-gateway.vercel.sh/v1")
    GATEWAY_API_KEYS: str = os.getenv("GATEWAY_API_KEYS", "")
    GATEWAY_API_KEY: str = os.getenv("GATEWAY_API_KEY", "")

    # 凭证禁用记录存储
    REDIS_URL: str = os.getenv("REDIS_URL", "")
    DISABLED_KEY_TTL_DAYS: int = int(os.getenv("DISABLED_KEY_TTL_DAYS", str(CredentialConstants.DEFAULT_TTL_DAYS)))
    QUOTA_RESET_DAY: int = int(os.getenv("QUOTA_RESET_DAY", str(CredentialConstants.DEFAULT_RESET_DAY)))
    QUOTA_ERROR_KEYWORDS: List[str] = [
        k.strip().lower()
        for k in os.getenv("QUOTA_ERROR_KEYWORDS", ",".join(CredentialConstants.QUOTA_ERROR_KEYWORDS)).split(",")
        if k.strip()
    ]

    # 凭证管理器实例（延迟初始化）
    _credential_manager: Optional[CredentialManager] = None

    # 服务器配置
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8001"))

    # 功能开关
    DEBUG_LOGGING: bool = os.getenv("DEBUG_LOGGING", "false").lower() == "true"
    ENABLE_ACCESS_LOG: bool = os.getenv("ENABLE_ACCESS_LOG", "true").lower() == "true"

    # 性能配置
    REQUEST_TIMEOUT: float = float(os.getenv("REQUEST_TIMEOUT", "600"))
    CONNECT_TIMEOUT: float = float(os.getenv("CONNECT_TIMEOUT", "10"))
    MAX_KEEPALIVE_CONNECTIONS: int = int(os.getenv("MAX_KEEPALIVE_CONNECTIONS", "20"))
    MAX_CONNECTIONS: int = int(os.getenv("MAX_CONNECTIONS", "100"))

    # 日志配置
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS配置
    CORS_ORIGINS: List[str] = (
        os.getenv("CORS_ORIGINS", "*").split(",")
        if os.getenv("CORS_ORIGINS", "*") != "*"
        else ["*"]
    )

    @classmethod
    def credentials(cls) -> List[str]:
        """解析配置中的所有上游凭证"""
        return parse_credentials(cls.GATEWAY_API_KEYS, cls.GATEWAY_API_KEY)

    @classmethod
    def validate(cls) -> None:
        """验证必需的配置项"""
        if not cls.credentials():
            raise ConfigurationError("错误：GATEWAY_API_KEYS 或 GATEWAY_API_KEY 环境变量未设置。请至少提供一个上游凭证。")

        if not cls.GATEWAY_BASE_URL:
            raise ConfigurationError("错误：GATEWAY_BASE_URL 不能为空")

        # 验证数值范围
        if cls.PORT < 1 or cls.PORT > 65535:
            raise ConfigurationError(f"错误：PORT 值 {cls.PORT} 不在有效范围内 (1-65535)")

        if cls.REQUEST_TIMEOUT <= 0:
            raise ConfigurationError(f"错误：REQUEST_TIMEOUT 必须大于0，当前值: {cls.REQUEST_TIMEOUT}")

        if not 1 <= cls.QUOTA_RESET_DAY <= 28:
            raise ConfigurationError(f"错误：QUOTA_RESET_DAY 必须在 1-28 之间，当前值: {cls.QUOTA_RESET_DAY}")

        if cls.DISABLED_KEY_TTL_DAYS < 32:
            raise ConfigurationError(f"错误：DISABLED_KEY_TTL_DAYS 必须覆盖一个完整的重置周期，当前值: {cls.DISABLED_KEY_TTL_DAYS}")

    @classmethod
    def setup_logging(cls) -> None:
        """设置日志配置"""
        level_map = {
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR
        }

        log_level = level_map.get(cls.LOG_LEVEL, logging.INFO)
        if cls.DEBUG_LOGGING:
            log_level = logging.DEBUG
        logging.basicConfig(
            level=log_level,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    @classmethod
    def get_credential_manager(cls) -> CredentialManager:
        """获取凭证管理器实例（单例模式）"""
        if cls._credential_manager is None:
            cls._credential_manager = CredentialManager(
                credentials=cls.credentials(),
                store=build_credential_store(cls.REDIS_URL),
                quota_keywords=cls.QUOTA_ERROR_KEYWORDS,
                ttl_days=cls.DISABLED_KEY_TTL_DAYS,
                reset_day=cls.QUOTA_RESET_DAY,
            )
        return cls._credential_manager

    @classmethod
    def reset_credential_manager(cls) -> None:
        """丢弃当前凭证管理器（重新读取凭证配置）"""
        cls._credential_manager = None
        cls.get_credential_manager()
