"""
Messages Gateway Proxy 服务入口
提供 Messages API 兼容的接口，代理到 OpenAI 兼容的模型网关
"""
import sys
import logging

from gateway_bridge.config import Config
from gateway_bridge.app import create_app
from gateway_bridge.utils import configure_logging_encoding, safe_str

# 初始化配置
try:
    Config.validate()
    Config.setup_logging()
    # 配置日志编码以支持Unicode字符
    configure_logging_encoding()
except Exception as e:
    print(f"配置错误: {safe_str(e)}")
    sys.exit(1)

logger = logging.getLogger(__name__)

app = create_app(Config)

if __name__ == "__main__":
    import uvicorn

    # 配置日志级别
    log_level = "debug" if Config.DEBUG_LOGGING else "info"

    logger.info(f"启动服务器: {Config.HOST}:{Config.PORT}")
    logger.info(f"上游网关: {Config.GATEWAY_BASE_URL}")
    logger.info(f"凭证数量: {len(Config.credentials())}")
    logger.info(f"禁用记录存储: {'Redis' if Config.REDIS_URL else '进程内存'}")

    uvicorn.run(
        app,
        host=Config.HOST,
        port=Config.PORT,
        access_log=Config.ENABLE_ACCESS_LOG,
        log_level=log_level
    )
