"""
工具函数模块
包含通用的工具函数
"""
import json
import logging
import sys
import uuid

from gateway_bridge.constants import APIConstants, CredentialConstants


def safe_str(obj) -> str:
    """
    安全地将对象转换为字符串，处理Unicode编码问题

    Args:
        obj: 需要转换为字符串的对象

    Returns:
        str: 安全转换后的字符串
    """
    try:
        if isinstance(obj, str):
            return obj
        elif isinstance(obj, bytes):
            return obj.decode('utf-8', errors='replace')
        else:
            return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return '<unprintable object>'


def configure_logging_encoding():
    """
    配置日志系统以支持UTF-8编码，避免ASCII编码错误
    """
    try:
        if hasattr(sys.stdout, 'reconfigure'):
            sys.stdout.reconfigure(encoding='utf-8', errors='replace')
        if hasattr(sys.stderr, 'reconfigure'):
            sys.stderr.reconfigure(encoding='utf-8', errors='replace')

        root_logger = logging.getLogger()
        for handler in root_logger.handlers:
            if hasattr(handler, 'stream'):
                if hasattr(handler.stream, 'reconfigure'):
                    handler.stream.reconfigure(encoding='utf-8', errors='replace')

    except Exception as e:
        print(f"配置日志编码时出错: {e}")


def generate_message_id() -> str:
    """生成 Messages API 响应ID"""
    return f"{APIConstants.MESSAGE_ID_PREFIX}{uuid.uuid4().hex[:24]}"


def generate_tool_use_id() -> str:
    return f"{APIConstants.TOOL_USE_ID_PREFIX}{uuid.uuid4().hex[:12]}"


def mask_credential(credential: str) -> str:
    """只保留凭证末尾几位，用于日志和管理接口"""
    visible = CredentialConstants.MASK_VISIBLE_CHARS
    if len(credential) <= visible:
        return "*" * len(credential)
    return "*" * 8 + credential[-visible:]


def dump_json(data) -> str:
    """紧凑的JSON序列化，保留非ASCII字符"""
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))
