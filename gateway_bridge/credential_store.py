"""
凭证禁用记录存储模块
基于 Redis 的凭证禁用记录存储，由所有代理实例共享
"""
import json
import logging
import time
from typing import Dict, Optional, Protocol, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    """远程键值存储接口：读、带过期时间写、删"""

    async def get_record(self, key: str) -> Optional[dict]: ...

    async def set_record(self, key: str, record: dict, ttl_seconds: int) -> None: ...

    async def delete_record(self, key: str) -> None: ...


class RedisCredentialStore:
    """基于 Redis 的禁用记录存储"""

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    @classmethod
    def from_url(cls, url: str) -> "RedisCredentialStore":
        return cls(redis.from_url(url, decode_responses=True))

    async def get_record(self, key: str) -> Optional[dict]:
        raw = await self.redis.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set_record(self, key: str, record: dict, ttl_seconds: int) -> None:
        await self.redis.set(key, json.dumps(record), ex=ttl_seconds)

    async def delete_record(self, key: str) -> None:
        await self.redis.delete(key)

    async def close(self) -> None:
        await self.redis.aclose()


class InMemoryCredentialStore:
    """
    进程内存储，未配置 REDIS_URL 时使用

    Records expire the same way Redis keys do, but they are only visible to the
    current process.
    """

    def __init__(self, clock=time.time):
        self._records: Dict[str, Tuple[str, float]] = {}
        self._clock = clock

    async def get_record(self, key: str) -> Optional[dict]:
        entry = self._records.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if self._clock() >= expires_at:
            del self._records[key]
            return None
        return json.loads(raw)

    async def set_record(self, key: str, record: dict, ttl_seconds: int) -> None:
        self._records[key] = (json.dumps(record), self._clock() + ttl_seconds)

    async def delete_record(self, key: str) -> None:
        self._records.pop(key, None)

    async def close(self) -> None:
        self._records.clear()


def build_credential_store(redis_url: str):
    """根据配置选择存储实现"""
    if redis_url:
        logger.info("使用 Redis 存储凭证禁用记录")
        return RedisCredentialStore.from_url(redis_url)
    logger.warning("未配置 REDIS_URL，凭证禁用记录仅保存在当前进程内")
    return InMemoryCredentialStore()
