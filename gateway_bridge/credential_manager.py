"""
凭证管理模块
负责管理上游网关的凭证池，实现轮询、额度耗尽检测、禁用与按月自动恢复
"""
import hashlib
import logging
import re
import threading
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Set

import pytz

from gateway_bridge.constants import CredentialConstants, LogMessages, TimeConstants
from gateway_bridge.models import CredentialStatus
from gateway_bridge.utils import mask_credential, safe_str

logger = logging.getLogger(__name__)


def parse_credentials(multi_value: Optional[str], legacy_value: Optional[str] = None) -> List[str]:
    """
    解析分隔的多凭证配置值

    Args:
        multi_value: 逗号/分号/换行分隔的凭证列表
        legacy_value: 旧版单凭证配置，不在列表中时追加到末尾

    Returns:
        去重后、保持原顺序的凭证列表
    """
    credentials: List[str] = []
    for raw in re.split(CredentialConstants.CREDENTIAL_DELIMITERS, multi_value or ""):
        credential = raw.strip()
        if credential and credential not in credentials:
            credentials.append(credential)

    legacy = (legacy_value or "").strip()
    if legacy and legacy not in credentials:
        credentials.append(legacy)
    return credentials


def credential_digest(credential: str) -> str:
    """凭证的不可逆摘要，用作存储键"""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


def utc_now() -> datetime:
    return datetime.now(pytz.utc)


def next_reset_time(now: datetime, reset_day: int = CredentialConstants.DEFAULT_RESET_DAY) -> datetime:
    """当月重置日之前返回当月重置日，否则返回下月重置日（UTC零点）"""
    if now.day < reset_day:
        year, month = now.year, now.month
    elif now.month == 12:
        year, month = now.year + 1, 1
    else:
        year, month = now.year, now.month + 1
    return pytz.utc.localize(datetime(year, month, reset_day))


def format_reset_time(moment: datetime) -> str:
    return moment.astimezone(pytz.utc).strftime(TimeConstants.ISO_FORMAT)


class CredentialManager:
    """凭证管理器 - 支持轮询、额度耗尽禁用和按月重置"""

    def __init__(
        self,
        credentials: List[str],
        store,
        quota_keywords: Optional[Iterable[str]] = None,
        ttl_days: int = CredentialConstants.DEFAULT_TTL_DAYS,
        reset_day: int = CredentialConstants.DEFAULT_RESET_DAY,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        初始化凭证管理器

        Args:
            credentials: 轮询顺序的凭证列表
            store: 远程禁用记录存储
            quota_keywords: 判定额度耗尽的关键字（不区分大小写）
            ttl_days: 禁用记录的过期天数
            reset_day: 每月额度重置日
            clock: 返回当前UTC时间的函数
        """
        self.credentials = list(credentials)
        self.store = store
        self.quota_keywords = [
            k.lower() for k in (quota_keywords or CredentialConstants.QUOTA_ERROR_KEYWORDS)
        ]
        self.ttl_seconds = ttl_days * TimeConstants.SECONDS_PER_DAY
        self.reset_day = reset_day
        self.clock = clock

        self.current_index = 0
        self.disabled_digests: Set[str] = set()
        self.lock = threading.Lock()

        if self.credentials:
            logger.info(LogMessages.CREDENTIALS_LOADED.format(len(self.credentials)))
        else:
            logger.warning("未配置任何上游凭证")

    @staticmethod
    def storage_key(credential: str) -> str:
        return f"{CredentialConstants.DISABLED_KEY_PREFIX}{credential_digest(credential)}"

    def get_candidates(self) -> List[str]:
        """
        获取本次请求的候选凭证列表（轮询顺序）

        跳过本进程已知被禁用的凭证；无论跳过多少个，轮询游标只前进一位。
        不读取远程存储，其他实例禁用的凭证可能仍出现在列表中。
        """
        with self.lock:
            total = len(self.credentials)
            if total == 0:
                return []

            start = self.current_index
            self.current_index = (self.current_index + 1) % total

            candidates = []
            for offset in range(total):
                credential = self.credentials[(start + offset) % total]
                if credential_digest(credential) not in self.disabled_digests:
                    candidates.append(credential)
            return candidates

    def is_quota_error(self, error) -> bool:
        """根据错误信息和类型判断是否为额度耗尽"""
        haystack = " ".join([
            safe_str(getattr(error, "message", None) or error),
            safe_str(getattr(error, "error_type", "") or ""),
            safe_str(getattr(error, "upstream_type", "") or ""),
            type(error).__name__,
        ]).lower()
        return any(keyword in haystack for keyword in self.quota_keywords)

    async def mark_exhausted(self, credential: str, reason: str = "") -> None:
        """
        标记凭证额度耗尽

        先加入本进程禁用集合（立即生效），再尽力写入远程记录；
        远程写入失败只记录日志。
        """
        digest = credential_digest(credential)
        with self.lock:
            self.disabled_digests.add(digest)
        logger.warning(LogMessages.CREDENTIAL_DISABLED.format(digest[:8], safe_str(reason)))

        now = self.clock()
        record = {
            "disabled_at": int(now.timestamp() * TimeConstants.MILLIS_MULTIPLIER),
            "reason": safe_str(reason),
            "reset_month": now.month,
        }
        try:
            await self.store.set_record(self.storage_key(credential), record, self.ttl_seconds)
        except Exception as e:
            logger.error(LogMessages.STORE_WRITE_FAILED.format(digest[:8], safe_str(e)))

    async def get_status(self, credential: str) -> CredentialStatus:
        """
        查询凭证状态（强制读取远程存储）

        记录存在且（当前日期早于重置日，或记录月份等于当前月份）时仍视为禁用；
        否则删除记录并视为可用。读取失败时视为可用。
        """
        digest = credential_digest(credential)
        masked = mask_credential(credential)
        key = self.storage_key(credential)

        try:
            record = await self.store.get_record(key)
        except Exception as e:
            logger.error(LogMessages.STORE_READ_FAILED.format(digest[:8], safe_str(e)))
            return CredentialStatus(credential=masked, available=True)

        if not record:
            # 记录已被其他实例删除或已过期
            with self.lock:
                self.disabled_digests.discard(digest)
            return CredentialStatus(credential=masked, available=True)

        now = self.clock()
        reset_month = record.get("reset_month")
        if now.day < self.reset_day or reset_month == now.month:
            with self.lock:
                self.disabled_digests.add(digest)
            return CredentialStatus(
                credential=masked,
                available=False,
                disabled_at=record.get("disabled_at"),
                reason=record.get("reason"),
                reset_month=reset_month,
            )

        try:
            await self.store.delete_record(key)
        except Exception as e:
            logger.error(LogMessages.STORE_WRITE_FAILED.format(digest[:8], safe_str(e)))
        with self.lock:
            self.disabled_digests.discard(digest)
        logger.info(LogMessages.CREDENTIAL_RESET.format(digest[:8], reset_month))
        return CredentialStatus(credential=masked, available=True)

    async def get_all_statuses(self) -> List[CredentialStatus]:
        return [await self.get_status(credential) for credential in self.credentials]

    def next_reset(self) -> str:
        """下一次额度重置时间（ISO-8601）"""
        return format_reset_time(next_reset_time(self.clock(), self.reset_day))

    def get_stats(self) -> dict:
        """
        获取凭证池统计信息（仅本进程视图）

        Returns:
            包含统计信息的字典
        """
        with self.lock:
            total = len(self.credentials)
            disabled = sum(
                1 for c in self.credentials if credential_digest(c) in self.disabled_digests
            )
            return {
                "total_credentials": total,
                "active_credentials": total - disabled,
                "disabled_credentials": disabled,
                "current_index": self.current_index,
            }
