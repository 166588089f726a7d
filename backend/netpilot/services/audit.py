"""
审计日志服务 (Audit Log Service)

功能描述 (Description):
    NetPilot 统一审计日志记录引擎。每一次自动化动作（脚本执行、告警触发与恢复、
    修复执行、方案生成、步骤执行、回滚）都会留下一条只追加的审计记录。

存储方式 (Storage):
    按 UTC 日期分片的 JSONL 文件 audit/audit-YYYY-MM-DD.jsonl。
    清理以整个分片为单位：早于保留期截止日的分片整体删除。

查询范围 (Query Range):
    - 同时给出 from/to：只读取两者之间的分片
    - 只给 from：读取 from 到今天的分片
    - 只给 to：读取 to 之前保留期内（默认 180 天）的分片
    - 都不给：读取全部分片

技术特性 (Technical Features):
    - 异步记录：文件 I/O 不阻塞事件循环
    - 不可篡改：审计日志只允许追加，不允许修改
    - 自动清理：启动时执行一次，之后每天执行一次
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional, Union

from netpilot.core.storage import ShardedLog, utc_day
from netpilot.models.audit_log import AuditDetails, AuditLog
from netpilot.models.base import utc_now

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 180
CLEANUP_INTERVAL = 24 * 60 * 60  # 每天清理一次


class AuditLogger:
    """按日分片的只追加审计日志。"""

    def __init__(
        self,
        data_dir: Path,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.retention_days = retention_days
        self._clock = clock
        self._log: ShardedLog[AuditLog] = ShardedLog(Path(data_dir) / "audit", "audit", AuditLog)
        self._cleanup_task: Optional[asyncio.Task] = None

    async def log(
        self,
        action: str,
        actor: str = "system",
        details: Union[AuditDetails, dict[str, Any], None] = None,
    ) -> AuditLog:
        """
        记录一条审计日志，分配 id 与时间戳并追加到当天分片。

        Args:
            action: 操作类型，如 script_execute / alert_trigger / remediation_execute
            actor: 操作主体，system 或 user
            details: 触发来源、脚本、结果、错误和元数据
        """
        if details is None:
            details = AuditDetails()
        elif isinstance(details, dict):
            details = AuditDetails(**details)
        entry = AuditLog(timestamp=self._clock(), action=action, actor=actor, details=details)
        await self._log.append(entry, utc_day(entry.timestamp))
        logger.debug("Audit %s by %s (%s)", action, actor, entry.id)
        return entry

    async def query(
        self,
        from_time: Optional[datetime] = None,
        to_time: Optional[datetime] = None,
        action: Optional[str] = None,
        actor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[AuditLog]:
        """按时间范围、操作类型和操作主体查询，按时间倒序返回。"""
        today = utc_day(self._clock())
        if from_time and to_time:
            entries = await self._log.read_range(utc_day(from_time), utc_day(to_time))
        elif from_time:
            entries = await self._log.read_range(utc_day(from_time), today)
        elif to_time:
            end = utc_day(to_time)
            entries = await self._log.read_range(end - timedelta(days=self.retention_days), end)
        else:
            entries = await self._log.read_all()

        if from_time:
            entries = [e for e in entries if e.timestamp >= from_time]
        if to_time:
            entries = [e for e in entries if e.timestamp <= to_time]
        if action:
            entries = [e for e in entries if e.action == action]
        if actor:
            entries = [e for e in entries if e.actor == actor]

        entries.sort(key=lambda e: e.timestamp, reverse=True)
        if limit:
            entries = entries[:limit]
        return entries

    async def cleanup(self, retention_days: Optional[int] = None) -> int:
        """删除早于保留期截止日的整个分片，返回被删除的记录数。"""
        days = self.retention_days if retention_days is None else retention_days
        cutoff = utc_day(self._clock()) - timedelta(days=days)
        removed = 0
        for day in await self._log.list_days():
            if day < cutoff:
                removed += await self._log.delete_day(day)
        if removed:
            logger.info("Audit cleanup: removed %d entries older than %d days", removed, days)
        return removed

    async def get_stats(self) -> dict[str, Any]:
        days = await self._log.list_days()
        return {
            "shards": len(days),
            "oldest_day": days[0].isoformat() if days else None,
            "newest_day": days[-1].isoformat() if days else None,
            "retention_days": self.retention_days,
        }

    async def start(self) -> None:
        """启动时清理一次，然后进入每日清理循环。"""
        if self._cleanup_task and not self._cleanup_task.done():
            return
        await self.cleanup()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL)
            try:
                await self.cleanup()
            except Exception:
                logger.exception("Audit cleanup failed")
