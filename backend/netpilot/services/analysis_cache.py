"""
分析结果缓存 (Analysis Cache)

以告警指纹为键缓存 AI 分析文本，避免重复告警反复调用分析服务。
- 每个条目有独立 TTL（默认 30 分钟）和命中计数
- 容量满时优先淘汰已过期条目，其次淘汰最久未使用的条目（LRU）
- 过期条目在访问时惰性删除，另有后台循环定期清扫
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

from netpilot.core.exceptions import ValidationError
from netpilot.models.alert import AlertEvent

logger = logging.getLogger(__name__)

DEFAULT_TTL = 30 * 60  # 秒
DEFAULT_MAX_SIZE = 1000
SWEEP_INTERVAL = 5 * 60

# 指纹归一化：移除消息中的动态部分
_IPV4_RE = re.compile(
    r"\b(?:(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\.){3}(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\b"
)
_IPV6_RE = re.compile(r"\b(?:[0-9a-fA-F]{1,4}:){2,7}[0-9a-fA-F]{0,4}\b|::(?:[0-9a-fA-F]{1,4}:?){1,7}")
_TIMESTAMP_RE = re.compile(
    r"\b\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?|\b\d{10,13}\b"
)
_PORT_RE = re.compile(r":\d{1,5}\b|\bport[:\s]+\d{1,5}\b", re.IGNORECASE)
_UUID_RE = re.compile(r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b")
_HEX_SESSION_RE = re.compile(r"\b[0-9a-fA-F]{16,32}\b")


def normalize_message(message: str) -> str:
    """把 IP、时间戳、端口、会话 ID 替换为占位符。"""
    result = _IPV4_RE.sub("<IP>", message)
    result = _IPV6_RE.sub("<IP>", result)
    result = _TIMESTAMP_RE.sub("<TIMESTAMP>", result)
    result = _PORT_RE.sub("<PORT>", result)
    result = _UUID_RE.sub("<SESSION>", result)
    result = _HEX_SESSION_RE.sub("<SESSION>", result)
    return result


def generate_fingerprint(event: AlertEvent) -> str:
    """告警指纹：规则 ID、指标、严重级别加归一化后的消息。"""
    source = "|".join([event.rule_id, event.metric, event.severity, normalize_message(event.message)])
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


@dataclass
class CachedAnalysis:
    fingerprint: str
    analysis: str
    created_at: float
    expires_at: float
    hit_count: int = 0


class AnalysisCache:
    """TTL + LRU 分析缓存。所有修改在同一把锁内完成。"""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        max_size: int = DEFAULT_MAX_SIZE,
        sweep_interval: float = SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size < 1:
            raise ValidationError(f"Analysis cache max_size must be at least 1, got {max_size}")
        self.default_ttl = default_ttl
        self.max_size = max_size
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: OrderedDict[str, CachedAnalysis] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._sweep_task: Optional[asyncio.Task] = None

    def get(self, fingerprint: str) -> Optional[str]:
        """命中返回分析文本并刷新 LRU 位置；缺失或过期返回 None。"""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                self._misses += 1
                return None
            if entry.expires_at <= now:
                del self._entries[fingerprint]
                self._misses += 1
                return None
            entry.hit_count += 1
            self._hits += 1
            self._entries.move_to_end(fingerprint)
            logger.debug("Analysis cache hit %s (hits=%d)", fingerprint[:12], entry.hit_count)
            return entry.analysis

    def set(self, fingerprint: str, analysis: str, ttl: Optional[float] = None) -> None:
        now = self._clock()
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            if fingerprint in self._entries:
                del self._entries[fingerprint]
            elif len(self._entries) >= self.max_size:
                self._evict_one(now)
            self._entries[fingerprint] = CachedAnalysis(
                fingerprint=fingerprint,
                analysis=analysis,
                created_at=now,
                expires_at=now + ttl,
            )

    def has(self, fingerprint: str) -> bool:
        """只检查存在性，不影响命中统计和 LRU 顺序。"""
        with self._lock:
            entry = self._entries.get(fingerprint)
            return entry is not None and entry.expires_at > self._clock()

    def delete(self, fingerprint: str) -> bool:
        with self._lock:
            return self._entries.pop(fingerprint, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def cleanup(self) -> int:
        """清除所有过期条目，返回清除数量。"""
        now = self._clock()
        with self._lock:
            expired = [fp for fp, e in self._entries.items() if e.expires_at <= now]
            for fp in expired:
                del self._entries[fp]
        if expired:
            logger.debug("Analysis cache sweep removed %d expired entries", len(expired))
        return len(expired)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hit_count": self._hits,
                "miss_count": self._misses,
                "hit_rate": self._hits / total if total else 0.0,
            }

    def _evict_one(self, now: float) -> None:
        # 按 LRU 顺序找第一个已过期条目，没有则淘汰最久未使用的
        for fp, entry in self._entries.items():
            if entry.expires_at <= now:
                del self._entries[fp]
                return
        self._entries.popitem(last=False)

    async def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.cleanup()
            except Exception:
                logger.exception("Analysis cache sweep failed")
