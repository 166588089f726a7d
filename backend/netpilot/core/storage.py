"""
JSON 文件持久化模块。

两种存储形态：
- JsonCollection：一个 JSON 文档保存整个集合（规则、模式、渠道、方案、任务），写入时先写临时文件再原子替换。
- ShardedLog：按 UTC 日期分片的 JSONL 追加日志（审计、通知历史、执行记录），只追加不修改。

所有文件 I/O 都通过 asyncio.to_thread 移出事件循环。
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import threading
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

UTC = timezone.utc

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def utc_today() -> date:
    return datetime.now(UTC).date()


def utc_day(ts: datetime) -> date:
    """时间戳所属的 UTC 日期；naive 时间按 UTC 处理。"""
    if ts.tzinfo is None:
        return ts.date()
    return ts.astimezone(UTC).date()


class JsonCollection(Generic[T]):
    """整文件 JSON 集合。调用方负责串行化写入（每个集合一把锁）。"""

    def __init__(self, path: Path, model: type[T]) -> None:
        self.path = Path(path)
        self._adapter = TypeAdapter(list[model])

    async def load(self) -> list[T]:
        return await asyncio.to_thread(self._load_sync)

    async def save(self, items: list[T]) -> None:
        await asyncio.to_thread(self._save_sync, list(items))

    def _load_sync(self) -> list[T]:
        if not self.path.exists():
            return []
        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return []
        return self._adapter.validate_json(raw)

    def _save_sync(self, items: list[T]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(self._adapter.dump_json(items, indent=2))
        os.replace(tmp, self.path)


class ShardedLog(Generic[T]):
    """按 UTC 日期分片的追加日志，文件名形如 {prefix}-YYYY-MM-DD.jsonl。"""

    def __init__(self, directory: Path, prefix: str, model: type[T]) -> None:
        self.directory = Path(directory)
        self.prefix = prefix
        self.model = model
        self._name_re = re.compile(rf"^{re.escape(prefix)}-(\d{{4}}-\d{{2}}-\d{{2}})\.jsonl$")
        self._lock = threading.Lock()

    def path_for(self, day: date) -> Path:
        return self.directory / f"{self.prefix}-{day.isoformat()}.jsonl"

    async def append(self, record: T, day: date | None = None) -> None:
        await asyncio.to_thread(self._append_sync, record, day or utc_today())

    async def read_day(self, day: date) -> list[T]:
        return await asyncio.to_thread(self._read_day_sync, day)

    async def read_range(self, start: date, end: date) -> list[T]:
        """读取 [start, end] 闭区间内所有分片。"""
        return await asyncio.to_thread(self._read_range_sync, start, end)

    async def read_all(self) -> list[T]:
        return await asyncio.to_thread(self._read_all_sync)

    async def list_days(self) -> list[date]:
        return await asyncio.to_thread(self._list_days_sync)

    async def delete_day(self, day: date) -> int:
        """删除整个分片，返回其中的记录数。"""
        return await asyncio.to_thread(self._delete_day_sync, day)

    # -- sync internals ---------------------------------------------------

    def _append_sync(self, record: T, day: date) -> None:
        line = record.model_dump_json() + "\n"
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(self.path_for(day), "a", encoding="utf-8") as f:
                f.write(line)

    def _read_day_sync(self, day: date) -> list[T]:
        path = self.path_for(day)
        if not path.exists():
            return []
        records: list[T] = []
        with open(path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(self.model.model_validate_json(line))
                except ValidationError as e:
                    logger.warning("Skipping corrupt record %s:%d: %s", path.name, lineno, e)
        return records

    def _list_days_sync(self) -> list[date]:
        if not self.directory.exists():
            return []
        days = []
        for entry in self.directory.iterdir():
            m = self._name_re.match(entry.name)
            if m:
                try:
                    days.append(date.fromisoformat(m.group(1)))
                except ValueError:
                    continue
        return sorted(days)

    def _read_range_sync(self, start: date, end: date) -> list[T]:
        records: list[T] = []
        day = start
        while day <= end:
            records.extend(self._read_day_sync(day))
            day += timedelta(days=1)
        return records

    def _read_all_sync(self) -> list[T]:
        records: list[T] = []
        for day in self._list_days_sync():
            records.extend(self._read_day_sync(day))
        return records

    def _delete_day_sync(self, day: date) -> int:
        count = len(self._read_day_sync(day))
        with self._lock:
            self.path_for(day).unlink(missing_ok=True)
        return count
