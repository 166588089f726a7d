"""
配置快照。

修复动作执行前先导出设备配置作为回滚锚点。快照是尽力而为的：
调用方捕获创建失败并记录日志，不因此中止修复流程。
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from netpilot.core.exceptions import NotFoundError
from netpilot.core.storage import JsonCollection
from netpilot.models.base import new_id, utc_now
from netpilot.services.audit import AuditLogger

from .command_executor import DeviceExecutor, format_output

logger = logging.getLogger(__name__)

DEFAULT_MAX_SNAPSHOTS = 50


@runtime_checkable
class SnapshotProvider(Protocol):
    async def create_snapshot(self, trigger: str) -> str:
        """创建快照并返回快照 ID。"""
        ...


class ConfigSnapshot(BaseModel):
    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utc_now)
    trigger: str
    size: int
    checksum: str


class FileSnapshotStore:
    """通过设备 /export 导出配置，保存为 {id}.rsc 文件并维护索引。"""

    def __init__(
        self,
        directory: Path,
        device: DeviceExecutor,
        audit: Optional[AuditLogger] = None,
        max_snapshots: int = DEFAULT_MAX_SNAPSHOTS,
    ) -> None:
        self.directory = Path(directory)
        self.device = device
        self.audit = audit
        self.max_snapshots = max_snapshots
        self._index: JsonCollection[ConfigSnapshot] = JsonCollection(self.directory / "index.json", ConfigSnapshot)
        self._lock = asyncio.Lock()

    def _content_path(self, snapshot_id: str) -> Path:
        return self.directory / f"{snapshot_id}.rsc"

    async def create_snapshot(self, trigger: str) -> str:
        content = format_output(await self.device.execute("/export", []))
        data = content.encode("utf-8")
        snapshot = ConfigSnapshot(
            trigger=trigger,
            size=len(data),
            checksum=hashlib.sha256(data).hexdigest(),
        )
        async with self._lock:
            await asyncio.to_thread(self._write_content, snapshot.id, data)
            snapshots = await self._index.load()
            snapshots.insert(0, snapshot)
            # 超出保留数量的旧快照一并删除
            expired = snapshots[self.max_snapshots:]
            snapshots = snapshots[: self.max_snapshots]
            await self._index.save(snapshots)
            for old in expired:
                await asyncio.to_thread(self._content_path(old.id).unlink, True)

        if self.audit:
            await self.audit.log(
                "snapshot_create",
                details={
                    "trigger": trigger,
                    "metadata": {"snapshot_id": snapshot.id, "size": snapshot.size, "checksum": snapshot.checksum},
                },
            )
        logger.info("Config snapshot created: %s (%s, %d bytes)", snapshot.id, trigger, snapshot.size)
        return snapshot.id

    def _write_content(self, snapshot_id: str, data: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._content_path(snapshot_id).write_bytes(data)

    async def list_snapshots(self) -> list[ConfigSnapshot]:
        return await self._index.load()

    async def get_snapshot_content(self, snapshot_id: str) -> str:
        path = self._content_path(snapshot_id)
        if not path.exists():
            raise NotFoundError(f"Snapshot not found: {snapshot_id}")
        return await asyncio.to_thread(path.read_text, "utf-8")
