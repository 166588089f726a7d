"""模型公共工具：UTC 时间与记录 ID。"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def apply_updates(record, updates: dict, protected: tuple[str, ...] = ("id", "created_at")):
    """合并更新字段并重新校验，返回新实例；受保护字段不可修改。"""
    data = record.model_dump()
    data.update({k: v for k, v in updates.items() if k not in protected})
    return type(record).model_validate(data)
