"""调度任务模型：任务定义与每次执行记录。"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from netpilot.models.base import new_id, utc_now

TaskStatus = Literal["running", "success", "failed"]


class ScheduledTask(BaseModel):
    """
    定时任务。type 决定由哪个已注册的处理器执行，config 原样传给处理器。
    """
    id: str = Field(default_factory=new_id)
    name: str
    type: str
    cron: str
    enabled: bool = True
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    config: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class TaskExecution(BaseModel):
    id: str = Field(default_factory=new_id)
    task_id: str
    task_name: str
    status: TaskStatus = "running"
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None
