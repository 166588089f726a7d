"""
审计日志模型 (Audit Log Model)

审计记录只追加，永不修改。action 取值：
script_execute / config_change / alert_trigger / alert_resolve / remediation_execute /
plan_generated / step_executed / step_failed / rollback_started / rollback_completed /
snapshot_create / channel_change / task_change
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from netpilot.models.base import new_id, utc_now

Actor = Literal["system", "user"]


class AuditDetails(BaseModel):
    trigger: Optional[str] = None
    script: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AuditLog(BaseModel):
    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utc_now)
    action: str
    actor: Actor = "system"
    details: AuditDetails = Field(default_factory=AuditDetails)
