"""
告警模型 (Alert Model)

定义告警规则、告警事件和指标样本。规则描述触发条件、持续时间、冷却期和通知渠道；
事件记录一次告警从触发到恢复的完整生命周期（active → resolved，resolved 为终态）。

Defines alert rules, alert events and metric samples. Rules describe the trigger condition,
sustain duration, cooldown and target channels; events record one alert's lifecycle
(active → resolved, resolved is terminal).
"""
from __future__ import annotations

import operator
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from netpilot.models.base import new_id, utc_now

Operator = Literal["gt", "lt", "eq", "ne", "gte", "lte"]
Severity = Literal["info", "warning", "critical", "emergency"]
AlertStatus = Literal["active", "resolved"]

OPERATORS = {
    "gt": operator.gt,
    "lt": operator.lt,
    "eq": operator.eq,
    "ne": operator.ne,
    "gte": operator.ge,
    "lte": operator.le,
}


def compare(value: float, op: str, threshold: float) -> bool:
    """按运算符比较当前值与阈值，未知运算符视为不满足。"""
    fn = OPERATORS.get(op)
    return bool(fn(value, threshold)) if fn else False


class AutoResponse(BaseModel):
    """告警触发后的自动响应配置。"""
    enabled: bool = False
    script: str = ""  # RouterOS 脚本


class AlertRule(BaseModel):
    """
    告警规则 (Alert Rule)

    duration_seconds: 条件需持续满足的最短时间，0 表示首次满足即触发。
    cooldown_seconds: 同一规则两次触发之间的最小间隔，条件抖动也不会重复触发。
    """
    id: str = Field(default_factory=new_id)
    name: str
    enabled: bool = True
    metric: str  # cpu / memory / disk / interface_status / interface_traffic ...
    metric_label: Optional[str] = None  # 如接口名称
    operator: Operator
    threshold: float
    duration_seconds: int = Field(default=0, ge=0)
    cooldown_seconds: int = Field(default=300, ge=0)
    severity: Severity = "warning"
    channels: list[str] = Field(default_factory=list)
    auto_response: Optional[AutoResponse] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_triggered_at: Optional[datetime] = None


class AutoResponseResult(BaseModel):
    executed: bool
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None


class AlertEvent(BaseModel):
    """告警事件 (Alert Event)，同一规则同一时刻最多一个 active 事件。"""
    id: str = Field(default_factory=new_id)
    rule_id: str
    rule_name: str
    severity: Severity
    metric: str
    metric_label: Optional[str] = None
    current_value: float
    threshold: float
    message: str
    ai_analysis: Optional[str] = None
    status: AlertStatus = "active"
    triggered_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    auto_response_result: Optional[AutoResponseResult] = None

    def summary(self) -> str:
        return f"[{self.severity}] {self.rule_name}: {self.message}"


class MetricSample(BaseModel):
    """
    一次指标采集快照。

    system: 无标签指标，如 {"cpu": 35.0, "memory": 71.2}
    labeled: 带标签指标，如 {"interface_status": {"ether1": 1, "pppoe-out1": 0}}
    """
    system: dict[str, float] = Field(default_factory=dict)
    labeled: dict[str, dict[str, float]] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    def value_for(self, metric: str, label: Optional[str] = None) -> Optional[float]:
        """取规则对应的当前值；带标签指标必须指定标签，缺失返回 None。"""
        if label:
            return self.labeled.get(metric, {}).get(label)
        return self.system.get(metric)
