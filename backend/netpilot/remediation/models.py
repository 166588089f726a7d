"""
修复模块的 Pydantic 数据模型。

故障模式 / 修复执行记录供 FaultHealer 使用，根因分析 / 修复方案 / 步骤执行结果供 RemediationAdvisor 使用。
"""
from __future__ import annotations

import enum
import re
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from netpilot.models.alert import Operator
from netpilot.models.base import new_id, utc_now


class RiskLevel(str, enum.Enum):
    """三级风险分类。"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


# ---------------------------------------------------------------------------
# 故障模式与自愈执行
# ---------------------------------------------------------------------------

class FaultCondition(BaseModel):
    """故障条件。metric_label 仅作描述，匹配时不参与比较。"""
    metric: str
    metric_label: Optional[str] = None
    operator: Operator
    threshold: float


class FaultPattern(BaseModel):
    """故障模式。内置模式不可删除，只能禁用。"""
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    enabled: bool = True
    auto_heal: bool = False
    builtin: bool = False
    conditions: list[FaultCondition] = Field(default_factory=list)
    remediation_script: str
    verification_script: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Diagnosis(BaseModel):
    """诊断确认结果。"""
    confirmed: bool
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class ScriptOutcome(BaseModel):
    output: str = ""
    error: Optional[str] = None


class VerificationOutcome(BaseModel):
    passed: bool
    message: str = ""


RemediationStatus = Literal["pending", "executing", "success", "failed", "skipped"]


class RemediationExecution(BaseModel):
    """一次 (模式, 告警) 自愈尝试的完整记录。"""
    id: str = Field(default_factory=new_id)
    pattern_id: str
    pattern_name: str
    alert_event_id: str
    status: RemediationStatus = "pending"
    pre_snapshot_id: Optional[str] = None
    diagnosis: Optional[Diagnosis] = None
    execution_result: Optional[ScriptOutcome] = None
    verification_result: Optional[VerificationOutcome] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    def summary(self) -> str:
        verified = self.verification_result.passed if self.verification_result else None
        return f"{self.status.upper()} pattern={self.pattern_name}, verified={verified}"


# ---------------------------------------------------------------------------
# 根因分析与修复方案
# ---------------------------------------------------------------------------

class RootCause(BaseModel):
    id: str = Field(default_factory=new_id)
    description: str
    confidence: float = Field(ge=0, le=100)  # 0-100
    evidence: list[str] = Field(default_factory=list)
    related_alerts: list[str] = Field(default_factory=list)


class ImpactAssessment(BaseModel):
    scope: Literal["local", "partial", "widespread"] = "local"
    affected_resources: list[str] = Field(default_factory=list)
    services: list[str] = Field(default_factory=list)


class RootCauseAnalysis(BaseModel):
    id: str = Field(default_factory=new_id)
    alert_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    root_causes: list[RootCause] = Field(default_factory=list)
    impact: ImpactAssessment = Field(default_factory=ImpactAssessment)

    def primary_root_cause(self) -> Optional[RootCause]:
        """置信度最高的根因。"""
        if not self.root_causes:
            return None
        return max(self.root_causes, key=lambda rc: rc.confidence)


class StepVerification(BaseModel):
    command: str
    expected_result: str


class RemediationStep(BaseModel):
    order: int
    description: str
    command: str  # RouterOS 命令
    verification: StepVerification
    auto_executable: bool = False
    risk_level: RiskLevel = RiskLevel.MEDIUM
    estimated_duration: int = 10  # 秒


class RollbackStep(BaseModel):
    order: int
    description: str
    command: str  # 以 # 开头表示仅提示，不执行
    condition: Optional[str] = None


PlanStatus = Literal["pending", "in_progress", "completed", "failed", "rolled_back"]


class RemediationPlan(BaseModel):
    id: str = Field(default_factory=new_id)
    alert_id: str
    root_cause_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    steps: list[RemediationStep] = Field(default_factory=list)
    rollback: list[RollbackStep] = Field(default_factory=list)
    overall_risk: RiskLevel = RiskLevel.LOW
    estimated_duration: int = 0
    requires_confirmation: bool = False
    status: PlanStatus = "pending"

    def get_step(self, order: int) -> Optional[RemediationStep]:
        return next((s for s in self.steps if s.order == order), None)

    def summary(self) -> str:
        auto = sum(1 for s in self.steps if s.auto_executable)
        return (
            f"{self.status} risk={self.overall_risk.value} steps={len(self.steps)} "
            f"(auto={auto}) confirm={self.requires_confirmation}"
        )


class ExecutionResult(BaseModel):
    """单个方案步骤或回滚步骤的执行结果。"""
    id: str = Field(default_factory=new_id)
    plan_id: str
    step_order: int
    kind: Literal["step", "rollback"] = "step"
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0
    verification_passed: Optional[bool] = None
    snapshot_id: Optional[str] = None  # 执行前的配置快照，手动回滚时使用
    timestamp: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# 修复模板
# ---------------------------------------------------------------------------

class TemplateStep(BaseModel):
    """模板中的单个步骤，是否可自动执行在生成方案时计算。"""
    description: str
    command: str
    verification: StepVerification
    risk_level: RiskLevel = RiskLevel.LOW
    estimated_duration: int = 5


class TemplateRollback(BaseModel):
    description: str
    command: str
    condition: Optional[str] = None


class RemediationTemplate(BaseModel):
    """按根因描述正则匹配的修复模板。"""
    name: str
    category: str
    root_cause_pattern: str  # 忽略大小写
    steps: list[TemplateStep]
    rollback: list[TemplateRollback] = Field(default_factory=list)

    def matches(self, description: str) -> bool:
        return re.search(self.root_cause_pattern, description, re.IGNORECASE) is not None
