"""
修复方案顾问 (Remediation Advisor)

没有固定故障模式可用时，根据根因分析生成结构化、带风险评估的修复方案。

方案来源按优先级：
    1. 模板：根因描述命中 TemplateRegistry 中的正则
    2. AI：分析服务给出的建议逐条解析为步骤（命令取自反引号，默认中风险）
    3. 通用诊断：以上都失败或 AI 未解析出步骤时，使用只读诊断方案

执行：
    - execute_step：非低风险步骤先做配置快照，快照 ID 记入执行结果；验证命令失败只标记验证未通过
    - execute_auto_steps：仅执行可自动执行的步骤，按顺序，遇到失败立即停止
    - execute_rollback：按顺序执行所有回滚步骤，单步失败不中止，最终状态为 rolled_back

步骤失败、自动步骤执行完成和回滚完成都会向所有已启用渠道发送 remediation 类型通知。
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from netpilot.core.exceptions import NotFoundError, ValidationError
from netpilot.core.storage import JsonCollection, ShardedLog, utc_day
from netpilot.models.alert import AlertEvent
from netpilot.models.base import utc_now
from netpilot.models.notification import NotificationPayload
from netpilot.services.analysis_cache import AnalysisCache
from netpilot.services.audit import AuditLogger
from netpilot.services.notifier import NotificationService

from .ai_client import REMEDIATION_SYSTEM_PROMPT, Analyzer, parse_json_response
from .command_executor import CommandExecutor
from .models import (
    ExecutionResult,
    ImpactAssessment,
    PlanStatus,
    RemediationPlan,
    RemediationStep,
    RiskLevel,
    RollbackStep,
    RootCause,
    RootCauseAnalysis,
    StepVerification,
)
from .safety import calculate_overall_risk, is_auto_executable, requires_confirmation
from .snapshot import SnapshotProvider
from .template_registry import TemplateRegistry

logger = logging.getLogger(__name__)

_BACKTICK_RE = re.compile(r"`([^`]+)`")
_COMMAND_LABEL_RE = re.compile(r"命令[：:]\s*(.+)")

DEFAULT_COMMAND = "/system/resource/print"

DIAGNOSTIC_ROLLBACK = [
    RollbackStep(order=1, description="无需回滚（仅诊断操作）", command="# 诊断操作无需回滚"),
]

SNAPSHOT_ROLLBACK = [
    RollbackStep(
        order=1,
        description="如需回滚，请恢复之前的配置快照",
        command="# 使用配置快照恢复",
        condition="仅在修改导致问题时执行",
    ),
]

# 告警指标到根因描述的映射，用于从告警事件构造启发式根因
_METRIC_HINTS = {
    "cpu": "High CPU usage",
    "memory": "Memory usage high",
    "disk": "Disk space running out",
    "interface_status": "Interface down",
    "interface_traffic": "Traffic spike",
}


def generic_diagnostic_steps() -> list[RemediationStep]:
    """通用只读诊断步骤。"""
    checks = [
        ("检查系统资源状态", "/system/resource/print", "显示系统资源信息"),
        ("检查系统日志", "/log/print", "显示系统日志"),
        ("检查接口状态", "/interface/print", "显示接口列表"),
    ]
    return [
        RemediationStep(
            order=i,
            description=description,
            command=command,
            verification=StepVerification(command=command, expected_result=expected),
            auto_executable=True,
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        )
        for i, (description, command, expected) in enumerate(checks, 1)
    ]


def extract_command(recommendation: str) -> str:
    match = _BACKTICK_RE.search(recommendation) or _COMMAND_LABEL_RE.search(recommendation)
    return match.group(1).strip() if match else DEFAULT_COMMAND


def parse_recommendations(recommendations: list[str], risk: RiskLevel) -> list[RemediationStep]:
    """把 AI 建议逐条转换为方案步骤。"""
    steps = []
    for i, rec in enumerate(recommendations, 1):
        command = extract_command(rec)
        steps.append(RemediationStep(
            order=i,
            description=_BACKTICK_RE.sub("", rec).strip(),
            command=command,
            verification=StepVerification(command=DEFAULT_COMMAND, expected_result="验证操作结果"),
            auto_executable=is_auto_executable(command, risk),
            risk_level=risk,
            estimated_duration=10,
        ))
    return steps


def _parse_risk(value: Any) -> RiskLevel:
    try:
        return RiskLevel(str(value).lower())
    except ValueError:
        return RiskLevel.MEDIUM


def build_root_cause_analysis(event: AlertEvent) -> RootCauseAnalysis:
    """根据告警事件构造启发式根因分析，单一根因，置信度 60。"""
    hint = _METRIC_HINTS.get(event.metric)
    description = f"{hint}: {event.message}" if hint else event.message
    resource = event.metric_label or event.metric
    return RootCauseAnalysis(
        alert_id=event.id,
        timestamp=event.triggered_at,
        root_causes=[
            RootCause(
                description=description,
                confidence=60,
                evidence=[
                    event.summary(),
                    f"{event.metric} = {event.current_value} (threshold {event.threshold})",
                ],
                related_alerts=[event.id],
            )
        ],
        impact=ImpactAssessment(scope="local", affected_resources=[resource]),
    )


class RemediationAdvisor:
    """修复方案生成、执行与回滚。"""

    def __init__(
        self,
        data_dir: Path,
        executor: CommandExecutor,
        notifier: NotificationService,
        audit: AuditLogger,
        analyzer: Optional[Analyzer] = None,
        snapshots: Optional[SnapshotProvider] = None,
        cache: Optional[AnalysisCache] = None,
        registry: Optional[TemplateRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        base = Path(data_dir) / "remediation"
        self._store: JsonCollection[RemediationPlan] = JsonCollection(base / "plans.json", RemediationPlan)
        self._results: ShardedLog[ExecutionResult] = ShardedLog(base / "executions", "results", ExecutionResult)
        self.executor = executor
        self.notifier = notifier
        self.audit = audit
        self.analyzer = analyzer
        self.snapshots = snapshots
        self.cache = cache
        self.registry = registry or TemplateRegistry()
        self._clock = clock
        self._plans: Optional[list[RemediationPlan]] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # 方案存储
    # ------------------------------------------------------------------

    async def _ensure_loaded(self) -> list[RemediationPlan]:
        if self._plans is None:
            self._plans = await self._store.load()
        return self._plans

    async def _save_plan(self, plan: RemediationPlan) -> None:
        async with self._lock:
            plans = await self._ensure_loaded()
            for i, existing in enumerate(plans):
                if existing.id == plan.id:
                    plans[i] = plan
                    break
            else:
                plans.append(plan)
            await self._store.save(plans)

    async def get_plan(self, plan_id: str) -> RemediationPlan:
        async with self._lock:
            for plan in await self._ensure_loaded():
                if plan.id == plan_id:
                    return plan.model_copy(deep=True)
        raise NotFoundError(f"Plan not found: {plan_id}")

    async def get_plans(self, limit: int = 50) -> list[RemediationPlan]:
        async with self._lock:
            plans = list(await self._ensure_loaded())
        plans.sort(key=lambda p: p.timestamp, reverse=True)
        return plans[:limit]

    async def get_plans_by_alert(self, alert_id: str) -> list[RemediationPlan]:
        async with self._lock:
            return [p for p in await self._ensure_loaded() if p.alert_id == alert_id]

    async def update_plan_status(self, plan_id: str, status: PlanStatus) -> RemediationPlan:
        plan = await self.get_plan(plan_id)
        plan = RemediationPlan.model_validate({**plan.model_dump(), "status": status})
        await self._save_plan(plan)
        return plan

    async def delete_plan(self, plan_id: str) -> None:
        async with self._lock:
            plans = await self._ensure_loaded()
            remaining = [p for p in plans if p.id != plan_id]
            if len(remaining) == len(plans):
                raise NotFoundError(f"Plan not found: {plan_id}")
            self._plans = remaining
            await self._store.save(remaining)

    async def get_execution_history(self, plan_id: str) -> list[ExecutionResult]:
        results = [r for r in await self._results.read_all() if r.plan_id == plan_id]
        results.sort(key=lambda r: r.timestamp)
        return results

    # ------------------------------------------------------------------
    # 方案生成
    # ------------------------------------------------------------------

    async def handle_alert_event(self, event: AlertEvent, execute_auto: bool = False) -> RemediationPlan:
        """告警引擎入口：构造启发式根因分析并生成方案，可选立即执行自动步骤。"""
        plan = await self.generate_plan(build_root_cause_analysis(event))
        if execute_auto and plan.steps:
            await self.execute_auto_steps(plan.id)
            plan = await self.get_plan(plan.id)
        return plan

    async def generate_plan(self, analysis: RootCauseAnalysis) -> RemediationPlan:
        """
        根据根因分析生成修复方案。

        没有根因时返回空方案（低风险、无需确认）。方案生成后即持久化并写审计。
        """
        root_cause = analysis.primary_root_cause()
        if root_cause is None:
            plan = RemediationPlan(alert_id=analysis.alert_id, root_cause_id="", timestamp=self._clock())
            await self._save_plan(plan)
            return plan

        template = self.registry.match(root_cause.description)
        if template is not None:
            steps = [
                RemediationStep(
                    order=i,
                    description=s.description,
                    command=s.command,
                    verification=s.verification,
                    auto_executable=is_auto_executable(s.command, s.risk_level),
                    risk_level=s.risk_level,
                    estimated_duration=s.estimated_duration,
                )
                for i, s in enumerate(template.steps, 1)
            ]
            rollback = [
                RollbackStep(order=i, description=r.description, command=r.command, condition=r.condition)
                for i, r in enumerate(template.rollback, 1)
            ]
        else:
            try:
                steps, rollback = await self._generate_ai_plan(analysis, root_cause)
            except Exception as e:
                logger.warning("AI plan generation failed, using generic diagnostic plan: %s", e)
                steps, rollback = generic_diagnostic_steps(), list(DIAGNOSTIC_ROLLBACK)

        plan = RemediationPlan(
            alert_id=analysis.alert_id,
            root_cause_id=root_cause.id,
            timestamp=self._clock(),
            steps=steps,
            rollback=rollback,
            overall_risk=calculate_overall_risk(steps),
            estimated_duration=sum(s.estimated_duration for s in steps),
            requires_confirmation=requires_confirmation(steps),
        )
        await self._save_plan(plan)
        await self.audit.log(
            "remediation_execute",
            details={
                "trigger": "plan_generated",
                "metadata": {
                    "plan_id": plan.id,
                    "alert_id": analysis.alert_id,
                    "root_cause_id": root_cause.id,
                    "steps_count": len(steps),
                    "overall_risk": plan.overall_risk.value,
                    "estimated_duration": plan.estimated_duration,
                },
            },
        )
        logger.info("Generated remediation plan %s: %s", plan.id, plan.summary())
        return plan

    async def _generate_ai_plan(
        self, analysis: RootCauseAnalysis, root_cause: RootCause
    ) -> tuple[list[RemediationStep], list[RollbackStep]]:
        if self.analyzer is None:
            raise ValidationError("Analysis service not configured")

        cache_key = "remediation:" + hashlib.sha256(root_cause.description.encode("utf-8")).hexdigest()
        text = self.cache.get(cache_key) if self.cache else None
        if text is None:
            prompt = "\n".join([
                f"Root cause: {root_cause.description}",
                f"Confidence: {root_cause.confidence}",
                f"Impact scope: {analysis.impact.scope}",
                f"Affected resources: {', '.join(analysis.impact.affected_resources) or 'unknown'}",
            ])
            text = await self.analyzer.analyze(REMEDIATION_SYSTEM_PROMPT, prompt)
            if self.cache:
                self.cache.set(cache_key, text)

        data = parse_json_response(text)
        recommendations = [str(r) for r in data.get("recommendations") or []]
        steps = parse_recommendations(recommendations, _parse_risk(data.get("risk_level", "medium")))
        if not steps:
            return generic_diagnostic_steps(), list(DIAGNOSTIC_ROLLBACK)
        return steps, list(SNAPSHOT_ROLLBACK)

    # ------------------------------------------------------------------
    # 方案执行
    # ------------------------------------------------------------------

    async def execute_step(self, plan_id: str, step_order: int) -> ExecutionResult:
        """
        执行单个步骤。

        命令失败记为 success=False 并写 step_failed 审计；验证命令失败只影响
        verification_passed。两种情况都会持久化执行结果。
        """
        plan = await self.get_plan(plan_id)
        step = plan.get_step(step_order)
        if step is None:
            raise NotFoundError(f"Step {step_order} not found in plan {plan_id}")

        started = time.monotonic()
        snapshot_id = None
        if step.risk_level != RiskLevel.LOW and self.snapshots is not None:
            try:
                snapshot_id = await self.snapshots.create_snapshot("pre-remediation")
                logger.info("Created pre-remediation snapshot %s for step %d", snapshot_id, step_order)
            except Exception as e:
                logger.warning("Failed to create pre-remediation snapshot: %s", e)

        try:
            logger.info("Executing step %d of plan %s: %s", step_order, plan_id, step.command)
            output = await self.executor.execute_command(step.command)
        except Exception as e:
            result = ExecutionResult(
                plan_id=plan_id,
                step_order=step_order,
                success=False,
                error=str(e),
                duration_ms=int((time.monotonic() - started) * 1000),
                verification_passed=False,
                snapshot_id=snapshot_id,
                timestamp=self._clock(),
            )
            await self.audit.log(
                "remediation_execute",
                details={
                    "trigger": "step_failed",
                    "script": step.command,
                    "error": result.error,
                    "metadata": {"plan_id": plan_id, "step_order": step_order, "snapshot_id": snapshot_id},
                },
            )
            await self._notify_step_failed(plan, step, result)
        else:
            verification_passed = True
            try:
                await self.executor.execute_command(step.verification.command)
            except Exception as e:
                logger.warning("Verification failed for step %d: %s", step_order, e)
                verification_passed = False

            result = ExecutionResult(
                plan_id=plan_id,
                step_order=step_order,
                success=True,
                output=output,
                duration_ms=int((time.monotonic() - started) * 1000),
                verification_passed=verification_passed,
                snapshot_id=snapshot_id,
                timestamp=self._clock(),
            )
            await self.update_plan_status(plan_id, "in_progress")
            await self.audit.log(
                "remediation_execute",
                details={
                    "trigger": "step_executed",
                    "script": step.command,
                    "result": "success",
                    "metadata": {
                        "plan_id": plan_id,
                        "step_order": step_order,
                        "duration_ms": result.duration_ms,
                        "verification_passed": verification_passed,
                        "snapshot_id": snapshot_id,
                    },
                },
            )

        await self._results.append(result, utc_day(result.timestamp))
        return result

    async def execute_auto_steps(self, plan_id: str) -> list[ExecutionResult]:
        """按顺序执行所有可自动执行的步骤，遇到第一个失败即停止。"""
        plan = await self.get_plan(plan_id)
        auto_steps = [s for s in plan.steps if s.auto_executable]
        if not auto_steps:
            logger.info("No auto-executable steps in plan %s", plan_id)
            return []

        await self.update_plan_status(plan_id, "in_progress")
        results: list[ExecutionResult] = []
        for step in auto_steps:
            result = await self.execute_step(plan_id, step.order)
            results.append(result)
            if not result.success:
                logger.warning("Auto-execution stopped at step %d due to failure", step.order)
                await self.update_plan_status(plan_id, "failed")
                return results

        # 仍有手动步骤时保持 in_progress
        manual = [s for s in plan.steps if not s.auto_executable]
        if not manual:
            await self.update_plan_status(plan_id, "completed")
        await self._notify_auto_completed(plan, results, len(manual))
        logger.info("Executed %d auto steps for plan %s", len(results), plan_id)
        return results

    async def execute_rollback(self, plan_id: str) -> list[ExecutionResult]:
        """按顺序执行全部回滚步骤，单步失败继续执行后续步骤。"""
        plan = await self.get_plan(plan_id)
        if not plan.rollback:
            logger.info("No rollback steps in plan %s", plan_id)
            return []

        await self.audit.log(
            "remediation_execute",
            details={
                "trigger": "rollback_started",
                "metadata": {"plan_id": plan_id, "rollback_steps": len(plan.rollback)},
            },
        )

        results: list[ExecutionResult] = []
        for step in sorted(plan.rollback, key=lambda r: r.order):
            started = time.monotonic()
            if step.command.strip().startswith("#"):
                result = ExecutionResult(
                    plan_id=plan_id, step_order=step.order, kind="rollback",
                    success=True, output="Skipped (comment)", timestamp=self._clock(),
                )
            else:
                try:
                    output = await self.executor.execute_command(step.command)
                    result = ExecutionResult(
                        plan_id=plan_id, step_order=step.order, kind="rollback", success=True, output=output,
                        duration_ms=int((time.monotonic() - started) * 1000), timestamp=self._clock(),
                    )
                except Exception as e:
                    logger.warning("Rollback step %d failed: %s", step.order, e)
                    result = ExecutionResult(
                        plan_id=plan_id, step_order=step.order, kind="rollback", success=False, error=str(e),
                        duration_ms=int((time.monotonic() - started) * 1000), timestamp=self._clock(),
                    )
            results.append(result)
            await self._results.append(result, utc_day(result.timestamp))

        await self.update_plan_status(plan_id, "rolled_back")
        succeeded = sum(1 for r in results if r.success)
        await self.audit.log(
            "remediation_execute",
            details={
                "trigger": "rollback_completed",
                "result": "success" if succeeded == len(results) else "partial_failure",
                "metadata": {
                    "plan_id": plan_id,
                    "success_count": succeeded,
                    "failure_count": len(results) - succeeded,
                },
            },
        )
        await self._notify_rollback(plan, succeeded, len(results))
        logger.info("Executed rollback for plan %s: %d/%d succeeded", plan_id, succeeded, len(results))
        return results

    # ------------------------------------------------------------------
    # 通知
    # ------------------------------------------------------------------

    async def _broadcast(self, payload: NotificationPayload) -> None:
        """发送到所有已启用渠道。通知失败不影响方案执行结果。"""
        try:
            channel_ids = await self.notifier.get_enabled_channel_ids()
            if not channel_ids:
                logger.debug("No enabled notification channels for: %s", payload.title)
                return
            await self.notifier.send(channel_ids, payload)
        except Exception as e:
            logger.error("Failed to send remediation plan notification: %s", e)

    async def _notify_step_failed(self, plan: RemediationPlan, step: RemediationStep, result: ExecutionResult) -> None:
        body = (
            f"修复方案步骤 {step.order} 执行失败，建议人工介入。\n\n"
            f"方案 ID: {plan.id}\n"
            f"告警 ID: {plan.alert_id}\n"
            f"步骤: {step.description}\n"
            f"命令: {step.command}\n"
            f"错误: {result.error}"
        )
        if result.snapshot_id:
            body += f"\n\n执行前快照: {result.snapshot_id}，如需回滚请使用该快照。"
        await self._broadcast(NotificationPayload(
            type="remediation",
            title=f"❌ 修复步骤失败 - 步骤 {step.order}",
            body=body,
            data={
                "plan_id": plan.id,
                "alert_id": plan.alert_id,
                "step_order": step.order,
                "status": "failed",
                "snapshot_id": result.snapshot_id,
            },
        ))

    async def _notify_auto_completed(
        self, plan: RemediationPlan, results: list[ExecutionResult], manual_count: int
    ) -> None:
        unverified = sum(1 for r in results if r.verification_passed is False)
        body = (
            f"修复方案的 {len(results)} 个自动步骤已全部执行成功。\n\n"
            f"方案 ID: {plan.id}\n"
            f"告警 ID: {plan.alert_id}\n"
        )
        if unverified:
            body += f"其中 {unverified} 个步骤验证未通过。\n"
        if manual_count:
            body += f"仍有 {manual_count} 个步骤需要人工确认后执行。"
        await self._broadcast(NotificationPayload(
            type="remediation",
            title="✅ 自动修复步骤已完成" if not manual_count else "⏸️ 自动修复步骤已完成，等待人工确认",
            body=body,
            data={
                "plan_id": plan.id,
                "alert_id": plan.alert_id,
                "executed_steps": len(results),
                "manual_steps": manual_count,
                "status": "completed" if not manual_count else "in_progress",
            },
        ))

    async def _notify_rollback(self, plan: RemediationPlan, succeeded: int, total: int) -> None:
        await self._broadcast(NotificationPayload(
            type="remediation",
            title="↩️ 修复方案已回滚" if succeeded == total else "⚠️ 修复方案回滚部分失败",
            body=(
                f"修复方案回滚已执行：{succeeded}/{total} 个回滚步骤成功。\n\n"
                f"方案 ID: {plan.id}\n"
                f"告警 ID: {plan.alert_id}"
            ),
            data={
                "plan_id": plan.id,
                "alert_id": plan.alert_id,
                "success_count": succeeded,
                "failure_count": total - succeeded,
                "status": "rolled_back",
            },
        ))
