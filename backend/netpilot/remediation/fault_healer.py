"""
故障自愈服务 (Fault Healer)

按故障模式匹配告警事件并执行预定义的修复脚本。

流程 (Flow):
    1. match_pattern：按模式列表顺序扫描已启用的模式，第一个命中者生效
    2. auto_heal 关闭：跳过执行，发送一条附带原始脚本的修复建议通知
    3. 诊断确认：不确认则跳过
    4. 创建修复前配置快照（尽力而为，失败只记日志）
    5. 审计记录执行意图 → 逐行执行修复脚本 → 执行验证脚本
    6. 脚本无错误且验证通过为 success，否则为 failed，并发送对应通知

内置模式在初始化时按名称补齐，不能删除，只能禁用。
修复执行记录在终态时写入 patterns/executions/ 按日分片的日志。
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from netpilot.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from netpilot.core.storage import JsonCollection, ShardedLog, utc_day
from netpilot.models.alert import AlertEvent, compare
from netpilot.models.base import apply_updates, utc_now
from netpilot.models.notification import NotificationPayload
from netpilot.services.audit import AuditLogger
from netpilot.services.notifier import NotificationService

from .command_executor import CommandExecutor
from .diagnosis import DiagnosticStrategy, HeuristicDiagnosis
from .models import (
    FaultCondition,
    FaultPattern,
    RemediationExecution,
    ScriptOutcome,
    VerificationOutcome,
)
from .snapshot import SnapshotProvider

logger = logging.getLogger(__name__)

BUILTIN_PATTERNS: list[dict[str, Any]] = [
    {
        "name": "PPPoE 断线重连",
        "description": "当 PPPoE 接口断开时，自动尝试重新连接",
        "conditions": [
            FaultCondition(metric="interface_status", metric_label="pppoe-out1", operator="eq", threshold=0),
        ],
        "remediation_script": (
            "/interface pppoe-client disable pppoe-out1\n"
            ":delay 3s\n"
            "/interface pppoe-client enable pppoe-out1"
        ),
        "verification_script": "/interface pppoe-client print where name=pppoe-out1",
    },
    {
        "name": "DHCP 池耗尽扩容",
        "description": "当 DHCP 地址池使用率过高时，自动扩展地址范围",
        # 内存作为代理指标
        "conditions": [FaultCondition(metric="memory", operator="gt", threshold=95)],
        "remediation_script": (
            "# DHCP 池扩容需要根据实际配置调整\n"
            "# /ip pool set [find name=dhcp-pool] ranges=192.168.1.10-192.168.1.250"
        ),
        "verification_script": "/ip pool print",
    },
    {
        "name": "接口 Down 重启",
        "description": "当网络接口异常断开时，自动重启接口",
        "conditions": [FaultCondition(metric="interface_status", operator="eq", threshold=0)],
        "remediation_script": (
            "# 接口重启脚本，需要指定具体接口名称\n"
            "# /interface disable [find name=ether1]\n"
            "# :delay 3s\n"
            "# /interface enable [find name=ether1]"
        ),
        "verification_script": "/interface print",
    },
]


def matches_conditions(event: AlertEvent, pattern: FaultPattern) -> bool:
    """至少一个条件的指标与告警一致且阈值比较成立。条件的 metric_label 不参与比较。"""
    for condition in pattern.conditions:
        if condition.metric != event.metric:
            continue
        if compare(event.current_value, condition.operator, condition.threshold):
            return True
    return False


class FaultHealer:
    """故障模式管理与自动修复执行。"""

    def __init__(
        self,
        data_dir: Path,
        executor: CommandExecutor,
        notifier: NotificationService,
        audit: AuditLogger,
        snapshots: Optional[SnapshotProvider] = None,
        diagnosis: Optional[DiagnosticStrategy] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        base = Path(data_dir) / "patterns"
        self._store: JsonCollection[FaultPattern] = JsonCollection(base / "patterns.json", FaultPattern)
        self._executions: ShardedLog[RemediationExecution] = ShardedLog(
            base / "executions", "remediations", RemediationExecution
        )
        self.executor = executor
        self.notifier = notifier
        self.audit = audit
        self.snapshots = snapshots
        self.diagnosis = diagnosis or HeuristicDiagnosis()
        self._clock = clock
        self._patterns: Optional[list[FaultPattern]] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # 模式管理
    # ------------------------------------------------------------------

    async def _ensure_loaded(self) -> list[FaultPattern]:
        if self._patterns is None:
            self._patterns = await self._store.load()
            await self._ensure_builtin_patterns()
        return self._patterns

    async def _ensure_builtin_patterns(self) -> None:
        existing = {p.name for p in self._patterns if p.builtin}
        added = False
        for definition in BUILTIN_PATTERNS:
            if definition["name"] in existing:
                continue
            self._patterns.append(FaultPattern(enabled=True, auto_heal=False, builtin=True, **definition))
            added = True
            logger.info("Added builtin fault pattern: %s", definition["name"])
        if added:
            await self._store.save(self._patterns)

    async def get_patterns(self) -> list[FaultPattern]:
        async with self._lock:
            return list(await self._ensure_loaded())

    async def get_pattern(self, pattern_id: str) -> FaultPattern:
        async with self._lock:
            for pattern in await self._ensure_loaded():
                if pattern.id == pattern_id:
                    return pattern
        raise NotFoundError(f"Fault pattern not found: {pattern_id}")

    async def create_pattern(self, **fields: Any) -> FaultPattern:
        if not str(fields.get("remediation_script", "")).strip():
            raise ValidationError("Remediation script must not be empty")
        fields["builtin"] = False
        pattern = FaultPattern(**fields)
        async with self._lock:
            patterns = await self._ensure_loaded()
            patterns.append(pattern)
            await self._store.save(patterns)
        logger.info("Created fault pattern: %s (%s)", pattern.name, pattern.id)
        return pattern

    async def update_pattern(self, pattern_id: str, **updates: Any) -> FaultPattern:
        if "remediation_script" in updates and not str(updates["remediation_script"]).strip():
            raise ValidationError("Remediation script must not be empty")
        updates.pop("builtin", None)
        updates["updated_at"] = self._clock()
        async with self._lock:
            patterns = await self._ensure_loaded()
            for i, pattern in enumerate(patterns):
                if pattern.id == pattern_id:
                    patterns[i] = apply_updates(pattern, updates)
                    await self._store.save(patterns)
                    logger.info("Updated fault pattern: %s (%s)", patterns[i].name, pattern_id)
                    return patterns[i]
        raise NotFoundError(f"Fault pattern not found: {pattern_id}")

    async def delete_pattern(self, pattern_id: str) -> None:
        async with self._lock:
            patterns = await self._ensure_loaded()
            for i, pattern in enumerate(patterns):
                if pattern.id != pattern_id:
                    continue
                if pattern.builtin:
                    raise PermissionDeniedError(
                        "Cannot delete builtin fault pattern. You can disable it instead."
                    )
                del patterns[i]
                await self._store.save(patterns)
                logger.info("Deleted fault pattern: %s (%s)", pattern.name, pattern_id)
                return
        raise NotFoundError(f"Fault pattern not found: {pattern_id}")

    async def enable_auto_heal(self, pattern_id: str) -> FaultPattern:
        return await self.update_pattern(pattern_id, auto_heal=True)

    async def disable_auto_heal(self, pattern_id: str) -> FaultPattern:
        return await self.update_pattern(pattern_id, auto_heal=False)

    async def enable_pattern(self, pattern_id: str) -> FaultPattern:
        return await self.update_pattern(pattern_id, enabled=True)

    async def disable_pattern(self, pattern_id: str) -> FaultPattern:
        return await self.update_pattern(pattern_id, enabled=False)

    # ------------------------------------------------------------------
    # 故障匹配
    # ------------------------------------------------------------------

    async def match_pattern(self, event: AlertEvent) -> Optional[FaultPattern]:
        """返回第一个匹配的已启用模式，模式列表顺序即优先级。"""
        for pattern in await self.get_patterns():
            if pattern.enabled and matches_conditions(event, pattern):
                logger.info("Alert event %s matched fault pattern: %s", event.id, pattern.name)
                return pattern
        return None

    async def handle_alert_event(self, event: AlertEvent) -> Optional[RemediationExecution]:
        """告警引擎入口：匹配模式并执行修复，无匹配时返回 None。"""
        pattern = await self.match_pattern(event)
        if pattern is None:
            logger.debug("No fault pattern matched for alert: %s", event.id)
            return None
        return await self.execute_remediation(pattern.id, event.id, event)

    # ------------------------------------------------------------------
    # 修复执行
    # ------------------------------------------------------------------

    def _synthetic_event(self, pattern: FaultPattern, alert_event_id: str) -> AlertEvent:
        condition = pattern.conditions[0] if pattern.conditions else None
        return AlertEvent(
            id=alert_event_id,
            rule_id="",
            rule_name="",
            severity="warning",
            metric=condition.metric if condition else "cpu",
            current_value=condition.threshold if condition else 0,
            threshold=condition.threshold if condition else 0,
            message=f"故障模式匹配: {pattern.name}",
            triggered_at=self._clock(),
        )

    async def execute_remediation(
        self,
        pattern_id: str,
        alert_event_id: str,
        event: Optional[AlertEvent] = None,
    ) -> RemediationExecution:
        """
        对指定告警执行一次故障修复。

        Args:
            pattern_id: 故障模式 ID，不存在时抛出 NotFoundError
            alert_event_id: 触发修复的告警事件 ID
            event: 告警事件本身；未提供时按模式条件构造一个用于诊断确认

        Returns:
            终态的修复执行记录（success / failed / skipped）
        """
        pattern = await self.get_pattern(pattern_id)
        remediation = RemediationExecution(
            pattern_id=pattern.id,
            pattern_name=pattern.name,
            alert_event_id=alert_event_id,
            started_at=self._clock(),
        )

        if not pattern.auto_heal:
            remediation.status = "skipped"
            remediation.completed_at = self._clock()
            await self._save(remediation)
            await self._notify_suggestion(pattern, alert_event_id)
            logger.info("Remediation skipped (auto-heal disabled): %s for alert %s", pattern.name, alert_event_id)
            return remediation

        diagnosis = await self.diagnosis.diagnose(pattern, event or self._synthetic_event(pattern, alert_event_id))
        remediation.diagnosis = diagnosis
        if not diagnosis.confirmed:
            remediation.status = "skipped"
            remediation.completed_at = self._clock()
            await self._save(remediation)
            logger.info("Remediation skipped (diagnosis not confirmed): %s for alert %s", pattern.name, alert_event_id)
            return remediation

        remediation.status = "executing"
        if self.snapshots is not None:
            try:
                remediation.pre_snapshot_id = await self.snapshots.create_snapshot("pre-remediation")
                logger.info("Created pre-remediation snapshot: %s", remediation.pre_snapshot_id)
            except Exception as e:
                logger.warning("Failed to create pre-remediation snapshot: %s", e)

        metadata = {
            "remediation_id": remediation.id,
            "pattern_id": pattern.id,
            "alert_event_id": alert_event_id,
        }
        await self.audit.log(
            "remediation_execute",
            details={
                "trigger": f"fault_pattern:{pattern.name}",
                "script": pattern.remediation_script,
                "metadata": {**metadata, "pre_snapshot_id": remediation.pre_snapshot_id},
            },
        )

        try:
            result = await self.executor.run_script(pattern.remediation_script)
            remediation.execution_result = result
            verification = await self._verify(pattern)
            remediation.verification_result = verification
            remediation.status = "success" if verification.passed and not result.error else "failed"
        except Exception as e:
            logger.exception("Remediation crashed: %s for alert %s", pattern.name, alert_event_id)
            remediation.status = "failed"
            remediation.execution_result = ScriptOutcome(output="", error=str(e))

        remediation.completed_at = self._clock()
        await self._save(remediation)

        outcome = remediation.execution_result
        await self.audit.log(
            "remediation_execute",
            details={
                "trigger": f"fault_pattern:{pattern.name}",
                "result": remediation.status,
                "error": outcome.error if outcome else None,
                "metadata": {
                    **metadata,
                    "output": outcome.output if outcome else "",
                    "verification_passed": (
                        remediation.verification_result.passed if remediation.verification_result else False
                    ),
                },
            },
        )

        if remediation.status == "success":
            await self._notify_success(remediation, pattern)
        else:
            await self._notify_failure(remediation, pattern)
        logger.info("Remediation %s: %s for alert %s", remediation.status, pattern.name, alert_event_id)
        return remediation

    async def _verify(self, pattern: FaultPattern) -> VerificationOutcome:
        if not pattern.verification_script:
            return VerificationOutcome(passed=True, message="无验证脚本，假定修复成功")
        try:
            result = await self.executor.run_script(pattern.verification_script)
        except Exception as e:
            return VerificationOutcome(passed=False, message=f"验证脚本执行失败: {e}")
        if result.error:
            return VerificationOutcome(passed=False, message=f"验证失败: {result.error}")
        return VerificationOutcome(passed=True, message=f"验证通过: {result.output}")

    async def _save(self, remediation: RemediationExecution) -> None:
        await self._executions.append(remediation, utc_day(remediation.started_at))

    # ------------------------------------------------------------------
    # 通知
    # ------------------------------------------------------------------

    async def _broadcast(self, payload: NotificationPayload) -> None:
        """发送到所有已启用渠道。通知失败不影响修复结果。"""
        try:
            channel_ids = await self.notifier.get_enabled_channel_ids()
            if not channel_ids:
                logger.debug("No enabled notification channels for: %s", payload.title)
                return
            await self.notifier.send(channel_ids, payload)
        except Exception as e:
            logger.error("Failed to send remediation notification: %s", e)

    async def _notify_suggestion(self, pattern: FaultPattern, alert_event_id: str) -> None:
        await self._broadcast(NotificationPayload(
            type="alert",
            title=f"🔧 故障修复建议 - {pattern.name}",
            body=(
                f'检测到与故障模式 "{pattern.name}" 匹配的告警。\n\n'
                f"告警事件 ID: {alert_event_id}\n"
                f"故障描述: {pattern.description}\n\n"
                f"自动修复已禁用，建议手动执行以下修复脚本:\n\n"
                f"```\n{pattern.remediation_script}\n```\n\n"
                f"如需启用自动修复，请在故障模式管理中开启。"
            ),
            data={
                "pattern_id": pattern.id,
                "pattern_name": pattern.name,
                "alert_event_id": alert_event_id,
                "auto_heal_disabled": True,
                "remediation_script": pattern.remediation_script,
            },
        ))

    async def _notify_success(self, remediation: RemediationExecution, pattern: FaultPattern) -> None:
        verification = remediation.verification_result
        await self._broadcast(NotificationPayload(
            type="remediation",
            title=f"✅ 故障修复成功 - {pattern.name}",
            body=(
                f'故障模式 "{pattern.name}" 的修复脚本已成功执行。\n\n'
                f"修复 ID: {remediation.id}\n"
                f"告警事件 ID: {remediation.alert_event_id}\n"
                + (f"验证结果: {verification.message}" if verification else "")
            ),
            data={
                "remediation_id": remediation.id,
                "pattern_id": pattern.id,
                "pattern_name": pattern.name,
                "alert_event_id": remediation.alert_event_id,
                "status": "success",
                "pre_snapshot_id": remediation.pre_snapshot_id,
            },
        ))

    async def _notify_failure(self, remediation: RemediationExecution, pattern: FaultPattern) -> None:
        error = (remediation.execution_result.error if remediation.execution_result else None) or "未知错误"
        verification = remediation.verification_result.message if remediation.verification_result else ""
        body = (
            f'故障模式 "{pattern.name}" 的修复脚本执行失败，建议人工介入。\n\n'
            f"修复 ID: {remediation.id}\n"
            f"告警事件 ID: {remediation.alert_event_id}\n"
            f"错误信息: {error}\n"
        )
        if verification:
            body += f"验证结果: {verification}\n"
        if remediation.pre_snapshot_id:
            body += f"\n可使用快照 {remediation.pre_snapshot_id} 进行回滚。"
        await self._broadcast(NotificationPayload(
            type="remediation",
            title=f"❌ 故障修复失败 - {pattern.name}",
            body=body,
            data={
                "remediation_id": remediation.id,
                "pattern_id": pattern.id,
                "pattern_name": pattern.name,
                "alert_event_id": remediation.alert_event_id,
                "status": "failed",
                "error": error,
                "pre_snapshot_id": remediation.pre_snapshot_id,
            },
        ))

    # ------------------------------------------------------------------
    # 修复历史
    # ------------------------------------------------------------------

    async def get_remediation_history(self, limit: Optional[int] = None) -> list[RemediationExecution]:
        records = await self._executions.read_all()
        records.sort(key=lambda r: r.started_at, reverse=True)
        return records[:limit] if limit and limit > 0 else records

    async def get_remediation(self, remediation_id: str) -> RemediationExecution:
        for record in await self._executions.read_all():
            if record.id == remediation_id:
                return record
        raise NotFoundError(f"Remediation not found: {remediation_id}")

    async def get_pattern_stats(self, pattern_id: str) -> dict[str, Any]:
        records = [r for r in await self._executions.read_all() if r.pattern_id == pattern_id]
        total = len(records)
        success = sum(1 for r in records if r.status == "success")
        return {
            "total": total,
            "success": success,
            "failed": sum(1 for r in records if r.status == "failed"),
            "skipped": sum(1 for r in records if r.status == "skipped"),
            "success_rate": round(success / total, 4) if total else 0.0,
        }
