"""
告警引擎任务模块。

定期用最新指标样本评估所有已启用的告警规则，触发或恢复告警，
并通过通知服务发送告警 / 恢复通知。

触发条件：
    - 条件持续满足至少 duration_seconds（0 表示首次满足即触发）
    - 规则不在冷却期内（距上次触发不足 cooldown_seconds 时跳过评估）
    - 同一规则同一时刻最多一个 active 事件

触发后：AI 分析（先查分析缓存，失败回退到固定文案）→ 持久化 → 审计 → 通知，
随后在后台执行规则自带的自动响应脚本，并交给 FaultHealer 匹配故障模式，
没有匹配模式时由 RemediationAdvisor 生成修复方案。
通知失败不会阻止告警状态变化。

告警事件以追加方式写入 alerts/events/ 按日分片的日志，同一 ID 以最后一条记录为准。
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Coroutine, Optional

from netpilot.core.exceptions import NotFoundError, ValidationError
from netpilot.core.storage import JsonCollection, ShardedLog, utc_day
from netpilot.models.alert import OPERATORS, AlertEvent, AlertRule, AutoResponseResult, MetricSample, compare
from netpilot.models.base import apply_updates, utc_now
from netpilot.models.notification import NotificationPayload
from netpilot.remediation.advisor import RemediationAdvisor
from netpilot.remediation.ai_client import ALERT_ANALYSIS_SYSTEM_PROMPT, Analyzer
from netpilot.remediation.command_executor import CommandExecutor
from netpilot.remediation.fault_healer import FaultHealer
from netpilot.services.analysis_cache import AnalysisCache, generate_fingerprint
from netpilot.services.audit import AuditLogger
from netpilot.services.notifier import NotificationService

logger = logging.getLogger(__name__)

CHECK_INTERVAL = 60  # 检查间隔（秒）

MetricsProvider = Callable[[], Awaitable[MetricSample]]

OPERATOR_TEXT = {
    "gt": "大于",
    "lt": "小于",
    "eq": "等于",
    "ne": "不等于",
    "gte": "大于等于",
    "lte": "小于等于",
}

METRIC_TEXT = {
    "cpu": "CPU 使用率",
    "memory": "内存使用率",
    "disk": "磁盘使用率",
    "interface_status": "接口状态",
    "interface_traffic": "接口流量",
}

SEVERITY_TEXT = {
    "info": "信息",
    "warning": "警告",
    "critical": "严重",
    "emergency": "紧急",
}

SEVERITY_TITLE = {
    "info": "📢 信息",
    "warning": "⚠️ 警告",
    "critical": "🔴 严重",
    "emergency": "🚨 紧急",
}


def build_alert_message(rule: AlertRule, current_value: float) -> str:
    metric = METRIC_TEXT.get(rule.metric, rule.metric)
    label = f" ({rule.metric_label})" if rule.metric_label else ""
    if rule.metric == "interface_status":
        status = "连接" if current_value >= 1 else "断开"
        return f"{metric}{label} 当前状态为 {status}"
    operator = OPERATOR_TEXT.get(rule.operator, rule.operator)
    return f"{metric}{label} 当前值 {current_value} {operator} 阈值 {rule.threshold}"


def fallback_analysis(event: AlertEvent) -> str:
    return f"[{SEVERITY_TEXT.get(event.severity, event.severity)}] {event.message}。建议检查相关配置和系统状态。"


class AlertEngine:
    """告警规则管理、指标评估与告警生命周期。"""

    def __init__(
        self,
        data_dir: Path,
        notifier: NotificationService,
        audit: AuditLogger,
        executor: Optional[CommandExecutor] = None,
        healer: Optional[FaultHealer] = None,
        advisor: Optional[RemediationAdvisor] = None,
        analyzer: Optional[Analyzer] = None,
        cache: Optional[AnalysisCache] = None,
        clock: Callable[[], datetime] = utc_now,
        check_interval: float = CHECK_INTERVAL,
        auto_execute_plans: bool = True,
    ) -> None:
        base = Path(data_dir) / "alerts"
        self._store: JsonCollection[AlertRule] = JsonCollection(base / "rules.json", AlertRule)
        self._events: ShardedLog[AlertEvent] = ShardedLog(base / "events", "events", AlertEvent)
        self.notifier = notifier
        self.audit = audit
        self.executor = executor
        self.healer = healer
        self.advisor = advisor
        self.analyzer = analyzer
        self.cache = cache
        self._clock = clock
        self.check_interval = check_interval
        self.auto_execute_plans = auto_execute_plans
        self._rules: Optional[list[AlertRule]] = None
        self._active: Optional[dict[str, AlertEvent]] = None
        self._pending: dict[str, datetime] = {}  # rule_id -> 首次满足条件时间
        self._lock = asyncio.Lock()
        self._eval_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # 规则管理
    # ------------------------------------------------------------------

    async def _ensure_loaded(self) -> list[AlertRule]:
        if self._rules is None:
            self._rules = await self._store.load()
        return self._rules

    async def get_rules(self) -> list[AlertRule]:
        async with self._lock:
            return list(await self._ensure_loaded())

    async def get_rule(self, rule_id: str) -> AlertRule:
        async with self._lock:
            for rule in await self._ensure_loaded():
                if rule.id == rule_id:
                    return rule
        raise NotFoundError(f"Alert rule not found: {rule_id}")

    async def create_rule(self, **fields: Any) -> AlertRule:
        if fields.get("operator") not in OPERATORS:
            raise ValidationError(f"Unsupported operator: {fields.get('operator')}")
        rule = AlertRule(**fields)
        async with self._lock:
            rules = await self._ensure_loaded()
            rules.append(rule)
            await self._store.save(rules)
        logger.info("Alert rule created: %s (%s)", rule.name, rule.id)
        return rule

    async def update_rule(self, rule_id: str, **updates: Any) -> AlertRule:
        if "operator" in updates and updates["operator"] not in OPERATORS:
            raise ValidationError(f"Unsupported operator: {updates['operator']}")
        updates.setdefault("updated_at", self._clock())
        async with self._lock:
            rules = await self._ensure_loaded()
            for i, rule in enumerate(rules):
                if rule.id == rule_id:
                    rules[i] = apply_updates(rule, updates)
                    await self._store.save(rules)
                    return rules[i]
        raise NotFoundError(f"Alert rule not found: {rule_id}")

    async def delete_rule(self, rule_id: str) -> None:
        async with self._lock:
            rules = await self._ensure_loaded()
            remaining = [r for r in rules if r.id != rule_id]
            if len(remaining) == len(rules):
                raise NotFoundError(f"Alert rule not found: {rule_id}")
            self._rules = remaining
            await self._store.save(remaining)
        self._pending.pop(rule_id, None)
        logger.info("Alert rule deleted: %s", rule_id)

    async def enable_rule(self, rule_id: str) -> AlertRule:
        return await self.update_rule(rule_id, enabled=True)

    async def disable_rule(self, rule_id: str) -> AlertRule:
        self._pending.pop(rule_id, None)
        return await self.update_rule(rule_id, enabled=False)

    # ------------------------------------------------------------------
    # 告警事件
    # ------------------------------------------------------------------

    async def _load_active(self) -> dict[str, AlertEvent]:
        if self._active is None:
            latest: dict[str, AlertEvent] = {}
            for event in await self._events.read_all():
                latest[event.id] = event
            self._active = {eid: e for eid, e in latest.items() if e.status == "active"}
        return self._active

    async def _save_event(self, event: AlertEvent) -> None:
        await self._events.append(event, utc_day(event.triggered_at))

    async def get_active_alerts(self) -> list[AlertEvent]:
        active = await self._load_active()
        return sorted(active.values(), key=lambda e: e.triggered_at, reverse=True)

    async def get_alert_history(
        self,
        from_time: Optional[datetime] = None,
        to_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[AlertEvent]:
        """按触发时间过滤的告警历史，同一事件只返回最新状态。"""
        if from_time or to_time:
            start = utc_day(from_time) if from_time else min(await self._events.list_days(), default=utc_day(self._clock()))
            end = utc_day(to_time) if to_time else utc_day(self._clock())
            records = await self._events.read_range(start, end)
        else:
            records = await self._events.read_all()

        latest: dict[str, AlertEvent] = {}
        for event in records:
            latest[event.id] = event
        events = list(latest.values())
        if from_time:
            events = [e for e in events if e.triggered_at >= from_time]
        if to_time:
            events = [e for e in events if e.triggered_at <= to_time]
        events.sort(key=lambda e: e.triggered_at, reverse=True)
        return events[:limit]

    async def get_alert_event(self, event_id: str) -> AlertEvent:
        found: Optional[AlertEvent] = None
        for event in await self._events.read_all():
            if event.id == event_id:
                found = event
        if found is None:
            raise NotFoundError(f"Alert event not found: {event_id}")
        return found

    async def resolve_alert(self, event_id: str) -> AlertEvent:
        """手动解决告警，不发送恢复通知。"""
        active = await self._load_active()
        event = active.get(event_id)
        if event is None:
            raise NotFoundError(f"Active alert not found: {event_id}")
        await self._resolve(event, trigger="manual")
        logger.info("Alert resolved manually: %s (%s)", event.rule_name, event_id)
        return event

    async def _resolve(self, event: AlertEvent, trigger: str) -> None:
        event.status = "resolved"
        event.resolved_at = self._clock()
        await self._save_event(event)
        (await self._load_active()).pop(event.id, None)
        await self.audit.log(
            "alert_resolve",
            details={
                "trigger": trigger,
                "metadata": {"event_id": event.id, "rule_id": event.rule_id, "rule_name": event.rule_name},
            },
        )

    # ------------------------------------------------------------------
    # 评估
    # ------------------------------------------------------------------

    def _in_cooldown(self, rule: AlertRule, now: datetime) -> bool:
        if rule.last_triggered_at is None or rule.cooldown_seconds <= 0:
            return False
        return now - rule.last_triggered_at < timedelta(seconds=rule.cooldown_seconds)

    async def evaluate(self, sample: MetricSample) -> list[AlertEvent]:
        """
        用一次指标样本评估所有规则。

        先检查现有 active 告警是否恢复，再评估每条启用的规则。
        缺少对应指标值的规则本轮跳过，持续时间跟踪保持不变。

        Returns:
            本轮新触发的告警事件
        """
        async with self._eval_lock:
            await self._check_recovery(sample)

            now = self._clock()
            active = await self._load_active()
            triggered: list[AlertEvent] = []

            for rule in await self.get_rules():
                if not rule.enabled:
                    continue
                if self._in_cooldown(rule, now):
                    logger.debug("Rule %s is in cooldown period", rule.name)
                    continue

                value = sample.value_for(rule.metric, rule.metric_label)
                if value is None:
                    logger.debug("No metric value for rule %s", rule.name)
                    continue

                if not compare(value, rule.operator, rule.threshold):
                    self._pending.pop(rule.id, None)
                    continue

                if any(e.rule_id == rule.id for e in active.values()):
                    continue

                first_seen = self._pending.setdefault(rule.id, now)
                if (now - first_seen).total_seconds() < rule.duration_seconds:
                    continue

                self._pending.pop(rule.id, None)
                triggered.append(await self._raise_alert(rule, value, now))

            return triggered

    async def _check_recovery(self, sample: MetricSample) -> None:
        rules = {r.id: r for r in await self.get_rules()}
        for event in list((await self._load_active()).values()):
            rule = rules.get(event.rule_id)
            if rule is None:
                await self._resolve(event, trigger="rule_deleted")
                logger.info("Alert auto-resolved (rule deleted): %s (%s)", event.rule_name, event.id)
                continue
            if not rule.enabled:
                await self._resolve(event, trigger="rule_disabled")
                logger.info("Alert auto-resolved (rule disabled): %s (%s)", rule.name, event.id)
                continue

            value = sample.value_for(rule.metric, rule.metric_label)
            if value is None or compare(value, rule.operator, rule.threshold):
                continue

            await self._resolve(event, trigger="auto_recovery")
            await self._notify(rule, NotificationPayload(
                type="recovery",
                title=f"✅ 已恢复 - {rule.name}",
                body=f"告警已恢复: {event.message}",
                data={
                    "event_id": event.id,
                    "rule_id": rule.id,
                    "severity": event.severity,
                    "resolved_at": event.resolved_at.isoformat() if event.resolved_at else None,
                },
            ))
            logger.info("Alert recovered: %s (%s)", rule.name, event.id)

    async def _raise_alert(self, rule: AlertRule, value: float, now: datetime) -> AlertEvent:
        event = AlertEvent(
            rule_id=rule.id,
            rule_name=rule.name,
            severity=rule.severity,
            metric=rule.metric,
            metric_label=rule.metric_label,
            current_value=value,
            threshold=rule.threshold,
            message=build_alert_message(rule, value),
            triggered_at=now,
        )
        event.ai_analysis = await self._analyze(event)

        await self._save_event(event)
        (await self._load_active())[event.id] = event
        await self.update_rule(rule.id, last_triggered_at=now, updated_at=rule.updated_at)

        await self.audit.log(
            "alert_trigger",
            details={
                "trigger": rule.name,
                "metadata": {
                    "event_id": event.id,
                    "rule_id": rule.id,
                    "metric": rule.metric,
                    "current_value": value,
                    "threshold": rule.threshold,
                    "severity": rule.severity,
                },
            },
        )

        body = event.message + (f"\n\nAI 分析: {event.ai_analysis}" if event.ai_analysis else "")
        await self._notify(rule, NotificationPayload(
            type="alert",
            title=f"{SEVERITY_TITLE.get(event.severity, event.severity)} - {rule.name}",
            body=body,
            data={
                "event_id": event.id,
                "rule_id": rule.id,
                "severity": event.severity,
                "metric": event.metric,
                "current_value": event.current_value,
                "threshold": event.threshold,
            },
        ))
        logger.info("Alert triggered: %s (%s)", rule.name, event.id)

        self._spawn(self._respond(event, rule))
        return event

    async def _analyze(self, event: AlertEvent) -> str:
        """先查分析缓存，未命中时调用 AI，任何失败都回退到固定文案。"""
        if self.analyzer is None:
            return fallback_analysis(event)
        fingerprint = generate_fingerprint(event)
        if self.cache:
            cached = self.cache.get(fingerprint)
            if cached is not None:
                return cached
        try:
            text = await self.analyzer.analyze(
                ALERT_ANALYSIS_SYSTEM_PROMPT,
                f"{event.summary()}\n当前值: {event.current_value}，阈值: {event.threshold}",
            )
        except Exception as e:
            logger.warning("Failed to get AI analysis for alert %s: %s", event.id, e)
            return fallback_analysis(event)
        if self.cache:
            self.cache.set(fingerprint, text)
        return text

    async def _notify(self, rule: AlertRule, payload: NotificationPayload) -> None:
        if not rule.channels:
            logger.debug("No notification channels configured for rule: %s", rule.name)
            return
        try:
            await self.notifier.send(rule.channels, payload)
        except Exception as e:
            logger.error("Failed to send %s notification for %s: %s", payload.type, rule.name, e)

    # ------------------------------------------------------------------
    # 自动响应与修复
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_idle(self) -> None:
        """等待所有后台响应任务完成。"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _respond(self, event: AlertEvent, rule: AlertRule) -> None:
        """告警触发后的后台处理，任何异常都在这里记录，不影响评估循环。"""
        try:
            if rule.auto_response and rule.auto_response.enabled and rule.auto_response.script:
                await self._execute_auto_response(event, rule)
            execution = await self.healer.handle_alert_event(event) if self.healer else None
            if execution is None and self.advisor is not None:
                await self.advisor.handle_alert_event(event, execute_auto=self.auto_execute_plans)
        except Exception:
            logger.exception("Alert response failed for %s (%s)", rule.name, event.id)

    async def _execute_auto_response(self, event: AlertEvent, rule: AlertRule) -> None:
        script = rule.auto_response.script
        trigger = f"auto_response:{rule.name}"
        metadata = {"event_id": event.id, "rule_id": rule.id}
        await self.audit.log("script_execute", details={"trigger": trigger, "script": script, "metadata": metadata})

        if self.executor is None:
            error = "Device executor not configured"
            output = None
        else:
            try:
                outcome = await self.executor.run_script(script)
                output, error = outcome.output, outcome.error
            except Exception as e:
                output, error = None, str(e)

        event.auto_response_result = AutoResponseResult(
            executed=True, success=error is None, output=output, error=error,
        )
        await self._save_event(event)

        if error is None:
            await self.audit.log(
                "script_execute",
                details={"trigger": trigger, "result": "success", "metadata": {**metadata, "output": output}},
            )
            logger.info("Auto-response executed successfully for: %s", rule.name)
            return

        await self.audit.log(
            "script_execute",
            details={"trigger": trigger, "result": "failed", "error": error, "metadata": metadata},
        )
        await self._notify(rule, NotificationPayload(
            type="alert",
            title=f"❌ 自动响应失败 - {rule.name}",
            body=f"自动响应脚本执行失败: {error}\n\n原始告警: {event.message}",
            data={"event_id": event.id, "rule_id": rule.id, "error": error},
        ))
        logger.error("Auto-response failed for %s: %s", rule.name, error)

    # ------------------------------------------------------------------
    # 评估循环
    # ------------------------------------------------------------------

    async def start(self, metrics_provider: MetricsProvider) -> None:
        if self._loop_task and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._evaluation_loop(metrics_provider))
        logger.info("Alert engine started (interval=%ss)", self.check_interval)

    async def stop(self) -> None:
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info("Alert engine stopped")

    async def _evaluation_loop(self, metrics_provider: MetricsProvider) -> None:
        while True:
            try:
                sample = await metrics_provider()
                await self.evaluate(sample)
            except Exception:
                logger.exception("Error in alert evaluation loop")
            await asyncio.sleep(self.check_interval)
