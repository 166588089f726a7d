"""
NetPilot 流水线装配模块 (NetPilot Pipeline Wiring Module)

按 Settings 显式构造所有组件并注入依赖，负责后台循环的启动与停止。
不存在模块级服务单例：每个 Pipeline 持有自己的一整套组件实例。

Builds every component explicitly from Settings and injects dependencies, and owns
start/stop of the background loops. There are no module-level service singletons.

组件关系 (Component Graph):
- AuditLogger / AnalysisCache / NotificationService：无依赖的基础服务
- CommandExecutor + FileSnapshotStore：共享同一个设备执行器
- FaultHealer / RemediationAdvisor：共享执行器、快照、分析服务和缓存
- AlertEngine：评估指标，触发后交给 FaultHealer，无匹配模式时交给 RemediationAdvisor
- Scheduler：按 cron 触发内置任务类型（告警检查、巡检、健康报告、审计清理、缓存清扫、通知历史清理）
"""
import logging
from typing import Any, Optional

from netpilot.bootstrap import BootstrapConfig
from netpilot.core.config import Settings
from netpilot.core.exceptions import ValidationError
from netpilot.models.alert import AutoResponse, MetricSample
from netpilot.models.task import ScheduledTask
from netpilot.remediation.advisor import RemediationAdvisor
from netpilot.remediation.ai_client import Analyzer, LLMAnalyzer
from netpilot.remediation.command_executor import CommandExecutor, DeviceExecutor, DryRunDeviceExecutor
from netpilot.remediation.diagnosis import select_strategy
from netpilot.remediation.fault_healer import FaultHealer
from netpilot.remediation.models import FaultCondition
from netpilot.remediation.snapshot import FileSnapshotStore
from netpilot.services.analysis_cache import AnalysisCache
from netpilot.services.audit import AuditLogger
from netpilot.services.notifier import NotificationService
from netpilot.services.scheduler import Scheduler
from netpilot.tasks.alert_engine import AlertEngine, MetricsProvider
from netpilot.tasks.inspection import HealthReportConfig, InspectionConfig, generate_health_report, run_inspection

logger = logging.getLogger(__name__)


def _first(response: Any) -> dict:
    if isinstance(response, list):
        return response[0] if response and isinstance(response[0], dict) else {}
    return response if isinstance(response, dict) else {}


def _percent_used(free: Any, total: Any) -> Optional[float]:
    try:
        free_f, total_f = float(free), float(total)
    except (TypeError, ValueError):
        return None
    if total_f <= 0:
        return None
    return round((total_f - free_f) / total_f * 100, 2)


async def collect_device_metrics(device: DeviceExecutor) -> MetricSample:
    """
    从设备采集一次指标样本。

    /system/resource/print → cpu / memory / disk 百分比；
    /interface/print → interface_status{name}，运行中为 1，否则为 0。
    字段缺失的指标不出现在样本中，对应规则本轮跳过。
    """
    resource = _first(await device.execute("/system/resource/print", []))
    system: dict[str, float] = {}
    if "cpu-load" in resource:
        system["cpu"] = float(resource["cpu-load"])
    memory = _percent_used(resource.get("free-memory"), resource.get("total-memory"))
    if memory is not None:
        system["memory"] = memory
    disk = _percent_used(resource.get("free-hdd-space"), resource.get("total-hdd-space"))
    if disk is not None:
        system["disk"] = disk

    interfaces = await device.execute("/interface/print", [])
    status: dict[str, float] = {}
    for iface in interfaces if isinstance(interfaces, list) else []:
        if not isinstance(iface, dict) or "name" not in iface:
            continue
        running = str(iface.get("running", "false")).lower() == "true"
        status[iface["name"]] = 1.0 if running else 0.0

    return MetricSample(system=system, labeled={"interface_status": status} if status else {})


class Pipeline:
    """一整套装配好的 NetPilot 组件。"""

    def __init__(
        self,
        settings: Settings,
        device: DeviceExecutor,
        analyzer: Optional[Analyzer] = None,
        metrics_provider: Optional[MetricsProvider] = None,
    ) -> None:
        data_dir = settings.data_dir
        self.settings = settings
        self.device = device
        self.analyzer = analyzer

        self.audit = AuditLogger(data_dir, retention_days=settings.audit_retention_days)
        self.cache = AnalysisCache(
            default_ttl=settings.cache_ttl_seconds,
            max_size=settings.cache_max_size,
            sweep_interval=settings.cache_sweep_interval,
        )
        self.notifier = NotificationService(
            data_dir,
            retry_delays=settings.notify_retry_delays,
            max_retries=settings.notify_max_retries,
            http_timeout=settings.http_timeout,
        )
        self.executor = CommandExecutor(device)
        self.snapshots = FileSnapshotStore(data_dir / "snapshots", device, audit=self.audit)
        self.healer = FaultHealer(
            data_dir,
            self.executor,
            self.notifier,
            self.audit,
            snapshots=self.snapshots,
            diagnosis=select_strategy(analyzer, self.cache),
        )
        self.advisor = RemediationAdvisor(
            data_dir,
            self.executor,
            self.notifier,
            self.audit,
            analyzer=analyzer,
            snapshots=self.snapshots,
            cache=self.cache,
        )
        self.engine = AlertEngine(
            data_dir,
            self.notifier,
            self.audit,
            executor=self.executor,
            healer=self.healer,
            advisor=self.advisor,
            analyzer=analyzer,
            cache=self.cache,
            check_interval=settings.alert_check_interval,
        )
        self.scheduler = Scheduler(data_dir, self.audit)
        self.metrics_provider = metrics_provider or self._device_metrics
        self._register_task_handlers()

    async def _device_metrics(self) -> MetricSample:
        return await collect_device_metrics(self.device)

    def _register_task_handlers(self) -> None:
        self.scheduler.register_handler("alert_check", self._run_alert_check)
        self.scheduler.register_handler("inspection", self._run_inspection)
        self.scheduler.register_handler("health_report", self._run_health_report)
        self.scheduler.register_handler("audit_cleanup", self._run_audit_cleanup)
        self.scheduler.register_handler("cache_cleanup", self._run_cache_cleanup)
        self.scheduler.register_handler("notification_cleanup", self._run_notification_cleanup)

    async def _run_alert_check(self, task: ScheduledTask) -> dict:
        events = await self.engine.evaluate(await self.metrics_provider())
        return {"triggered": [e.id for e in events]}

    async def _run_inspection(self, task: ScheduledTask) -> dict:
        config = InspectionConfig.model_validate(task.config)
        result = await run_inspection(await self.metrics_provider(), config, self.engine, self.notifier)
        return {
            "inspection_id": result.id,
            "overall_status": result.overall_status,
            "issue_count": len(result.issues),
            "triggered_alerts": result.triggered_alerts,
        }

    async def _run_health_report(self, task: ScheduledTask) -> dict:
        config = HealthReportConfig.model_validate(task.config)
        try:
            sample = await self.metrics_provider()
        except Exception as e:
            logger.warning("Metrics unavailable for health report, scoring alerts only: %s", e)
            sample = None
        report = await generate_health_report(sample, config, self.engine, self.notifier)
        return {"report_id": report.id, "score": report.score, "status": report.overall_health}

    async def _run_audit_cleanup(self, task: ScheduledTask) -> dict:
        return {"removed": await self.audit.cleanup(task.config.get("retention_days"))}

    async def _run_cache_cleanup(self, task: ScheduledTask) -> dict:
        return {"removed": self.cache.cleanup()}

    async def _run_notification_cleanup(self, task: ScheduledTask) -> dict:
        days = task.config.get("retention_days", self.settings.notification_retention_days)
        return {"removed": await self.notifier.cleanup_history(days)}

    async def start(self, run_alert_loop: bool = True) -> None:
        """启动所有后台循环：审计清理、缓存清扫、调度器，以及可选的告警评估循环。"""
        await self.audit.start()
        await self.cache.start()
        await self.healer.get_patterns()  # 补齐内置故障模式
        await self.scheduler.start()
        if run_alert_loop:
            await self.engine.start(self.metrics_provider)
        logger.info("NetPilot pipeline started (data_dir=%s)", self.settings.data_dir)

    async def stop(self) -> None:
        """停止后台循环，等待正在进行的告警响应完成。"""
        await self.engine.stop()
        await self.scheduler.stop()
        await self.engine.wait_idle()
        await self.cache.stop()
        await self.audit.stop()
        logger.info("NetPilot pipeline stopped")

    async def apply_bootstrap(self, cfg: BootstrapConfig) -> dict[str, int]:
        """按名称创建启动配置中尚不存在的实体，返回每类新建数量。"""
        created = {"channels": 0, "rules": 0, "tasks": 0, "patterns": 0}

        channels = {ch.name: ch for ch in await self.notifier.get_channels()}
        for ch in cfg.channels:
            if ch.name in channels:
                continue
            channels[ch.name] = await self.notifier.create_channel(
                name=ch.name,
                type=ch.type,
                enabled=ch.enabled,
                config=ch.config,
                severity_filter=ch.severity_filter,
            )
            created["channels"] += 1

        existing_rules = {r.name for r in await self.engine.get_rules()}
        for r in cfg.rules:
            if r.name in existing_rules:
                continue
            missing = [name for name in r.channels if name not in channels]
            if missing:
                raise ValidationError(f"Rule '{r.name}' references unknown channels: {', '.join(missing)}")
            await self.engine.create_rule(
                name=r.name,
                enabled=r.enabled,
                metric=r.metric,
                metric_label=r.metric_label,
                operator=r.operator,
                threshold=r.threshold,
                duration_seconds=r.duration,
                cooldown_seconds=r.cooldown,
                severity=r.severity,
                channels=[channels[name].id for name in r.channels],
                auto_response=AutoResponse(enabled=True, script=r.auto_response) if r.auto_response else None,
            )
            created["rules"] += 1

        existing_tasks = {t.name for t in await self.scheduler.get_tasks()}
        for t in cfg.tasks:
            if t.name in existing_tasks:
                continue
            await self.scheduler.create_task(t.name, t.type, t.cron, enabled=t.enabled, config=t.config)
            created["tasks"] += 1

        existing_patterns = {p.name for p in await self.healer.get_patterns()}
        for p in cfg.patterns:
            if p.name in existing_patterns:
                continue
            await self.healer.create_pattern(
                name=p.name,
                description=p.description,
                enabled=p.enabled,
                auto_heal=p.auto_heal,
                conditions=[
                    FaultCondition(
                        metric=c.metric, metric_label=c.metric_label, operator=c.operator, threshold=c.threshold,
                    )
                    for c in p.conditions
                ],
                remediation_script=p.remediation_script,
                verification_script=p.verification_script,
            )
            created["patterns"] += 1

        logger.info("Bootstrap applied: %s", created)
        return created


def build_analyzer(settings: Settings) -> Optional[Analyzer]:
    if not settings.ai_enabled:
        return None
    return LLMAnalyzer(
        api_key=settings.ai_api_key,
        api_base=settings.ai_api_base,
        model=settings.ai_model,
        timeout=settings.ai_timeout,
        max_tokens=settings.ai_max_tokens,
    )


def build_pipeline(
    settings: Settings,
    device: Optional[DeviceExecutor] = None,
    analyzer: Optional[Analyzer] = None,
    metrics_provider: Optional[MetricsProvider] = None,
) -> Pipeline:
    """
    按配置构造流水线。

    未提供设备执行器时，只有 dry-run 模式可用；关闭 dry-run 却没有设备客户端视为配置错误。
    """
    if device is None:
        if not settings.device_dry_run:
            raise ValidationError("No device client configured; enable NETPILOT_DEVICE_DRY_RUN or pass a device")
        logger.warning("Device dry-run mode: commands are logged, not executed")
        device = DryRunDeviceExecutor()
    return Pipeline(settings, device, analyzer=analyzer or build_analyzer(settings), metrics_provider=metrics_provider)
