"""
巡检与健康报告任务 (Inspection and Health Report Tasks)

由调度器按 cron 触发的两类报告任务：

- inspection：采集一次设备指标，按警告/严重阈值检查 CPU、内存、磁盘和接口状态，
  发现问题时交给告警引擎评估，最后发送 report 类型的巡检报告
- health_report：汇总报告周期内的告警事件和当前资源使用，计算 0-100 健康评分，
  发送 report 类型的健康报告

任务 config 中的 channel_ids 为空时，报告发送到所有已启用渠道。
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Literal, Optional

from pydantic import BaseModel, Field

from netpilot.models.alert import MetricSample, Severity
from netpilot.models.base import new_id, utc_now
from netpilot.models.notification import NotificationPayload
from netpilot.services.notifier import NotificationService, format_beijing_time
from netpilot.tasks.alert_engine import AlertEngine

logger = logging.getLogger(__name__)

OverallStatus = Literal["healthy", "warning", "critical"]

STATUS_EMOJI = {"healthy": "✅", "warning": "⚠️", "critical": "🔴"}
SEVERITY_EMOJI = {"info": "ℹ️", "warning": "⚠️", "critical": "🔴", "emergency": "🚨"}

MAX_LISTED_ISSUES = 5

# 巡检检查的资源指标与显示名称
_RESOURCES = [("cpu", "CPU 使用率"), ("memory", "内存使用率"), ("disk", "磁盘使用率")]


class InspectionConfig(BaseModel):
    """巡检任务配置，来自 ScheduledTask.config。"""
    cpu_warning: float = 80
    cpu_critical: float = 95
    memory_warning: float = 80
    memory_critical: float = 95
    disk_warning: float = 80
    disk_critical: float = 95
    channel_ids: list[str] = Field(default_factory=list)

    model_config = {"extra": "ignore"}


class InspectionIssue(BaseModel):
    severity: Severity
    message: str
    metric: str
    value: Optional[float] = None
    threshold: Optional[float] = None


class InspectionResult(BaseModel):
    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utc_now)
    system: dict[str, float] = Field(default_factory=dict)
    interfaces_up: list[str] = Field(default_factory=list)
    interfaces_down: list[str] = Field(default_factory=list)
    issues: list[InspectionIssue] = Field(default_factory=list)
    triggered_alerts: list[str] = Field(default_factory=list)
    overall_status: OverallStatus = "healthy"


class HealthReportConfig(BaseModel):
    period_hours: int = Field(default=24, gt=0)
    channel_ids: list[str] = Field(default_factory=list)

    model_config = {"extra": "ignore"}


class HealthReport(BaseModel):
    id: str = Field(default_factory=new_id)
    generated_at: datetime = Field(default_factory=utc_now)
    period_start: datetime
    period_end: datetime
    system: dict[str, float] = Field(default_factory=dict)
    interfaces_down: list[str] = Field(default_factory=list)
    alerts_total: int = 0
    alerts_by_severity: dict[str, int] = Field(default_factory=dict)
    active_alerts: int = 0
    score: int = 100
    overall_health: OverallStatus = "healthy"


# ---------------------------------------------------------------------------
# 巡检
# ---------------------------------------------------------------------------

def analyze_issues(sample: MetricSample, config: InspectionConfig) -> list[InspectionIssue]:
    """按阈值检查资源使用率和接口状态；严重阈值优先于警告阈值。"""
    issues: list[InspectionIssue] = []
    for metric, label in _RESOURCES:
        value = sample.system.get(metric)
        if value is None:
            continue
        critical = getattr(config, f"{metric}_critical")
        warning = getattr(config, f"{metric}_warning")
        if value >= critical:
            issues.append(InspectionIssue(
                severity="critical", message=f"{label}过高: {value}%", metric=metric, value=value, threshold=critical,
            ))
        elif value >= warning:
            issues.append(InspectionIssue(
                severity="warning", message=f"{label}较高: {value}%", metric=metric, value=value, threshold=warning,
            ))

    for name, status in sample.labeled.get("interface_status", {}).items():
        if status == 0:
            issues.append(InspectionIssue(
                severity="warning", message=f"接口 {name} 处于断开状态", metric="interface_status", value=status,
            ))
    return issues


def overall_status(issues: list[InspectionIssue]) -> OverallStatus:
    if any(i.severity in ("critical", "emergency") for i in issues):
        return "critical"
    if any(i.severity == "warning" for i in issues):
        return "warning"
    return "healthy"


def build_inspection_report(result: InspectionResult) -> NotificationPayload:
    total = len(result.interfaces_up) + len(result.interfaces_down)
    lines = [f"巡检时间: {format_beijing_time(result.timestamp)}", "", "系统状态:"]
    for metric, label in _RESOURCES:
        value = result.system.get(metric)
        lines.append(f"- {label}: {value}%" if value is not None else f"- {label}: 未知")
    lines.append("")
    lines.append(f"接口状态: {len(result.interfaces_up)}/{total} 在线")
    if result.issues:
        lines.append("")
        lines.append(f"发现问题 ({len(result.issues)}):")
        for issue in result.issues[:MAX_LISTED_ISSUES]:
            lines.append(f"{SEVERITY_EMOJI[issue.severity]} {issue.message}")
        if len(result.issues) > MAX_LISTED_ISSUES:
            lines.append(f"... 还有 {len(result.issues) - MAX_LISTED_ISSUES} 个问题")
    if result.triggered_alerts:
        lines.append("")
        lines.append(f"触发告警: {len(result.triggered_alerts)} 条")

    return NotificationPayload(
        type="report",
        title=f"{STATUS_EMOJI[result.overall_status]} 巡检报告 - {result.overall_status.upper()}",
        body="\n".join(lines),
        data={
            "inspection_id": result.id,
            "overall_status": result.overall_status,
            "issue_count": len(result.issues),
            "triggered_alerts": result.triggered_alerts,
        },
    )


async def _send_report(notifier: NotificationService, channel_ids: list[str], payload: NotificationPayload) -> int:
    """发送报告，返回成功投递的渠道数。通知失败只记录日志。"""
    try:
        targets = channel_ids or await notifier.get_enabled_channel_ids()
        if not targets:
            logger.debug("No notification channels for report: %s", payload.title)
            return 0
        records = await notifier.send(targets, payload)
    except Exception as e:
        logger.error("Failed to send report notification: %s", e)
        return 0
    return sum(1 for r in records if r.status == "sent")


async def run_inspection(
    sample: MetricSample,
    config: InspectionConfig,
    engine: AlertEngine,
    notifier: NotificationService,
) -> InspectionResult:
    """执行一次巡检：检查问题，有问题时交给告警引擎评估，然后发送巡检报告。"""
    issues = analyze_issues(sample, config)
    status = sample.labeled.get("interface_status", {})
    result = InspectionResult(
        timestamp=sample.timestamp,
        system=dict(sample.system),
        interfaces_up=sorted(name for name, v in status.items() if v != 0),
        interfaces_down=sorted(name for name, v in status.items() if v == 0),
        issues=issues,
        overall_status=overall_status(issues),
    )

    if issues:
        try:
            events = await engine.evaluate(sample)
            result.triggered_alerts = [e.id for e in events]
            if events:
                logger.info("Inspection triggered %d alerts", len(events))
        except Exception as e:
            logger.error("Inspection alert evaluation failed: %s", e)

    await _send_report(notifier, config.channel_ids, build_inspection_report(result))
    logger.info("Inspection completed: %d issues found, status: %s", len(issues), result.overall_status)
    return result


# ---------------------------------------------------------------------------
# 健康报告
# ---------------------------------------------------------------------------

def calculate_health_score(system: dict[str, float], alerts_total: int) -> int:
    """
    健康评分 (Health Score)

    满分 100。资源使用率超过 80% 开始扣分（CPU/内存每点 1 分、最多 20 分，磁盘每点 0.75 分、
    最多 15 分），超过 95% 再扣 10 分；每条告警扣 2 分，最多 25 分。
    """
    score = 100.0
    for metric, per_point, cap in (("cpu", 1.0, 20), ("memory", 1.0, 20), ("disk", 0.75, 15)):
        value = system.get(metric)
        if value is None:
            continue
        if value > 80:
            score -= min(cap, (value - 80) * per_point)
        if value > 95:
            score -= 10
    score -= min(25, alerts_total * 2)
    return max(0, round(score))


def health_status(score: int) -> OverallStatus:
    if score >= 80:
        return "healthy"
    if score >= 50:
        return "warning"
    return "critical"


def build_health_report_notification(report: HealthReport) -> NotificationPayload:
    lines = [
        f"报告周期: {format_beijing_time(report.period_start)} - {format_beijing_time(report.period_end)}",
        "",
        f"健康状态: {report.overall_health.upper()}",
        f"健康评分: {report.score}/100",
        "",
        "资源使用:",
    ]
    for metric, label in _RESOURCES:
        value = report.system.get(metric)
        lines.append(f"- {label}: {value}%" if value is not None else f"- {label}: 未知")
    lines.append("")
    lines.append(f"告警统计: 共 {report.alerts_total} 次，当前活跃 {report.active_alerts} 条")
    for severity, count in report.alerts_by_severity.items():
        lines.append(f"- {SEVERITY_EMOJI.get(severity, '')} {severity}: {count}")
    if report.interfaces_down:
        lines.append("")
        lines.append(f"断开接口: {', '.join(report.interfaces_down)}")

    return NotificationPayload(
        type="report",
        title=f"{STATUS_EMOJI[report.overall_health]} 系统健康报告 - 评分: {report.score}/100",
        body="\n".join(lines),
        data={"report_id": report.id, "score": report.score, "overall_health": report.overall_health},
    )


async def generate_health_report(
    sample: Optional[MetricSample],
    config: HealthReportConfig,
    engine: AlertEngine,
    notifier: NotificationService,
    clock: Callable[[], datetime] = utc_now,
) -> HealthReport:
    """
    生成并发送健康报告。

    sample 为 None（设备采集失败）时只按告警统计评分。
    """
    period_end = clock()
    period_start = period_end - timedelta(hours=config.period_hours)
    events = await engine.get_alert_history(from_time=period_start, to_time=period_end, limit=10_000)
    by_severity: dict[str, int] = {}
    for event in events:
        by_severity[event.severity] = by_severity.get(event.severity, 0) + 1

    system = dict(sample.system) if sample else {}
    status = sample.labeled.get("interface_status", {}) if sample else {}
    score = calculate_health_score(system, len(events))
    report = HealthReport(
        generated_at=period_end,
        period_start=period_start,
        period_end=period_end,
        system=system,
        interfaces_down=sorted(name for name, v in status.items() if v == 0),
        alerts_total=len(events),
        alerts_by_severity=by_severity,
        active_alerts=len(await engine.get_active_alerts()),
        score=score,
        overall_health=health_status(score),
    )

    await _send_report(notifier, config.channel_ids, build_health_report_notification(report))
    logger.info("Health report generated: %s (score: %d, status: %s)", report.id, score, report.overall_health)
    return report
