"""
数据模型包 (Data Models Package)

集中导出告警、通知、调度任务和审计日志的 Pydantic 模型。所有记录均可 JSON 序列化，
字段名在持久化文件中保持稳定。

Centrally exports the Pydantic models for alerts, notifications, scheduled tasks and
audit logs. Every record is JSON-serializable with stable field names on disk.
"""
from netpilot.models.alert import AlertEvent, AlertRule, AutoResponse, MetricSample
from netpilot.models.audit_log import AuditDetails, AuditLog
from netpilot.models.notification import Notification, NotificationChannel, NotificationPayload
from netpilot.models.task import ScheduledTask, TaskExecution

__all__ = [
    "AlertEvent",
    "AlertRule",
    "AutoResponse",
    "MetricSample",
    "AuditDetails",
    "AuditLog",
    "Notification",
    "NotificationChannel",
    "NotificationPayload",
    "ScheduledTask",
    "TaskExecution",
]
