"""
通知模型 (Notification Model)

定义通知渠道配置和通知历史记录。渠道类型为 webhook / email / web_push，
各类型的传输参数存放在 config 字典中：

- webhook: url, method (默认 POST), headers, body_template（支持 {{var}} 占位符）
- email: smtp_host, smtp_port, smtp_user, smtp_password, smtp_secure, from_addr, recipients
- web_push: 无需配置，消息排队等待客户端拉取
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from netpilot.models.alert import Severity
from netpilot.models.base import new_id, utc_now

ChannelType = Literal["web_push", "webhook", "email"]
NotificationType = Literal["alert", "recovery", "report", "remediation"]
NotificationStatus = Literal["pending", "sent", "failed"]


class NotificationChannel(BaseModel):
    """通知渠道。severity_filter 为空表示接收所有级别。"""
    id: str = Field(default_factory=new_id)
    name: str
    type: ChannelType
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)
    severity_filter: Optional[list[Severity]] = None
    created_at: datetime = Field(default_factory=utc_now)


class NotificationPayload(BaseModel):
    """投递信封：所有渠道共用的 title / body / data。"""
    type: NotificationType
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)


class Notification(BaseModel):
    """一次渠道投递的最终记录（sent 或 failed）。"""
    id: str = Field(default_factory=new_id)
    channel_id: str
    type: NotificationType
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    status: NotificationStatus = "pending"
    retry_count: int = 0
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    sent_at: Optional[datetime] = None
