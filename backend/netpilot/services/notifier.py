"""
通知分发服务模块。

负责把告警、恢复、报告和修复通知投递到已启用的通知渠道，
支持 Webhook / 邮件 / Web Push 三种渠道、按严重级别过滤和失败重试。

重试策略：首次发送 + 最多 3 次重试，间隔依次为 1s、5s、30s，超出部分沿用最后一个间隔。
每条通知在成功（sent）或最终失败（failed）时写入按日分片的通知历史。
"""
import asyncio
import json
import logging
import re
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx

from netpilot.core.exceptions import DeliveryError, NotFoundError, ValidationError
from netpilot.core.storage import JsonCollection, ShardedLog, utc_day
from netpilot.models.base import apply_updates, utc_now
from netpilot.models.notification import Notification, NotificationChannel, NotificationPayload

logger = logging.getLogger(__name__)

# 重试间隔（秒）与最大重试次数
RETRY_DELAYS = [1, 5, 30]
MAX_RETRIES = 3

# 每个 Web Push 渠道最多保留的未拉取通知数，超出时丢弃最旧的
WEB_PUSH_QUEUE_LIMIT = 100

DEFAULT_HISTORY_RETENTION_DAYS = 30

BEIJING_TZ = timezone(timedelta(hours=8))

# 邮件头部颜色
TYPE_COLORS = {
    "alert": "#dc3545",
    "recovery": "#28a745",
    "report": "#17a2b8",
    "remediation": "#ffc107",
}

_TEMPLATE_VAR_RE = re.compile(r"\{\{(\w+)\}\}")


def format_beijing_time(ts: Optional[datetime] = None) -> str:
    """格式化为北京时间 YYYY-MM-DD HH:MM:SS。"""
    ts = ts or utc_now()
    return ts.astimezone(BEIJING_TZ).strftime("%Y-%m-%d %H:%M:%S")


def render_template(template: str, variables: dict[str, Any]) -> str:
    """替换 {{var}} 占位符；{{timestamp}} 始终渲染为当前北京时间，未知变量原样保留。"""

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key == "timestamp":
            return format_beijing_time()
        if key not in variables:
            return match.group(0)
        value = variables[key]
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return str(value)

    return _TEMPLATE_VAR_RE.sub(_replace, template)


def _email_html(notification: Notification) -> str:
    """生成邮件 HTML 正文，头部颜色随通知类型变化。"""
    color = TYPE_COLORS.get(notification.type, "#6c757d")
    body_html = notification.body.replace("\n", "<br>")
    data_html = ""
    if notification.data:
        data_json = json.dumps(notification.data, ensure_ascii=False, indent=2, default=str)
        data_html = f'<pre style="background:#e9ecef;padding:10px;border-radius:3px;">{data_json}</pre>'
    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;border:1px solid #dee2e6;border-radius:5px;overflow:hidden;">
      <div style="background:{color};color:#fff;padding:15px;">
        <h2 style="margin:0;">{notification.title}</h2>
        <span style="font-size:12px;">{notification.type.capitalize()}</span>
      </div>
      <div style="background:#f8f9fa;padding:20px;">
        <p>{body_html}</p>
        {data_html}
      </div>
      <div style="padding:12px 20px;color:#6c757d;font-size:12px;">
        NetPilot · {format_beijing_time()}
      </div>
    </div>
    """


class NotificationService:
    """多渠道通知服务：渠道管理、带重试的投递、通知历史。"""

    def __init__(
        self,
        data_dir: Path,
        retry_delays: Optional[list[float]] = None,
        max_retries: int = MAX_RETRIES,
        http_timeout: float = 10.0,
        web_push_queue_limit: int = WEB_PUSH_QUEUE_LIMIT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        base = Path(data_dir) / "notifications"
        self._store: JsonCollection[NotificationChannel] = JsonCollection(base / "channels.json", NotificationChannel)
        self._history: ShardedLog[Notification] = ShardedLog(base / "history", "notifications", Notification)
        self.retry_delays = list(retry_delays or RETRY_DELAYS)
        self.max_retries = max_retries
        self.http_timeout = http_timeout
        self._sleep = sleep
        self.web_push_queue_limit = web_push_queue_limit
        self._channels: Optional[list[NotificationChannel]] = None
        self._lock = asyncio.Lock()
        self._web_push_queue: dict[str, deque[Notification]] = defaultdict(
            lambda: deque(maxlen=self.web_push_queue_limit)
        )
        self._dispatchers = {
            "webhook": self._send_webhook,
            "email": self._send_email,
            "web_push": self._send_web_push,
        }

    # ------------------------------------------------------------------
    # 渠道管理
    # ------------------------------------------------------------------

    async def _ensure_loaded(self) -> list[NotificationChannel]:
        if self._channels is None:
            self._channels = await self._store.load()
        return self._channels

    async def get_channels(self) -> list[NotificationChannel]:
        async with self._lock:
            return list(await self._ensure_loaded())

    async def get_channel(self, channel_id: str) -> NotificationChannel:
        async with self._lock:
            for ch in await self._ensure_loaded():
                if ch.id == channel_id:
                    return ch
        raise NotFoundError(f"Notification channel not found: {channel_id}")

    async def create_channel(self, **fields: Any) -> NotificationChannel:
        channel = NotificationChannel(**fields)
        async with self._lock:
            channels = await self._ensure_loaded()
            channels.append(channel)
            await self._store.save(channels)
        logger.info("Notification channel created: %s (%s)", channel.name, channel.type)
        return channel

    async def update_channel(self, channel_id: str, **updates: Any) -> NotificationChannel:
        async with self._lock:
            channels = await self._ensure_loaded()
            for i, ch in enumerate(channels):
                if ch.id == channel_id:
                    channels[i] = apply_updates(ch, updates)
                    await self._store.save(channels)
                    return channels[i]
        raise NotFoundError(f"Notification channel not found: {channel_id}")

    async def delete_channel(self, channel_id: str) -> None:
        async with self._lock:
            channels = await self._ensure_loaded()
            remaining = [ch for ch in channels if ch.id != channel_id]
            if len(remaining) == len(channels):
                raise NotFoundError(f"Notification channel not found: {channel_id}")
            self._channels = remaining
            await self._store.save(remaining)
        self._web_push_queue.pop(channel_id, None)

    async def get_enabled_channel_ids(self) -> list[str]:
        return [ch.id for ch in await self.get_channels() if ch.enabled]

    # ------------------------------------------------------------------
    # 公共入口
    # ------------------------------------------------------------------

    async def send(self, channel_ids: list[str], payload: NotificationPayload) -> list[Notification]:
        """
        向多个渠道并发发送通知。

        不存在或已禁用的渠道被跳过；配置了 severity_filter 的渠道只接收
        data["severity"] 在过滤列表中的通知。单个渠道失败不影响其他渠道。

        Returns:
            每个实际投递渠道的最终通知记录
        """
        channels = {ch.id: ch for ch in await self.get_channels()}
        targets: list[NotificationChannel] = []
        for cid in channel_ids:
            channel = channels.get(cid)
            if channel is None:
                logger.warning("Notification channel not found: %s", cid)
                continue
            if not channel.enabled:
                logger.debug("Notification channel disabled: %s", channel.name)
                continue
            if not self._passes_severity_filter(channel, payload):
                logger.debug("Notification filtered by severity on channel %s", channel.name)
                continue
            targets.append(channel)

        results = await asyncio.gather(
            *(self._send_with_retry(ch, payload) for ch in targets), return_exceptions=True
        )
        records: list[Notification] = []
        for channel, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error("Notification dispatch crashed on channel %s: %s", channel.name, result)
            else:
                records.append(result)
        return records

    async def test_channel(self, channel_id: str) -> dict[str, Any]:
        """发送一条测试通知，不重试、不写历史。"""
        channel = await self.get_channel(channel_id)
        notification = Notification(
            channel_id=channel.id,
            type="report",
            title="Test Notification",
            body="This is a test notification from NetPilot.",
            data={"test": True},
        )
        try:
            await self._dispatch(channel, notification)
        except Exception as e:
            return {"success": False, "message": f"Failed to send test notification: {e}"}
        return {"success": True, "message": "Test notification sent successfully"}

    # ------------------------------------------------------------------
    # 重试与分发
    # ------------------------------------------------------------------

    @staticmethod
    def _passes_severity_filter(channel: NotificationChannel, payload: NotificationPayload) -> bool:
        if not channel.severity_filter:
            return True
        severity = payload.data.get("severity")
        if not severity:
            return True
        return severity in channel.severity_filter

    def _retry_delay(self, attempt: int) -> float:
        if attempt - 1 < len(self.retry_delays):
            return self.retry_delays[attempt - 1]
        return self.retry_delays[-1]

    async def _send_with_retry(self, channel: NotificationChannel, payload: NotificationPayload) -> Notification:
        notification = Notification(
            channel_id=channel.id,
            type=payload.type,
            title=payload.title,
            body=payload.body,
            data=payload.data,
        )
        last_error = ""
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                await self._sleep(self._retry_delay(attempt))
                notification.retry_count = attempt
            try:
                await self._dispatch(channel, notification)
            except Exception as e:
                last_error = str(e)[:500]
                logger.warning(
                    "Failed to send notification via %s (attempt %d/%d): %s",
                    channel.name, attempt + 1, self.max_retries + 1, last_error,
                )
                continue
            notification.status = "sent"
            notification.sent_at = utc_now()
            await self._save(notification)
            logger.info("Notification sent: %s via %s", notification.type, channel.name)
            return notification

        notification.status = "failed"
        notification.error = last_error or "Unknown error"
        notification.retry_count = self.max_retries
        await self._save(notification)
        logger.error(
            "Notification failed after %d attempts: %s via %s",
            self.max_retries + 1, notification.type, channel.name,
        )
        return notification

    async def _dispatch(self, channel: NotificationChannel, notification: Notification) -> None:
        handler = self._dispatchers.get(channel.type)
        if not handler:
            raise ValidationError(f"Unsupported channel type: {channel.type}")
        await handler(channel, notification)

    async def _save(self, notification: Notification) -> None:
        await self._history.append(notification, utc_day(notification.created_at))

    # ------------------------------------------------------------------
    # 渠道传输
    # ------------------------------------------------------------------

    async def _send_web_push(self, channel: NotificationChannel, notification: Notification) -> None:
        """Web Push 消息排队，等待客户端轮询拉取。"""
        queue = self._web_push_queue[channel.id]
        if len(queue) == queue.maxlen:
            logger.warning("Web push queue full for channel %s, dropping oldest notification", channel.name)
        queue.append(notification.model_copy())
        logger.debug("Web push notification queued for channel %s", channel.name)

    async def _send_webhook(self, channel: NotificationChannel, notification: Notification) -> None:
        config = channel.config
        url = config.get("url")
        if not url:
            raise DeliveryError("Webhook URL is required")

        body_template = config.get("body_template")
        if body_template:
            variables = {
                "title": notification.title,
                "body": notification.body,
                "type": notification.type,
                **notification.data,
            }
            content = render_template(body_template, variables)
        else:
            content = json.dumps(
                {
                    "title": notification.title,
                    "body": notification.body,
                    "type": notification.type,
                    "timestamp": int(utc_now().timestamp() * 1000),
                    "data": notification.data,
                },
                ensure_ascii=False,
                default=str,
            )

        headers = {"Content-Type": "application/json", **config.get("headers", {})}
        method = config.get("method", "POST").upper()

        async with httpx.AsyncClient(timeout=self.http_timeout) as client:
            resp = await client.request(method, url, content=content.encode("utf-8"), headers=headers)
        if not 200 <= resp.status_code < 300:
            raise DeliveryError(f"Webhook request failed: HTTP {resp.status_code}", resp.text[:200])

    async def _send_email(self, channel: NotificationChannel, notification: Notification) -> None:
        """通过 SMTP 发送邮件。465 端口直接 TLS，其他端口在 smtp_secure 时使用 STARTTLS。"""
        import aiosmtplib

        config = channel.config
        smtp_host = config.get("smtp_host")
        smtp_port = int(config.get("smtp_port", 465))
        from_addr = config.get("from_addr")
        recipients = config.get("recipients") or []
        if not smtp_host or not from_addr or not recipients:
            raise DeliveryError("Email configuration is incomplete")

        msg = MIMEMultipart("alternative")
        msg["From"] = from_addr
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = notification.title
        msg.attach(MIMEText(notification.body, "plain", "utf-8"))
        msg.attach(MIMEText(_email_html(notification), "html", "utf-8"))

        kwargs: dict[str, Any] = {"hostname": smtp_host, "port": smtp_port}
        if config.get("smtp_user"):
            kwargs["username"] = config["smtp_user"]
            kwargs["password"] = config.get("smtp_password", "")
        if smtp_port == 465:
            kwargs["use_tls"] = True
        else:
            kwargs["start_tls"] = bool(config.get("smtp_secure", False))

        await aiosmtplib.send(msg, **kwargs)

    # ------------------------------------------------------------------
    # 通知历史
    # ------------------------------------------------------------------

    def get_pending_web_push(self, channel_id: Optional[str] = None) -> list[Notification]:
        """取出并清空待推送的 Web Push 通知；不指定渠道时取出全部。"""
        if channel_id is not None:
            return list(self._web_push_queue.pop(channel_id, ()))
        pending = [n for queue in self._web_push_queue.values() for n in queue]
        self._web_push_queue.clear()
        pending.sort(key=lambda n: n.created_at)
        return pending

    async def get_notification_history(self, limit: int = 100) -> list[Notification]:
        records = await self._history.read_all()
        records.sort(key=lambda n: n.created_at, reverse=True)
        return records[:limit]

    async def cleanup_history(self, days: int = DEFAULT_HISTORY_RETENTION_DAYS) -> int:
        """删除早于保留期的通知历史分片，返回删除的记录数。"""
        cutoff = utc_day(utc_now()) - timedelta(days=days)
        removed = 0
        for day in await self._history.list_days():
            if day < cutoff:
                removed += await self._history.delete_day(day)
        if removed:
            logger.info("Notification history cleanup: removed %d records", removed)
        return removed
