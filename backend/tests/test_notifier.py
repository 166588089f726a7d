"""通知服务测试（mock Webhook / SMTP 传输）。"""
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from netpilot.core.exceptions import NotFoundError
from netpilot.models.base import utc_now
from netpilot.models.notification import Notification, NotificationPayload
from netpilot.services.notifier import NotificationService, render_template


def _payload(**overrides) -> NotificationPayload:
    defaults = dict(type="alert", title="⚠️ 警告 - CPU 过高", body="CPU 使用率 95", data={"severity": "warning"})
    defaults.update(overrides)
    return NotificationPayload(**defaults)


def _mock_http(MockClient, status_codes):
    """配置 httpx.AsyncClient mock，按顺序返回给定状态码。"""
    mock_client = AsyncMock()
    responses = []
    for code in status_codes:
        resp = MagicMock()
        resp.status_code = code
        resp.text = "upstream error" if code >= 300 else "ok"
        responses.append(resp)
    mock_client.request.side_effect = responses
    MockClient.return_value.__aenter__ = AsyncMock(return_value=mock_client)
    MockClient.return_value.__aexit__ = AsyncMock(return_value=False)
    return mock_client


class TestChannelManagement:
    @pytest.mark.asyncio
    async def test_create_and_get(self, notifier):
        ch = await notifier.create_channel(name="ops", type="webhook", config={"url": "http://hook.test"})
        assert (await notifier.get_channel(ch.id)).name == "ops"
        assert [c.id for c in await notifier.get_channels()] == [ch.id]

    @pytest.mark.asyncio
    async def test_channels_persist_across_instances(self, notifier, data_dir):
        ch = await notifier.create_channel(name="ops", type="web_push")
        reloaded = NotificationService(data_dir)
        assert (await reloaded.get_channel(ch.id)).type == "web_push"

    @pytest.mark.asyncio
    async def test_update_and_delete(self, notifier):
        ch = await notifier.create_channel(name="ops", type="web_push")
        updated = await notifier.update_channel(ch.id, enabled=False, id="ignored")
        assert updated.enabled is False
        assert updated.id == ch.id
        assert await notifier.get_enabled_channel_ids() == []

        await notifier.delete_channel(ch.id)
        with pytest.raises(NotFoundError):
            await notifier.get_channel(ch.id)
        with pytest.raises(NotFoundError):
            await notifier.delete_channel(ch.id)


class TestWebhook:
    @pytest.mark.asyncio
    async def test_default_json_body(self, notifier):
        ch = await notifier.create_channel(name="hook", type="webhook", config={"url": "http://hook.test/a"})
        with patch("netpilot.services.notifier.httpx.AsyncClient") as MockClient:
            mock_client = _mock_http(MockClient, [200])
            records = await notifier.send([ch.id], _payload())

        assert records[0].status == "sent"
        assert records[0].sent_at is not None
        method, url = mock_client.request.call_args.args
        assert (method, url) == ("POST", "http://hook.test/a")
        body = json.loads(mock_client.request.call_args.kwargs["content"])
        assert body["title"] == "⚠️ 警告 - CPU 过高"
        assert body["data"] == {"severity": "warning"}
        assert "timestamp" in body

    @pytest.mark.asyncio
    async def test_body_template_and_custom_headers(self, notifier):
        ch = await notifier.create_channel(
            name="hook",
            type="webhook",
            config={
                "url": "http://hook.test/b",
                "method": "put",
                "headers": {"X-Token": "abc"},
                "body_template": '{"text": "{{title}}: {{body}} ({{severity}})"}',
            },
        )
        with patch("netpilot.services.notifier.httpx.AsyncClient") as MockClient:
            mock_client = _mock_http(MockClient, [204])
            await notifier.send([ch.id], _payload())

        assert mock_client.request.call_args.args[0] == "PUT"
        kwargs = mock_client.request.call_args.kwargs
        assert kwargs["headers"]["X-Token"] == "abc"
        assert kwargs["headers"]["Content-Type"] == "application/json"
        assert json.loads(kwargs["content"]) == {"text": "⚠️ 警告 - CPU 过高: CPU 使用率 95 (warning)"}


class TestRetry:
    @pytest.mark.asyncio
    async def test_four_attempts_then_failed(self, data_dir):
        sleep = AsyncMock()
        svc = NotificationService(data_dir, sleep=sleep)
        ch = await svc.create_channel(name="hook", type="webhook", config={"url": "http://hook.test"})
        with patch("netpilot.services.notifier.httpx.AsyncClient") as MockClient:
            mock_client = _mock_http(MockClient, [500, 500, 500, 500])
            records = await svc.send([ch.id], _payload())

        assert mock_client.request.await_count == 4
        assert [c.args[0] for c in sleep.await_args_list] == [1, 5, 30]
        record = records[0]
        assert record.status == "failed"
        assert record.retry_count == 3
        assert "HTTP 500" in record.error

        history = await svc.get_notification_history()
        assert [n.status for n in history] == ["failed"]

    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self, data_dir):
        sleep = AsyncMock()
        svc = NotificationService(data_dir, sleep=sleep)
        ch = await svc.create_channel(name="hook", type="webhook", config={"url": "http://hook.test"})
        with patch("netpilot.services.notifier.httpx.AsyncClient") as MockClient:
            _mock_http(MockClient, [502, 503, 200])
            records = await svc.send([ch.id], _payload())

        assert records[0].status == "sent"
        assert records[0].retry_count == 2
        assert sleep.await_count == 2

    def test_delay_capped_at_last_value(self, data_dir):
        svc = NotificationService(data_dir, max_retries=5)
        assert [svc._retry_delay(n) for n in range(1, 6)] == [1, 5, 30, 30, 30]

    @pytest.mark.asyncio
    async def test_missing_url_fails_after_retries(self, notifier):
        ch = await notifier.create_channel(name="hook", type="webhook", config={})
        records = await notifier.send([ch.id], _payload())
        assert records[0].status == "failed"
        assert records[0].error == "Webhook URL is required"


class TestRouting:
    @pytest.mark.asyncio
    async def test_severity_filter(self, notifier):
        critical_only = await notifier.create_channel(name="pager", type="web_push", severity_filter=["critical"])
        everything = await notifier.create_channel(name="feed", type="web_push")

        records = await notifier.send([critical_only.id, everything.id], _payload())
        assert [r.channel_id for r in records] == [everything.id]

        records = await notifier.send([critical_only.id], _payload(data={"severity": "critical"}))
        assert len(records) == 1

    @pytest.mark.asyncio
    async def test_disabled_and_unknown_channels_skipped(self, notifier):
        ch = await notifier.create_channel(name="off", type="web_push", enabled=False)
        assert await notifier.send([ch.id, "missing"], _payload()) == []

    @pytest.mark.asyncio
    async def test_one_channel_failure_does_not_block_others(self, notifier):
        broken = await notifier.create_channel(name="broken", type="webhook", config={})
        push = await notifier.create_channel(name="push", type="web_push")

        records = await notifier.send([broken.id, push.id], _payload())
        assert {r.channel_id: r.status for r in records} == {broken.id: "failed", push.id: "sent"}


class TestWebPush:
    @pytest.mark.asyncio
    async def test_queued_then_drained(self, notifier):
        ch = await notifier.create_channel(name="push", type="web_push")
        await notifier.send([ch.id], _payload(title="first"))
        await notifier.send([ch.id], _payload(title="second"))

        pending = notifier.get_pending_web_push(ch.id)
        assert [n.title for n in pending] == ["first", "second"]
        assert notifier.get_pending_web_push(ch.id) == []

    @pytest.mark.asyncio
    async def test_queue_keeps_newest_when_full(self, data_dir):
        notifier = NotificationService(data_dir, sleep=AsyncMock(), web_push_queue_limit=2)
        ch = await notifier.create_channel(name="push", type="web_push")
        for title in ("first", "second", "third"):
            await notifier.send([ch.id], _payload(title=title))

        assert [n.title for n in notifier.get_pending_web_push(ch.id)] == ["second", "third"]

    @pytest.mark.asyncio
    async def test_drain_all_channels(self, notifier):
        a = await notifier.create_channel(name="a", type="web_push")
        b = await notifier.create_channel(name="b", type="web_push")
        await notifier.send([a.id, b.id], _payload())
        assert len(notifier.get_pending_web_push()) == 2
        assert notifier.get_pending_web_push() == []


class TestEmail:
    @pytest.mark.asyncio
    async def test_implicit_tls_on_465(self, notifier):
        ch = await notifier.create_channel(
            name="mail",
            type="email",
            config={
                "smtp_host": "smtp.test",
                "smtp_port": 465,
                "smtp_user": "ops@test",
                "smtp_password": "secret",
                "from_addr": "ops@test",
                "recipients": ["noc@test"],
            },
        )
        with patch("aiosmtplib.send", new_callable=AsyncMock) as mock_send:
            records = await notifier.send([ch.id], _payload())

        assert records[0].status == "sent"
        mock_send.assert_called_once()
        message = mock_send.call_args.args[0]
        assert message["Subject"] == "⚠️ 警告 - CPU 过高"
        assert message["To"] == "noc@test"
        kwargs = mock_send.call_args.kwargs
        assert kwargs["use_tls"] is True
        assert kwargs["username"] == "ops@test"

    @pytest.mark.asyncio
    async def test_starttls_on_587(self, notifier):
        ch = await notifier.create_channel(
            name="mail",
            type="email",
            config={
                "smtp_host": "smtp.test",
                "smtp_port": 587,
                "smtp_secure": True,
                "from_addr": "ops@test",
                "recipients": ["a@test", "b@test"],
            },
        )
        with patch("aiosmtplib.send", new_callable=AsyncMock) as mock_send:
            await notifier.send([ch.id], _payload())

        kwargs = mock_send.call_args.kwargs
        assert kwargs["start_tls"] is True
        assert "username" not in kwargs

    @pytest.mark.asyncio
    async def test_incomplete_config_fails(self, notifier):
        ch = await notifier.create_channel(name="mail", type="email", config={"smtp_host": "smtp.test"})
        with patch("aiosmtplib.send", new_callable=AsyncMock) as mock_send:
            records = await notifier.send([ch.id], _payload())
        assert records[0].status == "failed"
        mock_send.assert_not_called()


class TestTestChannel:
    @pytest.mark.asyncio
    async def test_success(self, notifier):
        ch = await notifier.create_channel(name="push", type="web_push")
        result = await notifier.test_channel(ch.id)
        assert result["success"] is True
        assert await notifier.get_notification_history() == []

    @pytest.mark.asyncio
    async def test_failure_is_not_retried(self, notifier):
        ch = await notifier.create_channel(name="hook", type="webhook", config={"url": "http://hook.test"})
        with patch("netpilot.services.notifier.httpx.AsyncClient") as MockClient:
            mock_client = _mock_http(MockClient, [500])
            result = await notifier.test_channel(ch.id)
        assert result["success"] is False
        assert "HTTP 500" in result["message"]
        assert mock_client.request.await_count == 1


class TestHistory:
    @pytest.mark.asyncio
    async def test_cleanup_removes_old_shards(self, notifier):
        old = Notification(channel_id="c", type="report", title="old", body="", created_at=utc_now() - timedelta(days=40))
        new = Notification(channel_id="c", type="report", title="new", body="")
        await notifier._save(old)
        await notifier._save(new)

        assert await notifier.cleanup_history(30) == 1
        assert [n.title for n in await notifier.get_notification_history()] == ["new"]


def test_render_template_keeps_unknown_placeholders():
    rendered = render_template("{{title}} {{missing}} {{data}}", {"title": "T", "data": {"a": 1}})
    assert rendered == 'T {{missing}} {"a": 1}'
