"""故障自愈服务测试。"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from netpilot.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from netpilot.remediation.fault_healer import BUILTIN_PATTERNS, FaultHealer
from netpilot.remediation.models import Diagnosis, FaultCondition

PPPOE_COMMANDS = [
    "/interface/pppoe-client/disable/pppoe-out1",
    "/interface/pppoe-client/enable/pppoe-out1",
    "/interface/pppoe-client/print",
]


@pytest.fixture
def healer(data_dir, executor, notifier, audit, snapshots, clock):
    return FaultHealer(data_dir, executor, notifier, audit, snapshots=snapshots, clock=clock)


@pytest.fixture
async def channel(notifier):
    return await notifier.create_channel(name="feed", type="web_push")


@pytest.fixture
def pppoe_event(make_event):
    return make_event(
        rule_name="PPPoE 断线",
        metric="interface_status",
        metric_label="pppoe-out1",
        current_value=0,
        threshold=0,
        message="接口状态 (pppoe-out1) 当前状态为 断开",
    )


async def _pattern(healer, name):
    return next(p for p in await healer.get_patterns() if p.name == name)


class TestPatternManagement:
    @pytest.mark.asyncio
    async def test_builtins_seeded_disabled_for_auto_heal(self, healer, data_dir, executor, notifier, audit):
        patterns = await healer.get_patterns()
        assert [p.name for p in patterns] == [p["name"] for p in BUILTIN_PATTERNS]
        assert all(p.builtin and p.enabled and not p.auto_heal for p in patterns)

        reloaded = FaultHealer(data_dir, executor, notifier, audit)
        assert len(await reloaded.get_patterns()) == len(BUILTIN_PATTERNS)

    @pytest.mark.asyncio
    async def test_builtin_cannot_be_deleted(self, healer):
        pppoe = await _pattern(healer, "PPPoE 断线重连")
        with pytest.raises(PermissionDeniedError):
            await healer.delete_pattern(pppoe.id)
        assert (await healer.disable_pattern(pppoe.id)).enabled is False

    @pytest.mark.asyncio
    async def test_custom_pattern_lifecycle(self, healer):
        pattern = await healer.create_pattern(
            name="网关丢失",
            conditions=[FaultCondition(metric="interface_status", operator="eq", threshold=0)],
            remediation_script="/interface ethernet enable ether1",
            builtin=True,
        )
        assert pattern.builtin is False

        updated = await healer.update_pattern(pattern.id, description="以太网口掉线", builtin=True)
        assert updated.description == "以太网口掉线"
        assert updated.builtin is False

        await healer.delete_pattern(pattern.id)
        with pytest.raises(NotFoundError):
            await healer.get_pattern(pattern.id)

    @pytest.mark.asyncio
    async def test_empty_script_rejected(self, healer):
        with pytest.raises(ValidationError):
            await healer.create_pattern(name="空", remediation_script="   ")
        pppoe = await _pattern(healer, "PPPoE 断线重连")
        with pytest.raises(ValidationError):
            await healer.update_pattern(pppoe.id, remediation_script="")


class TestMatching:
    @pytest.mark.asyncio
    async def test_first_enabled_pattern_wins(self, healer, make_event):
        event = make_event(metric="interface_status", metric_label="ether1", current_value=0, threshold=0)
        assert (await healer.match_pattern(event)).name == "PPPoE 断线重连"

        pppoe = await _pattern(healer, "PPPoE 断线重连")
        await healer.disable_pattern(pppoe.id)
        assert (await healer.match_pattern(event)).name == "接口 Down 重启"

    @pytest.mark.asyncio
    async def test_threshold_must_hold(self, healer, make_event):
        assert (await healer.match_pattern(make_event(metric="memory", current_value=97))).name == "DHCP 池耗尽扩容"
        assert await healer.match_pattern(make_event(metric="memory", current_value=80)) is None

    @pytest.mark.asyncio
    async def test_unmatched_metric(self, healer, make_event):
        assert await healer.handle_alert_event(make_event()) is None


class TestAutoHealDisabled:
    @pytest.mark.asyncio
    async def test_only_suggestion_sent(self, healer, device, notifier, channel, pppoe_event):
        execution = await healer.handle_alert_event(pppoe_event)

        assert execution.status == "skipped"
        assert device.calls == []
        pushed = notifier.get_pending_web_push()
        assert [n.title for n in pushed] == ["🔧 故障修复建议 - PPPoE 断线重连"]
        assert "/interface pppoe-client disable pppoe-out1" in pushed[0].body
        assert (await healer.get_remediation(execution.id)).status == "skipped"


class TestExecution:
    @pytest.mark.asyncio
    async def test_success(self, healer, device, notifier, audit, snapshots, channel, pppoe_event):
        pppoe = await _pattern(healer, "PPPoE 断线重连")
        await healer.enable_auto_heal(pppoe.id)

        execution = await healer.handle_alert_event(pppoe_event)

        assert execution.status == "success"
        assert execution.alert_event_id == pppoe_event.id
        assert execution.pre_snapshot_id == "snap-1"
        assert execution.diagnosis.confirmed is True
        assert execution.verification_result.passed is True
        assert device.commands == PPPOE_COMMANDS
        assert snapshots.created == ["pre-remediation"]

        assert [n.title for n in notifier.get_pending_web_push()] == ["✅ 故障修复成功 - PPPoE 断线重连"]
        entries = await audit.query(action="remediation_execute")
        assert len(entries) == 2
        assert {e.details.trigger for e in entries} == {"fault_pattern:PPPoE 断线重连"}

    @pytest.mark.asyncio
    async def test_script_failure(self, healer, device, notifier, channel, pppoe_event):
        pppoe = await _pattern(healer, "PPPoE 断线重连")
        await healer.enable_auto_heal(pppoe.id)
        device.fail_on = {"/interface/pppoe-client/enable"}

        execution = await healer.handle_alert_event(pppoe_event)

        assert execution.status == "failed"
        assert "enable" in execution.execution_result.error
        pushed = notifier.get_pending_web_push()
        assert [n.title for n in pushed] == ["❌ 故障修复失败 - PPPoE 断线重连"]
        assert "snap-1" in pushed[0].body

    @pytest.mark.asyncio
    async def test_verification_failure(self, healer, device, pppoe_event):
        pppoe = await _pattern(healer, "PPPoE 断线重连")
        await healer.enable_auto_heal(pppoe.id)
        device.fail_on = {"/interface/pppoe-client/print"}

        execution = await healer.handle_alert_event(pppoe_event)
        assert execution.status == "failed"
        assert execution.execution_result.error is None
        assert execution.verification_result.passed is False

    @pytest.mark.asyncio
    async def test_snapshot_failure_does_not_block(self, healer, snapshots, pppoe_event):
        snapshots.fail = True
        pppoe = await _pattern(healer, "PPPoE 断线重连")
        await healer.enable_auto_heal(pppoe.id)

        execution = await healer.handle_alert_event(pppoe_event)
        assert execution.status == "success"
        assert execution.pre_snapshot_id is None

    @pytest.mark.asyncio
    async def test_unconfirmed_diagnosis_skips(self, data_dir, executor, notifier, audit, device, pppoe_event):
        diagnosis = MagicMock()
        diagnosis.diagnose = AsyncMock(return_value=Diagnosis(confirmed=False, confidence=0.3, reasoning="噪声"))
        healer = FaultHealer(data_dir, executor, notifier, audit, diagnosis=diagnosis)
        pppoe = await _pattern(healer, "PPPoE 断线重连")
        await healer.enable_auto_heal(pppoe.id)

        execution = await healer.handle_alert_event(pppoe_event)
        assert execution.status == "skipped"
        assert execution.diagnosis.confidence == 0.3
        assert device.calls == []

    @pytest.mark.asyncio
    async def test_manual_trigger_without_event(self, healer, device):
        pppoe = await _pattern(healer, "PPPoE 断线重连")
        await healer.enable_auto_heal(pppoe.id)

        execution = await healer.execute_remediation(pppoe.id, "manual-1")
        assert execution.status == "success"
        assert device.commands == PPPOE_COMMANDS

    @pytest.mark.asyncio
    async def test_unknown_pattern(self, healer):
        with pytest.raises(NotFoundError):
            await healer.execute_remediation("missing", "alert-1")


class TestHistory:
    @pytest.mark.asyncio
    async def test_stats_and_history(self, healer, clock, pppoe_event):
        pppoe = await _pattern(healer, "PPPoE 断线重连")
        skipped = await healer.handle_alert_event(pppoe_event)
        clock.advance(60)
        await healer.enable_auto_heal(pppoe.id)
        succeeded = await healer.handle_alert_event(pppoe_event)

        stats = await healer.get_pattern_stats(pppoe.id)
        assert stats == {"total": 2, "success": 1, "failed": 0, "skipped": 1, "success_rate": 0.5}
        history = await healer.get_remediation_history()
        assert [r.id for r in history] == [succeeded.id, skipped.id]
        assert len(await healer.get_remediation_history(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_unknown_remediation(self, healer):
        with pytest.raises(NotFoundError):
            await healer.get_remediation("missing")
