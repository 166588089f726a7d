"""流水线装配、设备指标采集与启动配置应用测试。"""
import pytest

from netpilot.bootstrap import BootstrapConfig, ChannelConfig, ConditionConfig, PatternConfig, RuleConfig, TaskConfig
from netpilot.core.config import Settings
from netpilot.core.exceptions import ValidationError
from netpilot.main import Pipeline, build_analyzer, build_pipeline, collect_device_metrics
from netpilot.models.alert import MetricSample
from netpilot.remediation.ai_client import LLMAnalyzer
from netpilot.remediation.command_executor import DryRunDeviceExecutor


@pytest.fixture
def settings(data_dir):
    return Settings(data_dir=data_dir, device_dry_run=True, ai_api_key="")


@pytest.fixture
def pipeline(settings, device):
    async def metrics():
        return MetricSample(system={"cpu": 95})

    return Pipeline(settings, device, metrics_provider=metrics)


def _bootstrap() -> BootstrapConfig:
    return BootstrapConfig(
        channels=[ChannelConfig(name="feed"), ChannelConfig(name="hook", type="webhook", config={"url": "http://h"})],
        rules=[RuleConfig(name="CPU 过高", metric="cpu", operator="gt", threshold=90, channels=["feed"],
                          auto_response="/system resource print")],
        tasks=[TaskConfig(name="告警检查", type="alert_check", cron="* * * * *")],
        patterns=[PatternConfig(
            name="网关丢失",
            conditions=[ConditionConfig(metric="interface_status", metric_label="ether1", threshold=0)],
            remediation_script="/interface ethernet enable ether1",
        )],
    )


class TestCollectDeviceMetrics:
    @pytest.mark.asyncio
    async def test_builds_sample(self, device):
        device.responses = {
            "/system/resource/print": [{
                "cpu-load": "12",
                "free-memory": "25",
                "total-memory": "100",
                "free-hdd-space": "50",
                "total-hdd-space": "200",
            }],
            "/interface/print": [
                {"name": "ether1", "running": "true"},
                {"name": "pppoe-out1", "running": "false"},
            ],
        }
        sample = await collect_device_metrics(device)
        assert sample.system == {"cpu": 12.0, "memory": 75.0, "disk": 75.0}
        assert sample.value_for("interface_status", "ether1") == 1.0
        assert sample.value_for("interface_status", "pppoe-out1") == 0.0

    @pytest.mark.asyncio
    async def test_missing_fields_are_omitted(self, device):
        device.responses = {"/system/resource/print": [{"total-memory": "0"}]}
        sample = await collect_device_metrics(device)
        assert sample.system == {}
        assert sample.labeled == {}


class TestBuildPipeline:
    def test_dry_run_uses_logging_executor(self, settings):
        pipeline = build_pipeline(settings)
        assert isinstance(pipeline.device, DryRunDeviceExecutor)
        assert pipeline.analyzer is None

    def test_live_mode_requires_device(self, data_dir):
        with pytest.raises(ValidationError):
            build_pipeline(Settings(data_dir=data_dir, device_dry_run=False))

    def test_live_mode_with_device(self, data_dir, device):
        pipeline = build_pipeline(Settings(data_dir=data_dir, device_dry_run=False), device=device)
        assert pipeline.device is device

    def test_analyzer_built_from_api_key(self, data_dir):
        analyzer = build_analyzer(Settings(data_dir=data_dir, ai_api_key="sk-test", ai_model="m"))
        assert isinstance(analyzer, LLMAnalyzer)
        assert build_analyzer(Settings(data_dir=data_dir, ai_api_key="")) is None


class TestApplyBootstrap:
    @pytest.mark.asyncio
    async def test_creates_entities(self, pipeline):
        created = await pipeline.apply_bootstrap(_bootstrap())
        assert created == {"channels": 2, "rules": 1, "tasks": 1, "patterns": 1}

        feed = next(c for c in await pipeline.notifier.get_channels() if c.name == "feed")
        rule = (await pipeline.engine.get_rules())[0]
        assert rule.channels == [feed.id]
        assert rule.auto_response.enabled is True

        patterns = await pipeline.healer.get_patterns()
        custom = next(p for p in patterns if p.name == "网关丢失")
        assert custom.builtin is False
        assert custom.conditions[0].metric_label == "ether1"

    @pytest.mark.asyncio
    async def test_second_apply_creates_nothing(self, pipeline):
        await pipeline.apply_bootstrap(_bootstrap())
        created = await pipeline.apply_bootstrap(_bootstrap())
        assert created == {"channels": 0, "rules": 0, "tasks": 0, "patterns": 0}

    @pytest.mark.asyncio
    async def test_unknown_channel_rejected(self, pipeline):
        cfg = BootstrapConfig(rules=[RuleConfig(name="r", metric="cpu", channels=["missing"])])
        with pytest.raises(ValidationError):
            await pipeline.apply_bootstrap(cfg)


class TestTaskHandlers:
    @pytest.mark.asyncio
    async def test_alert_check_evaluates_rules(self, pipeline):
        await pipeline.engine.create_rule(name="CPU 过高", metric="cpu", operator="gt", threshold=90)
        task = await pipeline.scheduler.create_task("检查", "alert_check", "* * * * *")

        execution = await pipeline.scheduler.run_task_now(task.id)
        await pipeline.engine.wait_idle()

        assert execution.status == "success"
        active = await pipeline.engine.get_active_alerts()
        assert execution.result == {"triggered": [active[0].id]}

    @pytest.mark.asyncio
    async def test_inspection_sends_report(self, pipeline):
        await pipeline.engine.create_rule(name="CPU 过高", metric="cpu", operator="gt", threshold=90)
        feed = await pipeline.notifier.create_channel(name="feed", type="web_push")
        task = await pipeline.scheduler.create_task("巡检", "inspection", "0 8 * * *",
                                                    config={"channel_ids": [feed.id]})

        execution = await pipeline.scheduler.run_task_now(task.id)
        await pipeline.engine.wait_idle()

        assert execution.status == "success"
        assert execution.result["overall_status"] == "critical"
        assert execution.result["issue_count"] == 1
        assert len(execution.result["triggered_alerts"]) == 1
        # 告警触发的修复方案通知同样会广播到该渠道
        [report] = [n for n in pipeline.notifier.get_pending_web_push(feed.id) if n.type == "report"]
        assert report.title == "🔴 巡检报告 - CRITICAL"

    @pytest.mark.asyncio
    async def test_health_report(self, pipeline):
        feed = await pipeline.notifier.create_channel(name="feed", type="web_push")
        task = await pipeline.scheduler.create_task("健康报告", "health_report", "0 9 * * *")

        execution = await pipeline.scheduler.run_task_now(task.id)

        assert execution.status == "success"
        assert execution.result["score"] == 85
        assert execution.result["status"] == "healthy"
        [report] = pipeline.notifier.get_pending_web_push(feed.id)
        assert report.title == "✅ 系统健康报告 - 评分: 85/100"

    @pytest.mark.asyncio
    async def test_health_report_without_metrics(self, settings, device):
        async def broken():
            raise ConnectionError("device unreachable")

        pipeline = Pipeline(settings, device, metrics_provider=broken)
        task = await pipeline.scheduler.create_task("健康报告", "health_report", "0 9 * * *")

        execution = await pipeline.scheduler.run_task_now(task.id)

        assert execution.status == "success"
        assert execution.result["score"] == 100

    @pytest.mark.asyncio
    async def test_cleanup_handlers(self, pipeline):
        for task_type in ("audit_cleanup", "cache_cleanup", "notification_cleanup"):
            task = await pipeline.scheduler.create_task(task_type, task_type, "0 3 * * *", config={"retention_days": 7})
            execution = await pipeline.scheduler.run_task_now(task.id)
            assert execution.status == "success"
            assert execution.result == {"removed": 0}


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_seeds_builtin_patterns(self, pipeline):
        await pipeline.start(run_alert_loop=False)
        try:
            patterns = await pipeline.healer.get_patterns()
            assert [p.builtin for p in patterns] == [True, True, True]
            assert all(p.auto_heal is False for p in patterns)
        finally:
            await pipeline.stop()
