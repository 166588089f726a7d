"""
NetPilot 测试基础配置

提供隔离的数据目录、可控时钟、伪设备执行器、伪分析服务和伪快照等通用 fixture。
所有测试只读写 tmp_path，不依赖真实设备、SMTP 或 AI 服务。
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from netpilot.models.alert import AlertEvent
from netpilot.remediation.ai_client import AnalysisUnavailableError
from netpilot.remediation.command_executor import CommandExecutor, DeviceCommandError
from netpilot.services.analysis_cache import AnalysisCache
from netpilot.services.audit import AuditLogger
from netpilot.services.notifier import NotificationService

UTC = timezone.utc


# ── 可控时钟 ──────────────────────────────────────────────────────────
class FakeClock:
    """可手动推进的时钟，代替 utc_now 注入到各组件。"""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


# ── 伪设备 ────────────────────────────────────────────────────────────
class FakeDevice:
    """记录所有调用的设备执行器，可按路径前缀模拟失败。"""

    def __init__(self, responses: dict | None = None, fail_on: tuple[str, ...] = ()):
        self.calls: list[tuple[str, list[str]]] = []
        self.responses = responses or {}
        self.fail_on = set(fail_on)

    async def execute(self, command: str, params: list[str] | None = None):
        self.calls.append((command, list(params or [])))
        if any(command.startswith(prefix) for prefix in self.fail_on):
            raise DeviceCommandError(f"failure: no such item ({command})")
        return self.responses.get(command, [])

    @property
    def commands(self) -> list[str]:
        return [c for c, _ in self.calls]

    @property
    def mutations(self) -> list[str]:
        """不属于查询或导出的调用。"""
        return [c for c in self.commands if not (c.endswith("/print") or c == "/export")]


# ── 伪分析服务 ────────────────────────────────────────────────────────
class FakeAnalyzer:
    """按顺序返回预设响应；响应用尽或为异常时抛出。"""

    available = True

    def __init__(self, responses: list | None = None):
        self.responses = list(responses or [])
        self.calls: list[tuple[str, str]] = []

    async def analyze(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        if not self.responses:
            raise AnalysisUnavailableError("no response configured")
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


# ── 伪快照 ────────────────────────────────────────────────────────────
class FakeSnapshots:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.created: list[str] = []

    async def create_snapshot(self, trigger: str) -> str:
        if self.fail:
            raise RuntimeError("export failed")
        snapshot_id = f"snap-{len(self.created) + 1}"
        self.created.append(trigger)
        return snapshot_id


def _make_event(**kwargs) -> AlertEvent:
    defaults = dict(
        rule_id="rule-1",
        rule_name="CPU 过高",
        severity="warning",
        metric="cpu",
        current_value=95.0,
        threshold=90.0,
        message="CPU 使用率 当前值 95.0 大于 阈值 90.0",
    )
    defaults.update(kwargs)
    return AlertEvent(**defaults)


# ── Fixtures ──────────────────────────────────────────────────────────

@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "ai-ops"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def executor(device):
    return CommandExecutor(device, sleep=AsyncMock())


@pytest.fixture
def audit(data_dir, clock):
    return AuditLogger(data_dir, clock=clock)


@pytest.fixture
def notifier(data_dir):
    return NotificationService(data_dir, sleep=AsyncMock())


@pytest.fixture
def cache():
    return AnalysisCache()


@pytest.fixture
def snapshots():
    return FakeSnapshots()


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def make_event():
    """告警事件工厂，默认是一条 CPU 过高告警。"""
    return _make_event
