"""修复模板注册表测试。"""
import re

import pytest

from netpilot.remediation.models import RemediationTemplate, RiskLevel, StepVerification, TemplateStep
from netpilot.remediation.template_registry import TemplateRegistry


@pytest.fixture
def registry():
    return TemplateRegistry()


class TestTemplateRegistry:
    def test_builtin_templates(self, registry):
        assert [t.name for t in registry.list_all()] == [
            "cpu_high", "memory_exhaustion", "disk_full",
            "interface_down", "interface_flapping",
            "auth_failure", "firewall_block",
            "connectivity_loss", "traffic_spike",
        ]

    @pytest.mark.parametrize("description,expected", [
        ("High CPU usage: CPU 使用率 当前值 95.0 大于 阈值 90.0", "cpu_high"),
        ("Memory usage high", "memory_exhaustion"),
        ("Disk space running out", "disk_full"),
        ("Interface down: 接口状态 (ether1) 当前状态为 断开", "interface_down"),
        ("Interface ether2 flapping", "interface_flapping"),
        ("SSH login failed repeatedly", "auth_failure"),
        ("Firewall blocked forwarded traffic", "firewall_block"),
        ("Gateway unreachable", "connectivity_loss"),
        ("Traffic spike on WAN", "traffic_spike"),
    ])
    def test_match(self, registry, description, expected):
        assert registry.match(description).name == expected

    def test_match_is_case_insensitive(self, registry):
        assert registry.match("HIGH CPU").name == "cpu_high"

    def test_no_match(self, registry):
        assert registry.match("DNS resolver returns stale records") is None

    def test_registration_order_decides(self, registry):
        # 同时命中多个模板时取先注册者
        assert registry.match("High CPU usage caused by traffic spike").name == "cpu_high"

    def test_register_custom(self, registry):
        template = RemediationTemplate(
            name="dns_stale",
            category="dns",
            root_cause_pattern=r"dns.*stale",
            steps=[TemplateStep(
                description="清空 DNS 缓存",
                command="/ip/dns/cache/flush",
                verification=StepVerification(command="/ip/dns/cache/print", expected_result="缓存为空"),
            )],
        )
        registry.register(template)
        assert registry.get("dns_stale") is template
        assert registry.match("DNS resolver returns stale records") is template

    def test_templates_are_well_formed(self, registry):
        for template in registry.list_all():
            re.compile(template.root_cause_pattern)
            assert template.steps
            assert all(isinstance(s.risk_level, RiskLevel) for s in template.steps)
