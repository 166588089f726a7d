"""命令行工具测试。"""
import asyncio
from datetime import datetime

from click.testing import CliRunner

from netpilot.cli import cli
from netpilot.services.audit import AuditLogger

VALID_CONFIG = """
channels:
  - name: feed
rules:
  - name: CPU 过高
    metric: cpu
    operator: gt
    threshold: 90
    channels: [feed]
tasks:
  - name: 告警检查
    type: alert_check
    cron: "*/5 * * * *"
"""


def _write(tmp_path, text):
    path = tmp_path / "bootstrap.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


class TestCheck:
    def test_valid_config(self, tmp_path):
        result = CliRunner().invoke(cli, ["check", _write(tmp_path, VALID_CONFIG)])
        assert result.exit_code == 0
        assert "✅ Config OK" in result.output
        assert "Rules: 1" in result.output
        assert "Patterns: 0" in result.output

    def test_reports_every_problem(self, tmp_path):
        text = VALID_CONFIG.replace("*/5 * * * *", "*/0 * * * *").replace("[feed]", "[feed, pager]")
        text += "patterns:\n  - name: empty\n    remediation_script: ''\n"
        result = CliRunner().invoke(cli, ["check", _write(tmp_path, text)])
        assert result.exit_code == 1
        assert "invalid cron" in result.output
        assert "unknown channels pager" in result.output
        assert "empty remediation script" in result.output

    def test_missing_file(self, tmp_path):
        result = CliRunner().invoke(cli, ["check", str(tmp_path / "missing.yaml")])
        assert result.exit_code == 1
        assert "Config error" in result.output


class TestNextRun:
    def test_lists_upcoming_times(self):
        result = CliRunner().invoke(cli, ["next-run", "*/15 * * * *", "-n", "3"])
        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert len(lines) == 3
        times = [datetime.fromisoformat(line) for line in lines]
        assert all(t.minute % 15 == 0 for t in times)
        assert times == sorted(times)

    def test_invalid_expression(self):
        result = CliRunner().invoke(cli, ["next-run", "61 * * * *"])
        assert result.exit_code == 1
        assert "❌" in result.output


class TestAudit:
    def test_empty(self, tmp_path):
        result = CliRunner().invoke(cli, ["--data-dir", str(tmp_path), "audit"])
        assert result.exit_code == 0
        assert "No audit entries" in result.output

    def test_lists_filtered_entries(self, tmp_path):
        audit = AuditLogger(tmp_path)
        asyncio.run(audit.log("alert_trigger", details={"trigger": "CPU 过高"}))
        asyncio.run(audit.log("script_execute", details={"trigger": "auto_response:CPU 过高", "error": "timeout"}))

        result = CliRunner().invoke(cli, ["--data-dir", str(tmp_path), "audit", "--action", "script_execute"])
        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert len(lines) == 1
        assert "auto_response:CPU 过高" in lines[0]
        assert lines[0].endswith("ERROR")


def test_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
