"""设备命令执行器测试。"""
import pytest

from netpilot.remediation.command_executor import DeviceCommandError, DryRunDeviceExecutor, format_output


class TestExecuteCommand:
    @pytest.mark.asyncio
    async def test_converts_cli_to_api(self, executor, device):
        device.responses = {"/ip/address/print": [{"address": "192.168.88.1/24"}]}
        output = await executor.execute_command("/ip address print")
        assert device.calls == [("/ip/address/print", [])]
        assert "192.168.88.1/24" in output

    @pytest.mark.asyncio
    async def test_comment_not_sent(self, executor, device):
        assert await executor.execute_command("# 使用配置快照恢复") == "Skipped comment command"
        assert device.calls == []

    @pytest.mark.asyncio
    async def test_unparseable_command(self, executor):
        with pytest.raises(DeviceCommandError):
            await executor.execute_command(":log info x")

    @pytest.mark.asyncio
    async def test_device_error_propagates(self, executor, device):
        device.fail_on = {"/system/reboot"}
        with pytest.raises(DeviceCommandError):
            await executor.execute_command("/system reboot")


class TestRunScript:
    @pytest.mark.asyncio
    async def test_runs_lines_in_order_with_delay(self, executor, device):
        outcome = await executor.run_script(
            "/interface pppoe-client disable pppoe-out1\n:delay 3s\n/interface pppoe-client enable pppoe-out1"
        )
        assert outcome.error is None
        assert device.commands == [
            "/interface/pppoe-client/disable/pppoe-out1",
            "/interface/pppoe-client/enable/pppoe-out1",
        ]
        executor._sleep.assert_awaited_once_with(3)
        assert "Delayed 3 seconds" in outcome.output

    @pytest.mark.asyncio
    async def test_failed_line_does_not_stop_script(self, executor, device):
        device.fail_on = {"/ip/pool"}
        outcome = await executor.run_script("/ip pool set ranges=10.0.0.2-10.0.0.254\n/ip pool print")
        assert device.commands == ["/ip/pool/set", "/ip/pool/print"]
        assert "/ip pool print" in outcome.error
        assert "failure" in outcome.error

    @pytest.mark.asyncio
    async def test_comment_only_script(self, executor, device):
        outcome = await executor.run_script("# 需要人工确认")
        assert device.calls == []
        assert outcome.error is None
        assert outcome.output == "脚本执行完成"


@pytest.mark.asyncio
async def test_dry_run_records_without_side_effects():
    dry = DryRunDeviceExecutor()
    assert await dry.execute("/interface/disable", ["=numbers=ether1"]) == []
    assert dry.execution_log == [("/interface/disable", ["=numbers=ether1"])]


def test_format_output():
    assert format_output(None) == ""
    assert format_output([]) == ""
    assert format_output("raw") == "raw"
    assert '"name": "ether1"' in format_output([{"name": "ether1"}])
