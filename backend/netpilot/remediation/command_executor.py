"""
设备命令执行器，支持 dry-run 模式。

DeviceExecutor 是对设备 API 客户端的抽象：execute(path, params) 返回结果或抛出异常。
CommandExecutor 在其之上负责 CLI → API 转换、脚本逐行执行和输出整理。
默认 dry_run=True 的 DryRunDeviceExecutor 只记录不执行，未接入真实设备时使用。
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

from .models import ScriptOutcome
from .script import Delay, parse_command, parse_script

logger = logging.getLogger(__name__)


class DeviceCommandError(Exception):
    """设备返回的命令错误，消息对调用方不透明。"""


@runtime_checkable
class DeviceExecutor(Protocol):
    async def execute(self, command: str, params: Optional[list[str]] = None) -> Any:
        ...


class DryRunDeviceExecutor:
    """只记录不执行的设备执行器。"""

    def __init__(self) -> None:
        self._execution_log: list[tuple[str, list[str]]] = []

    @property
    def execution_log(self) -> list[tuple[str, list[str]]]:
        return list(self._execution_log)

    async def execute(self, command: str, params: Optional[list[str]] = None) -> Any:
        params = list(params or [])
        self._execution_log.append((command, params))
        logger.info("[DRY RUN] Would execute: %s %s", command, " ".join(params))
        return []


def format_output(response: Any) -> str:
    if response is None:
        return ""
    if isinstance(response, str):
        return response
    if isinstance(response, (list, dict)) and not response:
        return ""
    return json.dumps(response, ensure_ascii=False, indent=2, default=str)


class CommandExecutor:
    """在 DeviceExecutor 之上执行 CLI 命令和多行修复脚本。"""

    def __init__(
        self,
        device: DeviceExecutor,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.device = device
        self._sleep = sleep

    async def execute_command(self, command: str) -> str:
        """执行单条 CLI 命令。# 注释直接跳过；无法解析的命令抛出 DeviceCommandError。"""
        cleaned = command.strip()
        if cleaned.startswith("#"):
            return "Skipped comment command"
        instruction = parse_command(cleaned)
        if instruction is None:
            raise DeviceCommandError(f"Unsupported command: {cleaned}")
        response = await self.device.execute(instruction.path, instruction.params)
        return format_output(response)

    async def run_script(self, script: str) -> ScriptOutcome:
        """
        逐行执行修复脚本。

        单行失败不会中断后续行；最后一次失败作为整体错误返回。
        """
        outputs: list[str] = []
        last_error: Optional[str] = None

        for instruction in parse_script(script):
            if isinstance(instruction, Delay):
                await self._sleep(instruction.seconds)
                outputs.append(f"Delayed {instruction.seconds} seconds")
                continue
            try:
                response = await self.device.execute(instruction.path, instruction.params)
            except Exception as e:
                last_error = f'命令 "{instruction.source}" 执行失败: {e}'
                outputs.append(last_error)
                logger.warning("Script line failed: %s -- %s", instruction.source, e)
                continue
            text = format_output(response)
            if text:
                outputs.append(text)
            outputs.append(f"Executed: {instruction.source}")

        return ScriptOutcome(output="\n".join(outputs) or "脚本执行完成", error=last_error)
