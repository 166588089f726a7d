"""
安全模块：修复步骤的自动执行判定与整体风险评估。

关键配置路径列表硬编码，不允许通过配置文件或环境变量覆盖。
命中关键配置的命令一律需要人工确认，无论其声明的风险等级。
CLI 写法（空格分隔）与 API 写法（斜杠分隔）按同一条 API 路径判定。
"""
from __future__ import annotations

import re
from typing import Iterable

from .models import RemediationStep, RiskLevel
from .script import parse_command

# === 关键配置路径 ===
CRITICAL_CONFIG_PATHS: list[str] = [
    # 账号与身份
    r"/user",
    r"/password",
    r"/system/identity",
    # 防火墙
    r"/ip/firewall/filter",
    r"/ip/firewall/nat",
    r"/ipv6/firewall",
    # 路由与证书
    r"/routing",
    r"/certificate",
    # 系统级危险操作
    r"/system/reset",
    r"/system/reboot",
    r"/interface.*disable",
]

_CRITICAL_RE = [re.compile(p, re.IGNORECASE) for p in CRITICAL_CONFIG_PATHS]

# 只读查询命令
_READ_ONLY_RE = re.compile(r"/print|/monitor|/ping|/traceroute|/torch", re.IGNORECASE)


def _api_path(command: str) -> str:
    parsed = parse_command(command)
    return parsed.path if parsed is not None else command


def touches_critical_config(command: str) -> bool:
    candidates = (command, _api_path(command))
    return any(pattern.search(c) for pattern in _CRITICAL_RE for c in candidates)


def is_read_only(command: str) -> bool:
    return bool(_READ_ONLY_RE.search(_api_path(command)))


def is_auto_executable(command: str, risk: RiskLevel) -> bool:
    """高风险和关键配置永远需要确认；只读查询或低风险命令可自动执行。"""
    if risk == RiskLevel.HIGH:
        return False
    if touches_critical_config(command):
        return False
    if is_read_only(command):
        return True
    return risk == RiskLevel.LOW


def calculate_overall_risk(steps: Iterable[RemediationStep]) -> RiskLevel:
    """整体风险 = 步骤风险的最大值；无步骤时为 LOW。"""
    return max((s.risk_level for s in steps), key=lambda r: r.rank, default=RiskLevel.LOW)


def requires_confirmation(steps: Iterable[RemediationStep]) -> bool:
    return any(s.risk_level == RiskLevel.HIGH or not s.auto_executable for s in steps)
