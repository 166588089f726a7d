"""
修复脚本解析器。

把 RouterOS CLI 风格的脚本解析为有序指令序列：
- 空行和 # 注释行被跳过
- ``:delay Ns`` 解析为 Delay 指令
- 其他以 ``:`` 开头的脚本指令被忽略
- 普通命令行转换为 API 格式的 Execute 指令：
  路径片段拼接为 API 路径，``k=v`` 参数转为 ``=k=v``，``where`` 之后的条件转为 ``?k=v``

示例::

    /interface pppoe-client disable pppoe-out1
    -> Execute(path="/interface/pppoe-client/disable/pppoe-out1", params=[])

    /interface pppoe-client print where name=pppoe-out1
    -> Execute(path="/interface/pppoe-client/print", params=["?name=pppoe-out1"])
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Union

_TOKEN_RE = re.compile(r"""(?:[^\s"']+|"[^"]*"|'[^']*')+""")
_PATH_WORD_RE = re.compile(r"^[a-z0-9\-]+$", re.IGNORECASE)
_DELAY_RE = re.compile(r"^:delay\s+(\d+)s?\b")


@dataclass(frozen=True)
class Execute:
    """执行一条 API 命令。source 保留原始 CLI 行用于输出和错误信息。"""
    path: str
    params: list[str] = field(default_factory=list)
    source: str = ""


@dataclass(frozen=True)
class Delay:
    seconds: int
    source: str = ""


Instruction = Union[Execute, Delay]


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _param(token: str) -> str:
    key, _, value = token.partition("=")
    return f"{key}={_strip_quotes(value)}"


def parse_command(line: str) -> Execute | None:
    """把单行 CLI 命令转换为 API 格式；无法得到路径时返回 None。"""
    trimmed = line.strip()
    if not trimmed or trimmed.startswith("#") or trimmed.startswith(":"):
        return None

    path_parts: list[str] = []
    params: list[str] = []
    in_where = False
    found_param = False

    for token in _TOKEN_RE.findall(trimmed):
        if token.lower() == "where":
            in_where = True
            continue
        if in_where:
            if "=" in token:
                params.append(f"?{_param(token)}")
            continue
        if "=" in token:
            found_param = True
            params.append(f"={_param(token)}")
        elif not found_param and (token.startswith("/") or _PATH_WORD_RE.match(token)):
            path_parts.append(token if token.startswith("/") else f"/{token}")

    path = re.sub(r"/+", "/", "".join(path_parts))
    if not path:
        return None
    return Execute(path=path, params=params, source=trimmed)


def parse_script(script: str) -> list[Instruction]:
    """解析整段脚本为指令序列，顺序与脚本行顺序一致。"""
    instructions: list[Instruction] = []
    for raw in script.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        delay = _DELAY_RE.match(line)
        if delay:
            instructions.append(Delay(seconds=int(delay.group(1)), source=line))
            continue
        command = parse_command(line)
        if command is not None:
            instructions.append(command)
    return instructions
