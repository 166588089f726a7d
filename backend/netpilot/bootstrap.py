"""
启动配置加载模块。

从 YAML 文件加载初始的通知渠道、告警规则、定时任务和故障模式，
由 Pipeline.apply_bootstrap() 按名称补齐尚不存在的实体。
支持时间间隔简写（如 '30s'、'5m'、'1h'），告警规则通过渠道名称引用通知渠道。

示例::

    channels:
      - name: ops-webhook
        type: webhook
        config: {url: "https://hooks.example.com/netpilot"}
    rules:
      - name: CPU 过高
        metric: cpu
        operator: gt
        threshold: 90
        duration: 2m
        channels: [ops-webhook]
    tasks:
      - name: 告警检查
        type: alert_check
        cron: "* * * * *"
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from netpilot.core.exceptions import ConflictError, ValidationError


@dataclass
class ChannelConfig:
    """通知渠道配置。"""
    name: str = ""
    type: str = "web_push"  # web_push / webhook / email
    enabled: bool = True
    config: Dict[str, Any] = field(default_factory=dict)
    severity_filter: Optional[List[str]] = None


@dataclass
class RuleConfig:
    """告警规则配置。"""
    name: str = ""
    metric: str = ""
    metric_label: Optional[str] = None
    operator: str = "gt"
    threshold: float = 0
    duration: int = 0     # 持续时间（秒）
    cooldown: int = 300   # 冷却期（秒）
    severity: str = "warning"
    enabled: bool = True
    channels: List[str] = field(default_factory=list)  # 渠道名称
    auto_response: str = ""  # 自动响应脚本，为空表示不启用


@dataclass
class TaskConfig:
    """定时任务配置。"""
    name: str = ""
    type: str = ""
    cron: str = ""
    enabled: bool = True
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConditionConfig:
    metric: str = ""
    metric_label: Optional[str] = None
    operator: str = "eq"
    threshold: float = 0


@dataclass
class PatternConfig:
    """自定义故障模式配置。"""
    name: str = ""
    description: str = ""
    enabled: bool = True
    auto_heal: bool = False
    conditions: List[ConditionConfig] = field(default_factory=list)
    remediation_script: str = ""
    verification_script: Optional[str] = None


@dataclass
class BootstrapConfig:
    """启动配置，聚合所有实体。"""
    channels: List[ChannelConfig] = field(default_factory=list)
    rules: List[RuleConfig] = field(default_factory=list)
    tasks: List[TaskConfig] = field(default_factory=list)
    patterns: List[PatternConfig] = field(default_factory=list)


def _parse_interval(val) -> int:
    """解析时间间隔，支持 '30s'、'5m'、'1h' 等简写格式。"""
    if isinstance(val, int):
        return val
    s = str(val).strip().lower()
    if s.endswith("s"):
        return int(s[:-1])
    if s.endswith("m"):
        return int(s[:-1]) * 60
    if s.endswith("h"):
        return int(s[:-1]) * 3600
    return int(s)


def _require_name(section: str, item: dict) -> str:
    name = str(item.get("name", "")).strip()
    if not name:
        raise ValidationError(f"Every entry in '{section}' needs a name")
    return name


def _check_unique(section: str, names: List[str]) -> None:
    seen = set()
    for name in names:
        if name in seen:
            raise ConflictError(f"Duplicate name in '{section}': {name}")
        seen.add(name)


def load_bootstrap(path: str) -> BootstrapConfig:
    """从 YAML 文件加载启动配置。

    Args:
        path: 配置文件路径。

    Returns:
        解析后的 BootstrapConfig 实例。

    Raises:
        FileNotFoundError: 配置文件不存在时抛出。
        ValidationError: 条目缺少名称时抛出。
        ConflictError: 同一类实体名称重复时抛出。
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Bootstrap file not found: {path}")

    with open(p, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    cfg = BootstrapConfig()

    for ch in data.get("channels", []):
        cfg.channels.append(ChannelConfig(
            name=_require_name("channels", ch),
            type=ch.get("type", "web_push"),
            enabled=ch.get("enabled", True),
            config=ch.get("config", {}) or {},
            severity_filter=ch.get("severity_filter"),
        ))

    for r in data.get("rules", []):
        cfg.rules.append(RuleConfig(
            name=_require_name("rules", r),
            metric=r.get("metric", ""),
            metric_label=r.get("metric_label"),
            operator=r.get("operator", "gt"),
            threshold=float(r.get("threshold", 0)),
            duration=_parse_interval(r.get("duration", 0)),
            cooldown=_parse_interval(r.get("cooldown", 300)),
            severity=r.get("severity", "warning"),
            enabled=r.get("enabled", True),
            channels=list(r.get("channels", [])),
            auto_response=r.get("auto_response", "") or "",
        ))

    for t in data.get("tasks", []):
        cfg.tasks.append(TaskConfig(
            name=_require_name("tasks", t),
            type=t.get("type", ""),
            cron=str(t.get("cron", "")),
            enabled=t.get("enabled", True),
            config=t.get("config", {}) or {},
        ))

    for p_conf in data.get("patterns", []):
        conditions = [
            ConditionConfig(
                metric=c.get("metric", ""),
                metric_label=c.get("metric_label"),
                operator=c.get("operator", "eq"),
                threshold=float(c.get("threshold", 0)),
            )
            for c in p_conf.get("conditions", [])
        ]
        cfg.patterns.append(PatternConfig(
            name=_require_name("patterns", p_conf),
            description=p_conf.get("description", ""),
            enabled=p_conf.get("enabled", True),
            auto_heal=p_conf.get("auto_heal", False),
            conditions=conditions,
            remediation_script=p_conf.get("remediation_script", ""),
            verification_script=p_conf.get("verification_script"),
        ))

    _check_unique("channels", [c.name for c in cfg.channels])
    _check_unique("rules", [r.name for r in cfg.rules])
    _check_unique("tasks", [t.name for t in cfg.tasks])
    _check_unique("patterns", [p.name for p in cfg.patterns])
    return cfg
