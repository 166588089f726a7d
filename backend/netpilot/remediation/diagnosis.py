"""
诊断确认策略。

执行自动修复前需要确认告警确实对应该故障模式。两种可互换的实现：
- AnalysisDiagnosis：调用 AI 分析服务，失败时回退到启发式策略
- HeuristicDiagnosis：模式中至少一个条件的指标与告警指标一致即确认

select_strategy() 根据分析服务是否可用选择实现。AI 结果按 (模式, 告警指纹) 缓存。
"""
from __future__ import annotations

import logging
from typing import Optional, Protocol

from netpilot.models.alert import AlertEvent
from netpilot.services.analysis_cache import AnalysisCache, generate_fingerprint

from .ai_client import DIAGNOSIS_SYSTEM_PROMPT, Analyzer, parse_json_response
from .models import Diagnosis, FaultPattern

logger = logging.getLogger(__name__)


class DiagnosticStrategy(Protocol):
    async def diagnose(self, pattern: FaultPattern, event: AlertEvent) -> Diagnosis:
        ...


class HeuristicDiagnosis:
    """启发式确认：条件指标与告警指标一致。"""

    async def diagnose(self, pattern: FaultPattern, event: AlertEvent) -> Diagnosis:
        if any(cond.metric == event.metric for cond in pattern.conditions):
            return Diagnosis(
                confirmed=True,
                confidence=0.85,
                reasoning=f'告警事件 "{event.message}" 与故障模式 "{pattern.name}" 的条件匹配。建议执行修复脚本。',
            )
        return Diagnosis(
            confirmed=False,
            confidence=0.2,
            reasoning=f'故障模式 "{pattern.name}" 的条件指标与告警指标 {event.metric} 不一致。',
        )


def _build_diagnosis_prompt(pattern: FaultPattern, event: AlertEvent) -> str:
    conditions = "; ".join(
        f"{c.metric}{'[' + c.metric_label + ']' if c.metric_label else ''} {c.operator} {c.threshold}"
        for c in pattern.conditions
    )
    return "\n".join([
        f"ALERT: {event.summary()}",
        f"Metric: {event.metric} = {event.current_value} (threshold {event.threshold})",
        f"FAULT PATTERN: {pattern.name} - {pattern.description}",
        f"Conditions: {conditions}",
        f"Remediation script:\n{pattern.remediation_script}",
    ])


class AnalysisDiagnosis:
    """AI 确认，任何失败都回退到启发式结果。"""

    def __init__(
        self,
        analyzer: Analyzer,
        fallback: Optional[DiagnosticStrategy] = None,
        cache: Optional[AnalysisCache] = None,
    ) -> None:
        self.analyzer = analyzer
        self.fallback = fallback or HeuristicDiagnosis()
        self.cache = cache

    async def diagnose(self, pattern: FaultPattern, event: AlertEvent) -> Diagnosis:
        cache_key = f"diagnosis:{pattern.id}:{generate_fingerprint(event)}"
        try:
            text = self.cache.get(cache_key) if self.cache else None
            fresh = text is None
            if fresh:
                text = await self.analyzer.analyze(DIAGNOSIS_SYSTEM_PROMPT, _build_diagnosis_prompt(pattern, event))
            data = parse_json_response(text)
            # 只缓存新取得且可解析的结果；命中缓存不刷新 TTL
            if fresh and self.cache:
                self.cache.set(cache_key, text)
            return Diagnosis(
                confirmed=bool(data.get("confirmed", False)),
                confidence=min(max(float(data.get("confidence", 0.5)), 0.0), 1.0),
                reasoning=str(data.get("reasoning", "")),
            )
        except Exception as e:
            logger.warning("AI diagnosis unavailable, using heuristic: %s", e)
            return await self.fallback.diagnose(pattern, event)


def select_strategy(analyzer: Optional[Analyzer], cache: Optional[AnalysisCache] = None) -> DiagnosticStrategy:
    """分析服务可用时使用 AI 确认，否则使用启发式确认。"""
    if analyzer is not None and getattr(analyzer, "available", True):
        return AnalysisDiagnosis(analyzer, cache=cache)
    return HeuristicDiagnosis()
