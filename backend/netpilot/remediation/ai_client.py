"""
AI 分析客户端。

Analyzer 是对语言模型分析能力的抽象：analyze(system_prompt, user_prompt) -> text。
调用方必须在分析不可用时使用确定性的回退逻辑（模板 / 启发式），不能无限等待。

LLMAnalyzer 调用 OpenAI 兼容接口（默认 DeepSeek），支持 mock 模式用于测试。
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

ALERT_ANALYSIS_SYSTEM_PROMPT = """你是 RouterOS 网络设备运维专家。
根据告警信息给出简洁的原因分析和处理建议，不超过 200 字。"""

DIAGNOSIS_SYSTEM_PROMPT = """You are a RouterOS network diagnostic AI.
Given a fault pattern and an alert event, decide whether the alert really matches the fault.

Your response MUST be valid JSON with these fields:
{
    "confirmed": true or false,
    "confidence": 0.0 to 1.0,
    "reasoning": "step by step reasoning"
}

High confidence only when evidence is clear. When uncertain, say so."""

REMEDIATION_SYSTEM_PROMPT = """You are a RouterOS remediation planner.
Given a root cause, list remediation recommendations, one per line.
Wrap every RouterOS command in back-ticks, e.g. `/interface/print`.

Your response MUST be valid JSON:
{
    "recommendations": ["step description with `command`", "..."],
    "risk_level": "low" | "medium" | "high"
}"""


class AnalysisUnavailableError(Exception):
    """分析服务未配置或调用失败。"""


@runtime_checkable
class Analyzer(Protocol):
    async def analyze(self, system_prompt: str, user_prompt: str) -> str:
        ...


def strip_code_fence(text: str) -> str:
    """去掉 markdown 代码块包裹。"""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [line for line in lines[1:] if not line.strip().startswith("```")]
        cleaned = "\n".join(lines)
    return cleaned


def parse_json_response(text: str) -> dict[str, Any]:
    """解析模型返回的 JSON，容忍代码块和前后多余文字。"""
    cleaned = strip_code_fence(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not match:
            raise
        data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


class LLMAnalyzer:
    """OpenAI 兼容接口的分析客户端。"""

    def __init__(
        self,
        api_key: str = "",
        api_base: str = "https://api.deepseek.com/v1",
        model: str = "deepseek-chat",
        timeout: float = 30.0,
        max_tokens: int = 2000,
        mock_responses: Optional[list[str]] = None,
    ) -> None:
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self._mock_responses = list(mock_responses) if mock_responses is not None else None
        self._mock_index = 0

    @property
    def is_mock(self) -> bool:
        return self._mock_responses is not None

    @property
    def available(self) -> bool:
        return self.is_mock or bool(self.api_key)

    async def analyze(self, system_prompt: str, user_prompt: str) -> str:
        if self._mock_responses is not None:
            if self._mock_index < len(self._mock_responses):
                result = self._mock_responses[self._mock_index]
                self._mock_index += 1
                return result
            raise AnalysisUnavailableError("mock responses exhausted")

        if not self.api_key:
            raise AnalysisUnavailableError("AI API key not configured")

        try:
            return await self._call_llm(system_prompt, user_prompt)
        except httpx.HTTPError as e:
            logger.error("AI analysis failed: %s", e)
            raise AnalysisUnavailableError(f"AI call failed: {e}") from e

    async def _call_llm(self, system_prompt: str, user_prompt: str, temperature: float = 0.1) -> str:
        """调用 OpenAI 兼容接口。"""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.api_base}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    "temperature": temperature,
                    "max_tokens": self.max_tokens,
                },
            )
            response.raise_for_status()
            data = response.json()
            return data["choices"][0]["message"]["content"]
