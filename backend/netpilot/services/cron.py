"""
Cron 表达式解析与下次执行时间计算。

支持 5 段格式（分 时 日 月 周），6 段格式会丢弃开头的秒字段。
每段支持 *、列表 a,b、范围 a-b、步长 */n 与 a-b/n，列表元素本身也可以是范围或步长。
周字段 0 和 7 都表示周日。

下次执行时间通过从下一分钟开始逐分钟向前模拟求得，最多搜索一年（366 天）。
各字段独立判断，全部命中才算匹配。
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from netpilot.core.exceptions import ValidationError

MAX_SEARCH_MINUTES = 366 * 24 * 60

# (名称, 最小值, 最大值)
FIELDS = [
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
]


def _parse_int(token: str, expr: str) -> int:
    if not token.isdigit():
        raise ValidationError(f"Invalid cron expression: {expr}", f"bad value '{token}'")
    return int(token)


def _parse_field(field: str, lo: int, hi: int, expr: str) -> frozenset[int]:
    values: set[int] = set()
    for part in field.split(","):
        if not part:
            raise ValidationError(f"Invalid cron expression: {expr}", "empty list element")
        base, _, step_token = part.partition("/")
        step = _parse_int(step_token, expr) if step_token else 1
        if step <= 0:
            raise ValidationError(f"Invalid cron expression: {expr}", "step must be positive")

        if base == "*":
            start, end = lo, hi
        elif "-" in base:
            a, _, b = base.partition("-")
            start, end = _parse_int(a, expr), _parse_int(b, expr)
        else:
            start = _parse_int(base, expr)
            # "5/15" 表示从 5 开始到字段上限
            end = hi if step_token else start

        if start < lo or end > hi or start > end:
            raise ValidationError(
                f"Invalid cron expression: {expr}", f"value out of range {lo}-{hi}: '{part}'"
            )
        values.update(range(start, end + 1, step))
    return frozenset(values)


class CronExpression:
    """已解析的 cron 表达式。"""

    def __init__(self, expr: str) -> None:
        self.expr = expr
        parts = expr.split()
        if len(parts) == 6:
            parts = parts[1:]
        if len(parts) != 5:
            raise ValidationError(f"Invalid cron expression: {expr}", "expected 5 or 6 fields")

        parsed = [_parse_field(p, lo, hi, expr) for p, (_, lo, hi) in zip(parts, FIELDS)]
        self.minutes, self.hours, self.days, self.months, weekdays = parsed
        # 7 与 0 都表示周日
        self.weekdays = frozenset(0 if d == 7 else d for d in weekdays)

    def matches(self, dt: datetime) -> bool:
        cron_weekday = (dt.weekday() + 1) % 7  # Python 周一=0，cron 周日=0
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.day in self.days
            and dt.month in self.months
            and cron_weekday in self.weekdays
        )

    def next_run(self, after: datetime) -> Optional[datetime]:
        """after 之后（不含当前分钟）第一个匹配的整分钟；一年内无匹配返回 None。"""
        candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        for _ in range(MAX_SEARCH_MINUTES):
            if self.matches(candidate):
                return candidate
            candidate += timedelta(minutes=1)
        return None

    def __repr__(self) -> str:
        return f"CronExpression({self.expr!r})"


def validate_cron(expr: str) -> bool:
    try:
        CronExpression(expr)
    except ValidationError:
        return False
    return True


def next_run(expr: str, after: datetime) -> Optional[datetime]:
    return CronExpression(expr).next_run(after)
