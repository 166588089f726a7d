"""
修复模板 - 内存耗尽

清理 DNS 缓存和即将超时的连接跟踪条目以释放内存。
清理连接跟踪为中风险操作，需要人工确认。
"""
from ..models import RemediationTemplate, RiskLevel, StepVerification, TemplateRollback, TemplateStep

TEMPLATE = RemediationTemplate(
    name="memory_exhaustion",
    category="system",
    root_cause_pattern=r"memory.*exhaustion|memory.*high|out of memory|oom",
    steps=[
        TemplateStep(
            description="检查当前内存使用情况",
            command="/system/resource/print",
            verification=StepVerification(command="/system/resource/print", expected_result="显示内存使用统计"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="清理 DNS 缓存",
            command="/ip/dns/cache/flush",
            verification=StepVerification(command="/ip/dns/cache/print count-only", expected_result="DNS 缓存条目数应减少"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="检查并清理过期的连接跟踪",
            command="/ip/firewall/connection/remove [find where timeout<10s]",
            verification=StepVerification(command="/ip/firewall/connection/print count-only", expected_result="连接数应减少"),
            risk_level=RiskLevel.MEDIUM,
            estimated_duration=10,
        ),
    ],
    rollback=[
        TemplateRollback(description="连接跟踪会自动重建", command="# 连接跟踪会根据流量自动重建"),
    ],
)
