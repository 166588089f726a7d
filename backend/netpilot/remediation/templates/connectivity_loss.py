"""
修复模板 - 连通性丢失

检查路由和 ARP 表，并测试到公网地址的连通性。
"""
from ..models import RemediationTemplate, RiskLevel, StepVerification, TemplateRollback, TemplateStep

TEMPLATE = RemediationTemplate(
    name="connectivity_loss",
    category="network",
    root_cause_pattern=r"timeout|connection.*lost|unreachable",
    steps=[
        TemplateStep(
            description="检查路由表",
            command="/ip/route/print",
            verification=StepVerification(command="/ip/route/print", expected_result="显示路由表"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="检查 ARP 表",
            command="/ip/arp/print",
            verification=StepVerification(command="/ip/arp/print", expected_result="显示 ARP 表"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="测试网关连通性",
            command="/ping 8.8.8.8 count=3",
            verification=StepVerification(command="/ping 8.8.8.8 count=1", expected_result="应收到 ping 响应"),
            risk_level=RiskLevel.LOW,
            estimated_duration=10,
        ),
    ],
    rollback=[
        TemplateRollback(description="无需回滚（仅诊断操作）", command="# 诊断操作无需回滚"),
    ],
)
