"""
修复模板 - 接口抖动

速率或双工不匹配是抖动的常见原因，改为自动协商后观察。
"""
from ..models import RemediationTemplate, RiskLevel, StepVerification, TemplateRollback, TemplateStep

TEMPLATE = RemediationTemplate(
    name="interface_flapping",
    category="interface",
    root_cause_pattern=r"interface.*flapping|状态变化|state change",
    steps=[
        TemplateStep(
            description="检查接口状态历史",
            command='/log/print where topics~"interface"',
            verification=StepVerification(command='/log/print where topics~"interface"', expected_result="显示接口状态变化日志"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="检查接口配置",
            command="/interface/ethernet/print",
            verification=StepVerification(command="/interface/ethernet/print", expected_result="显示以太网接口配置"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="调整接口速率和双工模式为自动协商",
            command="/interface/ethernet/set [find] speed=auto",
            verification=StepVerification(command="/interface/ethernet/print", expected_result="速率应设置为 auto"),
            risk_level=RiskLevel.MEDIUM,
            estimated_duration=10,
        ),
    ],
    rollback=[
        TemplateRollback(
            description="恢复原始速率设置",
            command="/interface/ethernet/set [find] speed=<original_speed>",
            condition="如果自动协商导致问题",
        ),
    ],
)
