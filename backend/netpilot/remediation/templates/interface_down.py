"""
修复模板 - 接口断开

重新启用未运行的接口。回滚中的禁用命令命中关键配置，只在需要时人工执行。
"""
from ..models import RemediationTemplate, RiskLevel, StepVerification, TemplateRollback, TemplateStep

TEMPLATE = RemediationTemplate(
    name="interface_down",
    category="interface",
    root_cause_pattern=r"interface.*down|link.*down|disconnected",
    steps=[
        TemplateStep(
            description="检查接口状态",
            command="/interface/print",
            verification=StepVerification(command="/interface/print", expected_result="显示接口状态列表"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="尝试重新启用接口",
            command="/interface/enable [find where running=no]",
            verification=StepVerification(command="/interface/print where running=yes", expected_result="接口应恢复运行状态"),
            risk_level=RiskLevel.MEDIUM,
            estimated_duration=15,
        ),
    ],
    rollback=[
        TemplateRollback(
            description="如需禁用接口",
            command='/interface/disable [find where name="<interface_name>"]',
            condition="仅在需要时执行",
        ),
    ],
)
