"""
修复模板 - CPU 使用率过高

仅包含诊断查询，不修改设备配置，全部步骤可自动执行。
"""
from ..models import RemediationTemplate, RiskLevel, StepVerification, TemplateRollback, TemplateStep

TEMPLATE = RemediationTemplate(
    name="cpu_high",
    category="system",
    root_cause_pattern=r"high.*cpu|cpu.*high|cpu.*usage",
    steps=[
        TemplateStep(
            description="检查当前 CPU 使用情况",
            command="/system/resource/print",
            verification=StepVerification(command="/system/resource/print", expected_result="CPU 使用率应显示当前值"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="检查高 CPU 占用的进程",
            command="/tool/profile/print",
            verification=StepVerification(command="/tool/profile/print", expected_result="显示进程 CPU 占用列表"),
            risk_level=RiskLevel.LOW,
            estimated_duration=10,
        ),
        TemplateStep(
            description="检查连接跟踪表大小",
            command="/ip/firewall/connection/print count-only",
            verification=StepVerification(
                command="/ip/firewall/connection/print count-only",
                expected_result="连接数应在合理范围内",
            ),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
    ],
    rollback=[
        TemplateRollback(description="无需回滚（仅诊断操作）", command="# 诊断操作无需回滚"),
    ],
)
