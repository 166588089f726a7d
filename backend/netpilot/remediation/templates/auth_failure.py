"""修复模板 - 认证失败，只做诊断查询。"""
from ..models import RemediationTemplate, RiskLevel, StepVerification, TemplateRollback, TemplateStep

TEMPLATE = RemediationTemplate(
    name="auth_failure",
    category="security",
    root_cause_pattern=r"auth.*fail|login.*fail|password|credential",
    steps=[
        TemplateStep(
            description="检查登录失败日志",
            command='/log/print where topics~"system" and message~"login"',
            verification=StepVerification(
                command='/log/print where topics~"system" and message~"login"',
                expected_result="显示登录相关日志",
            ),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="检查用户列表",
            command="/user/print",
            verification=StepVerification(command="/user/print", expected_result="显示用户列表"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="检查防火墙是否有 IP 封禁",
            command='/ip/firewall/address-list/print where list="blacklist"',
            verification=StepVerification(
                command='/ip/firewall/address-list/print where list="blacklist"',
                expected_result="显示黑名单 IP",
            ),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
    ],
    rollback=[
        TemplateRollback(description="无需回滚（仅诊断操作）", command="# 诊断操作无需回滚"),
    ],
)
