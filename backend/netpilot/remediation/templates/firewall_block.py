"""修复模板 - 防火墙拦截，只做诊断查询。"""
from ..models import RemediationTemplate, RiskLevel, StepVerification, TemplateRollback, TemplateStep

TEMPLATE = RemediationTemplate(
    name="firewall_block",
    category="security",
    root_cause_pattern=r"firewall.*block|drop|reject|deny",
    steps=[
        TemplateStep(
            description="检查防火墙规则",
            command="/ip/firewall/filter/print",
            verification=StepVerification(command="/ip/firewall/filter/print", expected_result="显示防火墙过滤规则"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="检查 NAT 规则",
            command="/ip/firewall/nat/print",
            verification=StepVerification(command="/ip/firewall/nat/print", expected_result="显示 NAT 规则"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="检查连接跟踪",
            command="/ip/firewall/connection/print",
            verification=StepVerification(command="/ip/firewall/connection/print", expected_result="显示活动连接"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
    ],
    rollback=[
        TemplateRollback(description="无需回滚（仅诊断操作）", command="# 诊断操作无需回滚"),
    ],
)
