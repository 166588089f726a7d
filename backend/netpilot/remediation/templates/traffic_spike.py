"""修复模板 - 流量突增，定位流量来源。"""
from ..models import RemediationTemplate, RiskLevel, StepVerification, TemplateRollback, TemplateStep

TEMPLATE = RemediationTemplate(
    name="traffic_spike",
    category="network",
    root_cause_pattern=r"traffic.*spike|bandwidth|throughput|流量",
    steps=[
        TemplateStep(
            description="检查接口流量统计",
            command="/interface/print stats",
            verification=StepVerification(command="/interface/print stats", expected_result="显示接口流量统计"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="检查活动连接",
            command="/ip/firewall/connection/print",
            verification=StepVerification(command="/ip/firewall/connection/print count-only", expected_result="显示连接数"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="检查 Torch 实时流量",
            command="/tool/torch interface=all",
            verification=StepVerification(command="/tool/torch interface=all", expected_result="显示实时流量分布"),
            risk_level=RiskLevel.LOW,
            estimated_duration=15,
        ),
    ],
    rollback=[
        TemplateRollback(description="无需回滚（仅诊断操作）", command="# 诊断操作无需回滚"),
    ],
)
