"""
修复模板 - 存储空间不足

删除 7 天前的备份文件。删除不可恢复，回滚步骤仅作提示。
"""
from ..models import RemediationTemplate, RiskLevel, StepVerification, TemplateRollback, TemplateStep

TEMPLATE = RemediationTemplate(
    name="disk_full",
    category="system",
    root_cause_pattern=r"disk.*full|disk.*space|storage",
    steps=[
        TemplateStep(
            description="检查磁盘使用情况",
            command="/system/resource/print",
            verification=StepVerification(command="/system/resource/print", expected_result="显示磁盘使用统计"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="列出文件占用情况",
            command="/file/print",
            verification=StepVerification(command="/file/print", expected_result="显示文件列表"),
            risk_level=RiskLevel.LOW,
            estimated_duration=5,
        ),
        TemplateStep(
            description="清理旧的备份文件",
            command='/file/remove [find where name~"backup" and creation-time<([:timestamp]-7d)]',
            verification=StepVerification(command='/file/print where name~"backup"', expected_result="旧备份文件应被删除"),
            risk_level=RiskLevel.MEDIUM,
            estimated_duration=10,
        ),
    ],
    rollback=[
        TemplateRollback(description="备份文件删除后无法恢复", command="# 建议在删除前先下载重要备份"),
    ],
)
