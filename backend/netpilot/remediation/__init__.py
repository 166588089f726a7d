"""
NetPilot 自动修复子系统。

- FaultHealer：按预定义故障模式匹配告警并执行修复脚本
- RemediationAdvisor：无匹配模式时生成带风险评估的修复方案，执行自动步骤并支持回滚

两者共享设备命令执行器、配置快照和 AI 分析客户端。
"""
