"""
NetPilot 修复方案模板包
NetPilot Remediation Template Package

每个模块导出一个 `TEMPLATE` 常量（`RemediationTemplate`），按根因描述的正则匹配。
Each module exports a `TEMPLATE` constant matched against the root cause description.

## 内置模板 (Built-in Templates)

| 模块 | 分类 | 性质 |
|------|------|------|
| cpu_high | system | 只读诊断 |
| memory_exhaustion | system | 清理 DNS 缓存 / 连接跟踪（含中风险步骤） |
| disk_full | system | 删除旧备份（含中风险步骤） |
| interface_down | interface | 重新启用接口（含中风险步骤） |
| interface_flapping | interface | 改为自动协商（含中风险步骤） |
| auth_failure | security | 只读诊断 |
| firewall_block | security | 只读诊断 |
| connectivity_loss | network | 只读诊断 |
| traffic_spike | network | 只读诊断 |

匹配顺序即 `TemplateRegistry` 中的注册顺序，第一个匹配者生效。
The registration order in `TemplateRegistry` is the match order; first match wins.
"""
