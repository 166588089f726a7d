"""
业务服务包 (Business Services Package)

审计日志、分析缓存、多渠道通知、cron 解析与任务调度。每个服务都是显式构造、
自行持有状态的实例，由 netpilot.main 装配注入，不存在模块级单例。
"""
