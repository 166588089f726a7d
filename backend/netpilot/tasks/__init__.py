"""
后台任务包 (Background Tasks Package)

告警引擎的规则评估循环，以及调度器触发的巡检与健康报告任务。
"""
