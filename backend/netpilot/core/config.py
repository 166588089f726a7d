"""
应用配置模块 (Application Configuration Module)

使用 Pydantic Settings 管理 NetPilot 的所有配置项，支持从 .env 文件和 NETPILOT_ 前缀的环境变量读取。
各组件通过构造参数接收配置，Settings 只负责在装配流水线时提供默认值。

Uses Pydantic Settings to manage all NetPilot configuration, read from a .env file and
NETPILOT_-prefixed environment variables. Components receive their tunables through
constructor arguments; Settings only feeds the pipeline wiring.
"""
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    应用全局配置类 (Application Global Configuration Class)

    字段名自动映射 NETPILOT_ 前缀的同名环境变量（不区分大小写），支持 .env 文件加载。

    Field names map to NETPILOT_-prefixed environment variables (case insensitive),
    with .env file loading.
    """

    # 存储配置 (Storage Configuration)
    data_dir: Path = Path("data/ai-ops")  # 持久化根目录 (Root directory for persisted state)

    # AI 配置 (AI Service Configuration)
    ai_api_key: str = ""  # 为空时禁用 AI 诊断，使用启发式策略 (Empty disables AI-backed strategies)
    ai_api_base: str = "https://api.deepseek.com/v1"  # OpenAI 兼容接口地址 (OpenAI-compatible base URL)
    ai_model: str = "deepseek-chat"  # AI 模型名称 (AI Model Name)
    ai_timeout: float = 30.0  # AI 请求超时（秒） (AI request timeout in seconds)
    ai_max_tokens: int = 2000  # AI 响应最大 Token 数 (AI Max Tokens)

    # 设备执行配置 (Device Execution Configuration)
    # ⚠️ dry-run 默认开启！未接入真实设备客户端时只记录不执行
    device_dry_run: bool = True  # 试运行模式：只记录不执行命令 (Dry-run Mode: Log Only, No Execution)

    # 告警引擎配置 (Alert Engine Configuration)
    alert_check_interval: int = 60  # 告警评估间隔（秒） (Evaluation interval in seconds)

    # 分析缓存配置 (Analysis Cache Configuration)
    cache_ttl_seconds: int = 1800  # 缓存默认有效期 30 分钟 (Default TTL, 30 minutes)
    cache_max_size: int = 1000  # 缓存最大条目数 (Max cached entries)
    cache_sweep_interval: int = 300  # 过期清扫间隔（秒） (Expiry sweep interval)

    # 审计与通知保留配置 (Retention Configuration)
    audit_retention_days: int = 180  # 审计日志保留天数 (Audit retention days)
    notification_retention_days: int = 30  # 通知历史保留天数 (Notification history retention days)

    # 通知重试配置 (Notification Retry Configuration)
    notify_retry_delays: list[float] = Field(default_factory=lambda: [1, 5, 30])  # 重试间隔（秒） (Retry backoff)
    notify_max_retries: int = 3  # 首次发送后的最大重试次数 (Retries after the first attempt)
    http_timeout: float = 10.0  # Webhook 请求超时（秒） (Webhook timeout)

    log_level: str = "INFO"  # CLI 日志级别 (CLI log level)

    @property
    def ai_enabled(self) -> bool:
        """是否配置了 AI 服务 (Whether an analysis provider is configured)。"""
        return bool(self.ai_api_key)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "NETPILOT_",
        "extra": "ignore",
    }  # Pydantic 配置：自动加载 .env 文件 (Pydantic Config: Auto-load .env file)


# 默认配置实例，仅供 CLI 使用 (Default instance, used by the CLI only)
settings = Settings()
