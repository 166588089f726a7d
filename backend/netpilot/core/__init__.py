"""
核心模块包 (Core Module Package)

NetPilot 的基础设施组件：配置管理、业务异常、JSON 文件持久化。

Infrastructure components for NetPilot: configuration, business exceptions and JSON file persistence.
"""
