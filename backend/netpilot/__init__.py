"""NetPilot - 网络设备自治运维流水线 (Autonomous Network Operations Pipeline)。"""

__version__ = "0.1.0"
