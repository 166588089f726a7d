"""
模板注册表：将根因描述匹配到修复模板。

所有内置模板在导入时注册，按注册顺序匹配，第一个命中者生效。
"""
from __future__ import annotations

import logging

from .models import RemediationTemplate
from .templates.auth_failure import TEMPLATE as AUTH_FAILURE
from .templates.connectivity_loss import TEMPLATE as CONNECTIVITY_LOSS
from .templates.cpu_high import TEMPLATE as CPU_HIGH
from .templates.disk_full import TEMPLATE as DISK_FULL
from .templates.firewall_block import TEMPLATE as FIREWALL_BLOCK
from .templates.interface_down import TEMPLATE as INTERFACE_DOWN
from .templates.interface_flapping import TEMPLATE as INTERFACE_FLAPPING
from .templates.memory_exhaustion import TEMPLATE as MEMORY_EXHAUSTION
from .templates.traffic_spike import TEMPLATE as TRAFFIC_SPIKE

logger = logging.getLogger(__name__)


class TemplateRegistry:
    """所有可用修复模板的有序注册表。"""

    def __init__(self) -> None:
        self._templates: dict[str, RemediationTemplate] = {}
        self._register_defaults()

    def _register_defaults(self) -> None:
        for template in [
            CPU_HIGH, MEMORY_EXHAUSTION, DISK_FULL,
            INTERFACE_DOWN, INTERFACE_FLAPPING,
            AUTH_FAILURE, FIREWALL_BLOCK,
            CONNECTIVITY_LOSS, TRAFFIC_SPIKE,
        ]:
            self.register(template)

    def register(self, template: RemediationTemplate) -> None:
        self._templates[template.name] = template
        logger.debug("Registered remediation template: %s", template.name)

    def get(self, name: str) -> RemediationTemplate | None:
        return self._templates.get(name)

    def list_all(self) -> list[RemediationTemplate]:
        return list(self._templates.values())

    def match(self, description: str) -> RemediationTemplate | None:
        for template in self._templates.values():
            if template.matches(description):
                logger.info("Matched remediation template '%s' (%s)", template.name, template.category)
                return template
        return None
