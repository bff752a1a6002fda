"""工具注册中心：按名称或别名选择工具能力对象。"""

from __future__ import annotations

from dataclasses import asdict

from stepmanager.domain.errors import ConfigurationError
from stepmanager.domain.tools.base import BaseStepTool
from stepmanager.domain.tools.command_line import CommandLineTool
from stepmanager.domain.tools.cyclops import CyclopsTool
from stepmanager.domain.tools.data_import import DataImportTool
from stepmanager.domain.tools.uimf_to_masshunter import UimfToMassHunterTool


class ToolRegistry:
    """工具注册中心，统一管理可用工具实例。"""
    def __init__(self, *, register_defaults: bool = True) -> None:
        self._tools: dict[str, BaseStepTool] = {}
        self._lookup: dict[str, str] = {}
        if register_defaults:
            self.register(CommandLineTool())
            self.register(CyclopsTool())
            self.register(DataImportTool())
            self.register(UimfToMassHunterTool())

    def register(self, tool: BaseStepTool) -> None:
        """注册工具实例；编码、名称与别名均可用于查找。
        参数:
        - tool: 工具实例，同编码重复注册时覆盖旧实例。
        """
        self._tools[tool.code] = tool
        for key in (tool.code, tool.name, *tool.aliases):
            self._lookup[key.lower()] = tool.code

    def get(self, tool_name: str) -> BaseStepTool:
        """按工具名获取工具实例，大小写不敏感。
        参数:
        - tool_name: 作业步骤中的工具名。
        返回:
        - 工具实例；未注册时抛出 ConfigurationError。
        """
        code = self._lookup.get(tool_name.strip().lower())
        if code is None:
            raise ConfigurationError(f"unknown step tool: {tool_name}")
        return self._tools[code]

    def list_descriptors(self) -> list[dict[str, object]]:
        """返回全部工具描述信息。"""
        return [asdict(tool.descriptor()) for tool in self._tools.values()]
