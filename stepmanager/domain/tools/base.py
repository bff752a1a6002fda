"""工具能力抽象基类，约束输入清单、调用构建与打包提示接口。"""

from __future__ import annotations

from abc import ABC, abstractmethod

from stepmanager.domain.errors import ConfigurationError
from stepmanager.domain.models import JobStep, StagedArtifact, ToolDescriptor, ToolInvocation
from stepmanager.infra.process.console import ConsoleOutputParser
from stepmanager.infra.storage.workspace import WorkingArea


class BaseStepTool(ABC):
    """步骤工具抽象基类，不同工具只在输入、调用与打包提示上不同。"""
    code: str
    name: str
    aliases: tuple[str, ...] = ()
    version: str = "0.1.0"
    description: str = ""
    required_parameters: tuple[str, ...] = ()
    auxiliary_directories: tuple[str, ...] = ()
    include_subdirectories: bool = False
    result_files_to_skip: tuple[str, ...] = ()
    result_extensions_to_skip: tuple[str, ...] = ()

    @abstractmethod
    def required_inputs(self, step: JobStep) -> list[StagedArtifact]:
        """返回需要放入工作区的输入项。"""

    @abstractmethod
    def build_invocation(self, step: JobStep, area: WorkingArea) -> ToolInvocation:
        """构建本次工具调用描述。"""

    def create_console_parser(self) -> ConsoleOutputParser:
        return ConsoleOutputParser(self.name)

    def prepare_packaging(self, step: JobStep, area: WorkingArea) -> None:
        """登记打包过滤规则；子类可追加。"""
        for name in self.result_files_to_skip:
            area.skip_file(name)
        for extension in self.result_extensions_to_skip:
            area.skip_extension(extension)

    def after_execute(self, step: JobStep, area: WorkingArea, succeeded: bool) -> None:
        """工具运行后的收尾；默认无需处理。"""
        return None

    def missing_parameters(self, step: JobStep) -> list[str]:
        return [name for name in self.required_parameters if not step.get_param(name)]

    def require_param(self, step: JobStep, name: str) -> str:
        value = step.get_param(name)
        if not value:
            raise ConfigurationError(f"Parameter {name} not defined for tool {self.name}")
        return value

    def descriptor(self) -> ToolDescriptor:
        """返回工具描述对象。"""
        return ToolDescriptor(
            code=self.code,
            name=self.name,
            aliases=self.aliases,
            version=self.version,
            description=self.description,
            required_parameters=self.required_parameters,
        )


def split_list_param(value: str) -> list[str]:
    """把逗号或分号分隔的参数拆成列表。"""
    return [item.strip() for item in value.replace(";", ",").split(",") if item.strip()]
