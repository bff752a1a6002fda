"""UIMF 转 MassHunter 工具：把 .uimf 数据集转换为 Agilent .d 目录。"""

from __future__ import annotations

from stepmanager.domain.errors import ConfigurationError
from stepmanager.domain.models import JobStep, StagedArtifact, ToolInvocation
from stepmanager.domain.tools.base import BaseStepTool
from stepmanager.domain.tools.command_line import resolve_program
from stepmanager.infra.storage.workspace import WorkingArea

UIMF_EXTENSION = ".uimf"
AGILENT_EXTENSION = ".d"


class UimfToMassHunterTool(BaseStepTool):
    """UIMFtoMassHunter 转换器。"""
    code = "uimf-to-masshunter"
    name = "UIMFtoMassHunter"
    aliases = ("uimftomasshunter",)
    version = "1.0.0"
    description = "调用 UIMFtoMassHunter 转换器，结果为 <dataset>.d 目录。"
    required_parameters = ("UIMFtoMassHunterProgLoc",)
    include_subdirectories = True
    result_extensions_to_skip = (UIMF_EXTENSION,)

    def required_inputs(self, step: JobStep) -> list[StagedArtifact]:
        if not step.dataset_name:
            raise ConfigurationError("Dataset name not defined")
        if step.dataset_storage_path is None:
            raise ConfigurationError("Dataset storage path not defined")
        return [StagedArtifact(name=f"{step.dataset_name}{UIMF_EXTENSION}", source_dir=step.dataset_storage_path)]

    def build_invocation(self, step: JobStep, area: WorkingArea) -> ToolInvocation:
        program = resolve_program(self.require_param(step, "UIMFtoMassHunterProgLoc"))
        input_file = area.path / f"{step.dataset_name}{UIMF_EXTENSION}"
        output_dir = f"{step.dataset_name}{AGILENT_EXTENSION}"
        arguments = [str(input_file), f"/O:{area.path / output_dir}"]
        return ToolInvocation(
            tool_name=step.tool_name,
            work_dir=area.path,
            program=program,
            arguments=arguments,
            expected_outputs=[output_dir],
            console_output_file=area.path / "UIMFtoMassHunter_ConsoleOutput.txt",
            max_runtime_seconds=step.get_int_param("MaxRuntimeSeconds", 0),
            version=step.get_param("UIMFtoMassHunterVersion", program.stem),
            tool_files=[program, program.parent / "UIMFLibrary.dll"],
        )

    def after_execute(self, step: JobStep, area: WorkingArea, succeeded: bool) -> None:
        # 输入数据集体积大，成功后不再保留在工作区。
        if succeeded:
            (area.path / f"{step.dataset_name}{UIMF_EXTENSION}").unlink(missing_ok=True)
