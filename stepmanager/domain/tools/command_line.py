"""通用命令行工具：按作业参数运行任意外部程序。"""

from __future__ import annotations

import shlex
import shutil
from pathlib import Path

from stepmanager.domain.errors import ConfigurationError
from stepmanager.domain.models import JobStep, StagedArtifact, ToolInvocation
from stepmanager.domain.tools.base import BaseStepTool, split_list_param
from stepmanager.infra.storage.workspace import WorkingArea

ARCHIVE_SUFFIXES = (".zip", ".gz")


def resolve_program(value: str) -> Path:
    """程序可写绝对路径或 PATH 中的命令名；找不到时原样返回，由执行阶段判定。"""
    candidate = Path(value)
    if candidate.exists():
        return candidate
    found = shutil.which(value)
    return Path(found) if found else candidate


class CommandLineTool(BaseStepTool):
    """通用外部程序工具。"""
    code = "command-line"
    name = "CommandLine"
    aliases = ("program", "external-program")
    version = "1.0.0"
    description = "运行 ProgramPath 指定的外部程序，参数取自 ProgramArgs。"
    required_parameters = ("ProgramPath",)

    def required_inputs(self, step: JobStep) -> list[StagedArtifact]:
        artifacts: list[StagedArtifact] = []
        names = split_list_param(step.get_param("InputFiles"))
        if names:
            source = step.get_param("InputDirectory") or (str(step.dataset_storage_path) if step.dataset_storage_path else "")
            if not source:
                raise ConfigurationError("Parameter InputDirectory not defined and dataset storage path is unknown")
            for name in names:
                artifacts.append(
                    StagedArtifact(
                        name=name,
                        source_dir=Path(source),
                        unzip=name.lower().endswith(ARCHIVE_SUFFIXES),
                        delete_upstream=step.get_bool_param("DeleteInputsAfterTransfer", False),
                    )
                )
        shared = step.get_param("SharedDirectory")
        if shared:
            shared_path = Path(shared)
            artifacts.append(
                StagedArtifact(
                    name=shared_path.name,
                    source_dir=shared_path.parent,
                    is_directory=True,
                    target_subdir=shared_path.name,
                )
            )
        return artifacts

    def build_invocation(self, step: JobStep, area: WorkingArea) -> ToolInvocation:
        program = resolve_program(self.require_param(step, "ProgramPath"))
        return ToolInvocation(
            tool_name=step.tool_name,
            work_dir=area.path,
            program=program,
            arguments=shlex.split(step.get_param("ProgramArgs")),
            expected_outputs=split_list_param(step.get_param("ExpectedOutputs")),
            console_output_file=area.path / f"{step.tool_name}_ConsoleOutput.txt",
            max_runtime_seconds=step.get_int_param("MaxRuntimeSeconds", 0),
            version=step.get_param("ProgramVersion", program.name),
            tool_files=[program],
        )
