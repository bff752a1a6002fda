"""Cyclops 工具：在进程内调用统计工作流入口，图表输出到 Plots 目录。"""

from __future__ import annotations

import importlib
import importlib.util
import sys
from pathlib import Path
from typing import Any, Callable

from stepmanager.domain.errors import ConfigurationError, ToolExecutionError
from stepmanager.domain.models import JobStep, StagedArtifact, ToolInvocation, ToolRunContext
from stepmanager.domain.tools.base import BaseStepTool
from stepmanager.infra.storage.workspace import WorkingArea

CYCLOPS_LOG_FILE = "Cyclops_Log.txt"
CYCLOPS_INIT_MESSAGE = "Initializing the Cyclops Controller"
DEFAULT_ENTRY_POINT = "cyclops:run_workflow"
R_SCRIPTS_SUBDIR = "R_Scripts"


def load_entry_point(reference: str) -> Callable[..., Any]:
    """按 module:function 形式加载入口函数。"""
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Invalid entry point '{reference}', expected module:function")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ToolExecutionError(f"Cyclops entry point module not available: {module_name} ({exc})") from exc
    target = getattr(module, attr, None)
    if not callable(target):
        raise ToolExecutionError(f"Cyclops entry point not found: {reference}")
    return target


def entry_module_file(reference: str) -> str | None:
    """返回入口模块的源文件路径，不导入模块本身；找不到时返回 None。"""
    module_name = reference.partition(":")[0]
    if not module_name:
        return None
    module = sys.modules.get(module_name)
    if module is not None:
        return getattr(module, "__file__", None)
    try:
        found = importlib.util.find_spec(module_name)
    except (ImportError, ValueError):
        return None
    return found.origin if found is not None and found.has_location else None


class CyclopsTool(BaseStepTool):
    """Cyclops 统计工作流工具。"""
    code = "cyclops"
    name = "Cyclops"
    version = "1.0.0"
    description = "在进程内运行 Cyclops 工作流，日志写入 Cyclops_Log.txt。"
    required_parameters = ("CyclopsWorkflowName", "CyclopsWorkflowDirectory")
    auxiliary_directories = ("Plots",)

    def required_inputs(self, step: JobStep) -> list[StagedArtifact]:
        artifacts = [
            StagedArtifact(
                name=self.require_param(step, "CyclopsWorkflowName"),
                source_dir=Path(self.require_param(step, "CyclopsWorkflowDirectory")),
            )
        ]
        scripts_dir = step.get_param("CyclopsRScriptsDirectory")
        if scripts_dir:
            scripts_path = Path(scripts_dir)
            artifacts.append(
                StagedArtifact(
                    name=scripts_path.name,
                    source_dir=scripts_path.parent,
                    is_directory=True,
                    target_subdir=R_SCRIPTS_SUBDIR,
                )
            )
        return artifacts

    def build_invocation(self, step: JobStep, area: WorkingArea) -> ToolInvocation:
        entry_spec = step.get_param("CyclopsEntryPoint", DEFAULT_ENTRY_POINT)
        workflow_file = area.path / self.require_param(step, "CyclopsWorkflowName")
        parameters = {
            "workDir": str(area.path),
            "workflow": str(workflow_file),
            "plotsDir": str(area.path / "Plots"),
            "rScriptsDir": str(area.path / R_SCRIPTS_SUBDIR),
            "dataset": step.dataset_name,
            "job": str(step.job_id),
        }

        def _run(context: ToolRunContext) -> bool | None:
            context.logger.info(CYCLOPS_INIT_MESSAGE)
            if step.debug_level >= 2:
                for key, value in parameters.items():
                    context.logger.debug("Parameter %s: %s", key, value)
            (area.path / "Plots").mkdir(exist_ok=True)
            # 入口在执行阶段内加载。
            target = load_entry_point(entry_spec)
            return target(context, dict(parameters))

        module_file = entry_module_file(entry_spec)
        return ToolInvocation(
            tool_name=step.tool_name,
            work_dir=area.path,
            entry_point=_run,
            expected_outputs=[],
            log_file=area.path / CYCLOPS_LOG_FILE,
            max_runtime_seconds=step.get_int_param("MaxRuntimeSeconds", 0),
            version=f"Cyclops entry point {entry_spec}",
            tool_files=[Path(module_file)] if module_file else [],
        )

    def after_execute(self, step: JobStep, area: WorkingArea, succeeded: bool) -> None:
        log_path = area.path / CYCLOPS_LOG_FILE
        if not log_path.exists():
            return
        lines = [line for line in log_path.read_text(encoding="utf-8", errors="replace").splitlines() if line.strip()]
        # 只有初始化行的日志没有排查价值。
        if len(lines) <= 1 and all(CYCLOPS_INIT_MESSAGE in line for line in lines):
            log_path.unlink()
