"""作业步骤运行器：按 准备、执行、打包 顺序推进，失败时转入归档。"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from stepmanager.application.archiver import FailureArchiver
from stepmanager.application.executor import ToolExecutor
from stepmanager.application.packager import ResultPackager
from stepmanager.application.stager import ResourceStager
from stepmanager.application.status_reporter import StatusReporter
from stepmanager.domain.enums import CompletionStatus, StepPhase
from stepmanager.domain.errors import StepError
from stepmanager.domain.models import ArchiveRecord, CancellationToken, JobStep, PhaseResult, VersionRecord
from stepmanager.domain.schemas import StepParams
from stepmanager.domain.tools.base import BaseStepTool
from stepmanager.domain.tools.registry import ToolRegistry
from stepmanager.infra.logging.context import bind_log_context
from stepmanager.infra.storage.workspace import WorkingArea, WorkingAreaManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StepOutcome:
    """步骤运行的最终结果。"""
    step: JobStep
    version: VersionRecord | None = None
    archive: ArchiveRecord | None = None
    destination: Path | None = None

    @property
    def status(self) -> CompletionStatus:
        return self.step.status

    @property
    def phase(self) -> StepPhase:
        return self.step.phase

    @property
    def message(self) -> str:
        return self.step.message


class JobStepRunner:
    """单次前向推进的步骤运行器，唯一可以修改步骤阶段与完成状态的对象。"""

    def __init__(
        self,
        *,
        tool_registry: ToolRegistry,
        area_manager: WorkingAreaManager,
        stager: ResourceStager,
        executor: ToolExecutor,
        packager: ResultPackager,
        archiver: FailureArchiver,
        reporter: StatusReporter,
        default_transfer_root: Path | None = None,
        default_debug_level: int = 1,
        cleanup_working_area: bool = True,
    ) -> None:
        self._tool_registry = tool_registry
        self._area_manager = area_manager
        self._stager = stager
        self._executor = executor
        self._packager = packager
        self._archiver = archiver
        self._reporter = reporter
        self._default_transfer_root = default_transfer_root
        self._default_debug_level = default_debug_level
        self._cleanup_working_area = cleanup_working_area

    def run(self, params: StepParams, cancel_token: CancellationToken | None = None) -> StepOutcome:
        """运行一个作业步骤，返回最终结果；不向调用方抛出步骤错误。
        参数:
        - params: 调度方下发的步骤参数。
        - cancel_token: 可选取消令牌，取消视为失败并进入归档。
        """
        token = cancel_token or CancellationToken()
        working_dir = (
            Path(params.working_directory)
            if params.working_directory
            else self._area_manager.working_dir(params.job_id, params.step_number)
        )
        step = JobStep.from_params(
            params,
            working_dir=working_dir,
            default_transfer_root=self._default_transfer_root,
            default_debug_level=self._default_debug_level,
        )
        outcome = StepOutcome(step=step)
        with bind_log_context(
            job_id=str(step.job_id),
            step=str(step.step_number),
            tool=step.tool_name,
            debug_level=step.debug_level,
        ):
            started = time.perf_counter()
            logger.info(
                "step started",
                extra={"event": "step.started", "payload_preview": params.model_dump(exclude={"parameters"})},
            )
            self._reporter.begin(step)
            area: WorkingArea | None = None
            tool: BaseStepTool | None = None
            try:
                tool = self._tool_registry.get(step.tool_name)
                area = self._area_manager.create(step.job_id, step.step_number, working_dir)
                self._run_phases(step, area, tool, token, outcome)
            except StepError as exc:
                step.record_result(PhaseResult.from_error(exc))
            except Exception as exc:
                logger.exception(
                    "unhandled error in step",
                    extra={"event": "step.unhandled", "phase": step.phase.value, "error_type": type(exc).__name__},
                )
                step.record_result(
                    PhaseResult.failure(CompletionStatus.FAILED, f"Unhandled error during {step.phase.value}: {exc}")
                )

            if step.failed:
                area = self._fail(step, area, tool, outcome)
            self._cleanup(step, area)
            self._reporter.finish(step)
            logger.info(
                "step finished",
                extra={
                    "event": "step.finished",
                    "phase": step.phase.value,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "payload_preview": {"status": step.status.value, "message": step.message},
                },
            )
        return outcome

    def _run_phases(
        self,
        step: JobStep,
        area: WorkingArea,
        tool: BaseStepTool,
        token: CancellationToken,
        outcome: StepOutcome,
    ) -> None:
        self._enter(step, StepPhase.STAGING)
        token.raise_if_cancelled()
        step.record_result(self._stager.stage(step, area, tool))
        if step.failed:
            return

        self._enter(step, StepPhase.EXECUTING)
        token.raise_if_cancelled()
        try:
            invocation = tool.build_invocation(step, area)
        except Exception:
            outcome.version = self._executor.record_unavailable_version(step, area)
            raise
        execution = self._executor.execute(
            step,
            area,
            invocation,
            parser=tool.create_console_parser(),
            cancel_token=token,
        )
        outcome.version = execution.version
        step.record_result(execution.result)
        try:
            tool.after_execute(step, area, execution.result.succeeded)
        except Exception as exc:
            logger.warning(
                "tool post-processing failed",
                extra={"event": "execute.after.failed", "error_type": type(exc).__name__, "error": str(exc)},
            )
        if step.failed:
            return

        self._enter(step, StepPhase.PACKAGING)
        token.raise_if_cancelled()
        result = self._packager.package(step, area, tool)
        step.record_result(result)
        if step.failed:
            return
        outcome.destination = Path(result.message)
        self._enter(step, StepPhase.DELIVERED)

    def _enter(self, step: JobStep, phase: StepPhase) -> None:
        step.transition(phase)
        logger.info("step phase changed", extra={"event": "step.phase.changed", "phase": phase.value})
        self._reporter.phase_changed(step)

    def _fail(
        self,
        step: JobStep,
        area: WorkingArea | None,
        tool: BaseStepTool | None,
        outcome: StepOutcome,
    ) -> WorkingArea:
        self._enter(step, StepPhase.ARCHIVING)
        if area is None:
            area = WorkingArea(step.working_dir)
        outcome.archive = self._archiver.archive(step, area, tool)
        self._enter(step, StepPhase.FAILED)
        return area

    def _cleanup(self, step: JobStep, area: WorkingArea | None) -> None:
        if area is None or not self._cleanup_working_area:
            return
        try:
            area.destroy()
        except OSError as exc:
            logger.warning(
                "working area cleanup failed",
                extra={"event": "workarea.destroy.failed", "path": str(area.path), "error": str(exc)},
            )
