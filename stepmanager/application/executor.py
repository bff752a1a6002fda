"""工具执行阶段：记录版本、运行工具、汇总进度并映射完成状态。"""

from __future__ import annotations

import gc
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass
from queue import Empty, SimpleQueue

from stepmanager.application.status_reporter import StatusReporter
from stepmanager.application.version import VersionRecorder
from stepmanager.domain.enums import CompletionStatus
from stepmanager.domain.errors import ResourceNotFoundError, StepError, ToolExecutionError
from stepmanager.domain.models import (
    CancellationToken,
    JobStep,
    PhaseResult,
    ToolInvocation,
    ToolRunContext,
    VersionRecord,
)
from stepmanager.infra.logging.context import ToolLogContext
from stepmanager.infra.process.console import ConsoleOutputParser
from stepmanager.infra.process.runner import ProgramRunner
from stepmanager.infra.storage.workspace import WorkingArea

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExecutionResult:
    result: PhaseResult
    version: VersionRecord
    exit_code: int | None = None

    @property
    def status(self) -> CompletionStatus:
        return self.result.status


class ToolExecutor:
    def __init__(
        self,
        *,
        version_recorder: VersionRecorder,
        reporter: StatusReporter,
        program_runner: ProgramRunner,
        log_context: ToolLogContext,
        monitor_interval_seconds: float = 0.5,
        release_grace_seconds: float = 1.0,
    ) -> None:
        self._version_recorder = version_recorder
        self._reporter = reporter
        self._program_runner = program_runner
        self._log_context = log_context
        self._monitor_interval_seconds = max(0.01, monitor_interval_seconds)
        self._release_grace_seconds = release_grace_seconds

    def execute(
        self,
        step: JobStep,
        area: WorkingArea,
        invocation: ToolInvocation,
        *,
        parser: ConsoleOutputParser | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionResult:
        version = self._version_recorder.build(invocation)
        self._version_recorder.record(step, area, version)

        token = cancel_token or CancellationToken()
        parser = parser or ConsoleOutputParser(invocation.tool_name)
        if invocation.progress_channel is None:
            invocation.progress_channel = SimpleQueue()
        exit_code: int | None = None
        started = time.perf_counter()
        try:
            redirect = (
                self._log_context.redirect(invocation.log_file, scope=step.label)
                if invocation.log_file is not None
                else nullcontext(self._log_context.logger_for(step.label))
            )
            with redirect as tool_logger:
                if invocation.in_process:
                    self._run_in_process(step, invocation, tool_logger, token)
                else:
                    exit_code = self._run_program(step, invocation, parser, token)
            self._check_expected_outputs(invocation)
            result = PhaseResult.success()
        except StepError as exc:
            result = PhaseResult.from_error(exc)
        except Exception as exc:
            result = PhaseResult.failure(
                CompletionStatus.TOOL_EXECUTION_ERROR,
                f"Error running {invocation.tool_name}: {exc}",
            )
        finally:
            self._release_resources()

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        if result.succeeded:
            logger.info(
                "tool execution succeeded",
                extra={"event": "execute.succeeded", "exit_code": exit_code, "duration_ms": duration_ms},
            )
        else:
            logger.warning(
                "tool execution failed",
                extra={
                    "event": "execute.failed",
                    "exit_code": exit_code,
                    "duration_ms": duration_ms,
                    "error_type": result.status.value,
                    "error": result.message,
                },
            )
        return ExecutionResult(result=result, version=version, exit_code=exit_code)

    def record_unavailable_version(self, step: JobStep, area: WorkingArea) -> VersionRecord:
        """工具调用无法组装时记录一条 unknown 版本，保证每次尝试都留下版本信息。"""
        version = self._version_recorder.unavailable(step.tool_name)
        self._version_recorder.record(step, area, version)
        return version

    def _run_program(
        self,
        step: JobStep,
        invocation: ToolInvocation,
        parser: ConsoleOutputParser,
        token: CancellationToken,
    ) -> int | None:
        if invocation.program is None:
            raise ToolExecutionError(f"No program defined for {invocation.tool_name}")
        if not invocation.program.is_file():
            raise ResourceNotFoundError(f"Tool program not found: {invocation.program}")

        lines: SimpleQueue[str] = SimpleQueue()

        def _drain() -> None:
            while True:
                try:
                    line = lines.get_nowait()
                except Empty:
                    break
                progress = parser.feed(line)
                if progress is not None:
                    invocation.progress_channel.put(progress)
            self._forward_progress(step, invocation)

        try:
            program_result = self._program_runner.run(
                invocation.program,
                invocation.arguments,
                work_dir=invocation.work_dir,
                console_output_path=invocation.console_output_file,
                on_output_line=lines.put,
                loop_waiting=_drain,
                cancel_token=token,
                max_runtime_seconds=invocation.max_runtime_seconds,
            )
        except OSError as exc:
            raise ToolExecutionError(f"Unable to start {invocation.tool_name}: {exc}") from exc

        if program_result.aborted:
            token.raise_if_cancelled()
        if program_result.timed_out:
            raise ToolExecutionError(
                f"{invocation.tool_name} exceeded the maximum runtime of {invocation.max_runtime_seconds} seconds"
            )
        if not program_result.succeeded:
            detail = parser.error_message or f"{invocation.tool_name} returned exit code {program_result.exit_code}"
            raise ToolExecutionError(detail)
        if parser.has_error:
            raise ToolExecutionError(parser.error_message)
        return program_result.exit_code

    def _run_in_process(
        self,
        step: JobStep,
        invocation: ToolInvocation,
        tool_logger: logging.Logger,
        token: CancellationToken,
    ) -> None:
        if invocation.entry_point is None:
            raise ToolExecutionError(f"No entry point defined for {invocation.tool_name}")
        context = ToolRunContext(
            step=step,
            work_dir=invocation.work_dir,
            logger=tool_logger,
            cancel_token=token,
            progress_channel=invocation.progress_channel,
        )
        started = time.monotonic()
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"tool-{step.label}") as pool:
            future = pool.submit(invocation.entry_point, context)
            while not future.done():
                self._forward_progress(step, invocation)
                if invocation.max_runtime_seconds > 0 and time.monotonic() - started > invocation.max_runtime_seconds:
                    # 线程无法强制终止，发出取消后等待入口自行退出。
                    token.cancel(f"exceeded {invocation.max_runtime_seconds} seconds")
                time.sleep(self._monitor_interval_seconds)
            self._forward_progress(step, invocation)
            outcome = future.result()
        token.raise_if_cancelled()
        if outcome is False:
            raise ToolExecutionError(f"{invocation.tool_name} reported failure")

    def _forward_progress(self, step: JobStep, invocation: ToolInvocation) -> None:
        latest: float | None = None
        while True:
            try:
                latest = invocation.progress_channel.get_nowait()
            except Empty:
                break
        if latest is not None:
            self._reporter.report_tool_progress(step, latest)

    @staticmethod
    def _check_expected_outputs(invocation: ToolInvocation) -> None:
        missing = [name for name in invocation.expected_outputs if not (invocation.work_dir / name).exists()]
        if missing:
            raise ToolExecutionError(f"{invocation.tool_name} did not create expected output: {', '.join(missing)}")

    def _release_resources(self) -> None:
        # 等待工具释放文件句柄后再整理结果。
        gc.collect()
        if self._release_grace_seconds > 0:
            time.sleep(self._release_grace_seconds)
