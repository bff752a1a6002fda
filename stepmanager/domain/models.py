"""领域数据结构定义：作业步骤、工具调用与各阶段结果等核心值对象。"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from queue import SimpleQueue
from typing import Any, Callable

from stepmanager.domain.enums import ALLOWED_TRANSITIONS, TERMINAL_PHASES, CompletionStatus, StepPhase
from stepmanager.domain.errors import StepError, ToolCancelledError
from stepmanager.domain.schemas import StepParams

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class PhaseResult:
    """单个阶段的执行结果，阶段内部错误在边界处转换为该对象。"""
    status: CompletionStatus
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == CompletionStatus.SUCCESS

    @classmethod
    def success(cls, message: str = "") -> PhaseResult:
        return cls(CompletionStatus.SUCCESS, message)

    @classmethod
    def failure(cls, status: CompletionStatus, message: str) -> PhaseResult:
        if status == CompletionStatus.SUCCESS:
            raise ValueError("failure result requires a non-success status")
        return cls(status, message)

    @classmethod
    def from_error(cls, exc: StepError) -> PhaseResult:
        return cls.failure(exc.status, exc.message)


class CancellationToken:
    """协作式取消令牌，由调用循环轮询。"""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """请求取消；重复调用只保留第一次的原因。"""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ToolCancelledError(f"Step cancelled: {self._reason}")


@dataclass(slots=True)
class JobStep:
    """运行中的作业步骤，只由步骤运行器修改阶段与状态。"""
    job_id: int
    step_number: int
    tool_name: str
    working_dir: Path
    dataset_name: str = ""
    dataset_directory_name: str | None = None
    dataset_storage_path: Path | None = None
    transfer_root: Path | None = None
    output_directory_name: str | None = None
    data_package_id: int = 0
    debug_level: int = 1
    parameters: dict[str, Any] = field(default_factory=dict)
    phase: StepPhase = StepPhase.INIT
    status: CompletionStatus = CompletionStatus.SUCCESS
    message: str = ""

    @classmethod
    def from_params(
        cls,
        params: StepParams,
        *,
        working_dir: Path,
        default_transfer_root: Path | None = None,
        default_debug_level: int = 1,
    ) -> JobStep:
        """由输入契约构建步骤对象。"""
        transfer_root = Path(params.transfer_directory_path) if params.transfer_directory_path else default_transfer_root
        return cls(
            job_id=params.job_id,
            step_number=params.step_number,
            tool_name=params.tool_name,
            working_dir=working_dir,
            dataset_name=params.dataset_name,
            dataset_directory_name=params.dataset_directory_name,
            dataset_storage_path=Path(params.dataset_storage_path) if params.dataset_storage_path else None,
            transfer_root=transfer_root,
            output_directory_name=params.output_directory_name,
            data_package_id=params.data_package_id,
            debug_level=params.debug_level if params.debug_level is not None else default_debug_level,
            parameters=dict(params.parameters),
        )

    @property
    def label(self) -> str:
        return f"{self.job_id}_{self.step_number}"

    @property
    def failed(self) -> bool:
        return self.status != CompletionStatus.SUCCESS

    @property
    def finished(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def get_param(self, name: str, default: str = "") -> str:
        """读取文本参数；未定义或为空时返回默认值。"""
        value = self.parameters.get(name)
        if value is None:
            return default
        text = str(value).strip()
        return text or default

    def get_bool_param(self, name: str, default: bool) -> bool:
        text = self.get_param(name).lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        return default

    def get_int_param(self, name: str, default: int) -> int:
        text = self.get_param(name)
        try:
            return int(text)
        except ValueError:
            return default

    def transition(self, phase: StepPhase) -> None:
        """推进阶段；非法流转属于编程错误，直接抛出。"""
        if phase not in ALLOWED_TRANSITIONS[self.phase]:
            raise RuntimeError(f"illegal phase transition {self.phase.value} -> {phase.value}")
        self.phase = phase

    def record_result(self, result: PhaseResult) -> None:
        """记录阶段结果；失败一旦产生就不会被后续结果覆盖为成功。"""
        if result.succeeded:
            if not self.failed and result.message:
                self.message = result.message
            return
        if self.failed:
            return
        self.status = result.status
        self.message = result.message


@dataclass(slots=True)
class StagedArtifact:
    """需要放入工作区的单个输入项。"""
    name: str
    source_dir: Path
    required: bool = True
    is_directory: bool = False
    unzip: bool = False
    target_subdir: str = ""
    skip_in_results: bool = True
    delete_upstream: bool = False

    @property
    def source_path(self) -> Path:
        return self.source_dir / self.name


@dataclass(slots=True)
class ToolRunContext:
    """进程内工具入口可见的运行上下文。"""
    step: JobStep
    work_dir: Path
    logger: logging.Logger
    cancel_token: CancellationToken
    progress_channel: SimpleQueue[float]

    def report_progress(self, percent: float) -> None:
        self.progress_channel.put(float(percent))

    def raise_if_cancelled(self) -> None:
        self.cancel_token.raise_if_cancelled()


ToolEntryPoint = Callable[[ToolRunContext], "bool | None"]


@dataclass(slots=True)
class ToolInvocation:
    """单次工具调用描述，每次运行新建，不落库。"""
    tool_name: str
    work_dir: Path
    program: Path | None = None
    arguments: list[str] = field(default_factory=list)
    entry_point: ToolEntryPoint | None = None
    expected_outputs: list[str] = field(default_factory=list)
    console_output_file: Path | None = None
    log_file: Path | None = None
    max_runtime_seconds: int = 0
    version: str = ""
    tool_files: list[Path] = field(default_factory=list)
    progress_channel: SimpleQueue[float] | None = None

    @property
    def in_process(self) -> bool:
        return self.entry_point is not None

    def command_line(self) -> str:
        parts = [str(self.program or self.tool_name), *self.arguments]
        return " ".join(f'"{item}"' if " " in item else item for item in parts)


@dataclass(frozen=True, slots=True)
class VersionRecord:
    """工具版本记录，每次调用尝试写入一次。"""
    tool_name: str
    version: str
    binaries: tuple[str, ...] = ()
    recorded_at: datetime = field(default_factory=utcnow)

    def entries(self) -> list[str]:
        return [item for item in (self.version, *self.binaries) if item]


@dataclass(frozen=True, slots=True)
class ArchiveRecord:
    """失败归档记录，仅在失败路径上创建。"""
    archive_path: Path
    source_path: Path
    from_results_directory: bool
    files: tuple[str, ...]
    info_file: Path | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class StatusRecord:
    """对外发送的步骤状态记录。"""
    manager_name: str
    job_id: int
    step_number: int
    tool_name: str
    phase: StepPhase
    status: CompletionStatus
    progress: float
    message: str = ""
    tool_progress: float | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "manager_name": self.manager_name,
            "job_id": self.job_id,
            "step_number": self.step_number,
            "tool_name": self.tool_name,
            "phase": self.phase.value,
            "status": self.status.value,
            "progress": round(self.progress, 2),
            "tool_progress": None if self.tool_progress is None else round(self.tool_progress, 2),
            "message": self.message,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
        }


@dataclass(slots=True)
class ToolDescriptor:
    """工具元信息描述对象。"""
    code: str
    name: str
    aliases: tuple[str, ...]
    version: str
    description: str
    required_parameters: tuple[str, ...]
