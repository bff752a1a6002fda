"""步骤状态上报：阶段切换强制上报，工具进度按固定间隔节流。"""

from __future__ import annotations

import logging
import time
from typing import Callable

from stepmanager.domain.enums import StepPhase
from stepmanager.domain.models import JobStep, StatusRecord
from stepmanager.infra.status.sinks import StatusSink

logger = logging.getLogger(__name__)

# 各阶段在整体进度中占据的区间。
PHASE_PROGRESS_RANGES: dict[StepPhase, tuple[float, float]] = {
    StepPhase.INIT: (0.0, 0.0),
    StepPhase.STAGING: (0.0, 5.0),
    StepPhase.EXECUTING: (5.0, 95.0),
    StepPhase.PACKAGING: (95.0, 100.0),
    StepPhase.DELIVERED: (100.0, 100.0),
    StepPhase.ARCHIVING: (100.0, 100.0),
    StepPhase.FAILED: (100.0, 100.0),
}


def clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def compute_incremental_progress(start: float, end: float, sub_progress: float) -> float:
    """把子任务进度 (0-100) 映射到 [start, end] 区间。"""
    return clamp_percent(start + (end - start) * clamp_percent(sub_progress) / 100.0)


class StatusReporter:
    """步骤状态上报器，单个进程内同一时刻只服务一个步骤。"""

    def __init__(
        self,
        sink: StatusSink,
        *,
        manager_name: str,
        interval_seconds: float = 15,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._manager_name = manager_name
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._last_emit: float | None = None
        self._tool_progress: float | None = None

    def begin(self, step: JobStep) -> None:
        """开始新步骤，清空节流状态并上报初始状态。"""
        self._last_emit = None
        self._tool_progress = None
        self._emit(step, 0.0)

    def phase_changed(self, step: JobStep, message: str = "") -> None:
        start, _ = PHASE_PROGRESS_RANGES[step.phase]
        self._tool_progress = None
        self._emit(step, start, message=message)

    def report_tool_progress(self, step: JobStep, tool_progress: float) -> bool:
        """上报工具进度；距上次上报不足间隔时丢弃并返回 False。"""
        self._tool_progress = clamp_percent(tool_progress)
        now = self._clock()
        if self._last_emit is not None and now - self._last_emit < self._interval_seconds:
            return False
        start, end = PHASE_PROGRESS_RANGES[step.phase]
        self._emit(step, compute_incremental_progress(start, end, self._tool_progress))
        return True

    def finish(self, step: JobStep) -> None:
        """上报最终状态；步骤必须已到达 DELIVERED 或 FAILED。"""
        if not step.finished:
            raise RuntimeError(f"step {step.label} has not reached a terminal phase: {step.phase.value}")
        self._emit(step, 100.0, message=step.message)

    def _emit(self, step: JobStep, progress: float, *, message: str = "") -> None:
        record = StatusRecord(
            manager_name=self._manager_name,
            job_id=step.job_id,
            step_number=step.step_number,
            tool_name=step.tool_name,
            phase=step.phase,
            status=step.status,
            progress=clamp_percent(progress),
            message=message,
            tool_progress=self._tool_progress,
        )
        self._last_emit = self._clock()
        try:
            self._sink.emit(record)
        except Exception as exc:
            # 状态上报失败不影响步骤结果。
            logger.warning(
                "status emit failed",
                extra={
                    "event": "status.emit.failed",
                    "phase": step.phase.value,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
