"""领域枚举定义：统一完成状态与步骤阶段取值。"""

from __future__ import annotations

from enum import Enum


class CompletionStatus(str, Enum):
    """步骤完成状态枚举，贯穿全部阶段。"""
    SUCCESS = "success"
    FAILED = "failed"
    NO_PARAM_FILE = "no_param_file"
    FILE_NOT_FOUND = "file_not_found"
    TOOL_EXECUTION_ERROR = "tool_execution_error"


class StepPhase(str, Enum):
    """步骤生命周期阶段枚举。"""
    INIT = "init"
    STAGING = "staging"
    EXECUTING = "executing"
    PACKAGING = "packaging"
    DELIVERED = "delivered"
    ARCHIVING = "archiving"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({StepPhase.DELIVERED, StepPhase.FAILED})

# 合法的阶段流转；失败可从任一工作阶段进入归档。
ALLOWED_TRANSITIONS: dict[StepPhase, frozenset[StepPhase]] = {
    StepPhase.INIT: frozenset({StepPhase.STAGING, StepPhase.ARCHIVING}),
    StepPhase.STAGING: frozenset({StepPhase.EXECUTING, StepPhase.ARCHIVING}),
    StepPhase.EXECUTING: frozenset({StepPhase.PACKAGING, StepPhase.ARCHIVING}),
    StepPhase.PACKAGING: frozenset({StepPhase.DELIVERED, StepPhase.ARCHIVING}),
    StepPhase.ARCHIVING: frozenset({StepPhase.FAILED}),
    StepPhase.DELIVERED: frozenset(),
    StepPhase.FAILED: frozenset(),
}
