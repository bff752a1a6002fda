"""步骤错误分类：每类错误在阶段边界映射为唯一的完成状态。"""

from __future__ import annotations

from stepmanager.domain.enums import CompletionStatus


class StepError(Exception):
    """步骤内部错误基类，携带对应的完成状态。"""
    status: CompletionStatus = CompletionStatus.FAILED

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(StepError):
    """必需参数缺失或取值非法。"""
    status = CompletionStatus.NO_PARAM_FILE


class ResourceNotFoundError(StepError):
    """必需的输入文件、目录或工具程序不存在。"""
    status = CompletionStatus.FILE_NOT_FOUND


class ToolExecutionError(StepError):
    """外部工具返回非零退出码、抛出异常或未产出预期文件。"""
    status = CompletionStatus.TOOL_EXECUTION_ERROR


class PackagingError(StepError):
    """结果整理或转移失败。"""
    status = CompletionStatus.FAILED


class ToolCancelledError(StepError):
    """调用方取消了正在运行的工具。"""
    status = CompletionStatus.FAILED


class ArchivalWarning(UserWarning):
    """失败归档过程中的非致命问题，只记录日志。"""
