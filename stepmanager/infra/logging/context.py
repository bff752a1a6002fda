"""日志上下文：基于 contextvars 透传 job/step/tool/task 标识，并提供工具日志定向。"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar, Token
from pathlib import Path
from typing import Any, Iterator

_UNSET = object()

_job_id_var: ContextVar[str | None] = ContextVar("log_job_id", default=None)
_step_var: ContextVar[str | None] = ContextVar("log_step", default=None)
_tool_var: ContextVar[str | None] = ContextVar("log_tool", default=None)
_task_id_var: ContextVar[str | None] = ContextVar("log_task_id", default=None)
_tool_log_file_var: ContextVar[str | None] = ContextVar("log_tool_log_file", default=None)
_debug_level_var: ContextVar[int] = ContextVar("log_debug_level", default=0)

TOOL_LOGGER_NAME = "stepmanager.tool"
TOOL_LOG_FORMAT = "%(asctime)s, %(levelname)s, %(message)s"


def get_log_context() -> dict[str, str | None]:
    """返回当前线程下的日志上下文字段。"""
    return {
        "job_id": _job_id_var.get(),
        "step": _step_var.get(),
        "tool": _tool_var.get(),
        "task_id": _task_id_var.get(),
    }


def get_debug_level() -> int:
    return _debug_level_var.get()


def get_tool_log_file() -> str | None:
    """返回当前生效的工具日志文件路径；未定向时为 None。"""
    return _tool_log_file_var.get()


@contextmanager
def bind_log_context(
    *,
    job_id: str | None | object = _UNSET,
    step: str | None | object = _UNSET,
    tool: str | None | object = _UNSET,
    task_id: str | None | object = _UNSET,
    debug_level: int | object = _UNSET,
) -> Iterator[None]:
    """在上下文范围内绑定日志字段，并在退出时自动恢复。"""
    tokens: list[tuple[ContextVar[Any], Token[Any]]] = []
    if debug_level is not _UNSET:
        tokens.append((_debug_level_var, _debug_level_var.set(debug_level)))
    if job_id is not _UNSET:
        tokens.append((_job_id_var, _job_id_var.set(job_id)))
    if step is not _UNSET:
        tokens.append((_step_var, _step_var.set(step)))
    if tool is not _UNSET:
        tokens.append((_tool_var, _tool_var.set(tool)))
    if task_id is not _UNSET:
        tokens.append((_task_id_var, _task_id_var.set(task_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class ToolLogContext:
    """工具日志上下文：把单次调用的工具日志写入专属文件，退出时还原。"""

    def __init__(self, base_logger_name: str = TOOL_LOGGER_NAME) -> None:
        self._base_logger_name = base_logger_name

    def logger_for(self, scope: str) -> logging.Logger:
        return logging.getLogger(f"{self._base_logger_name}.{scope}")

    @contextmanager
    def redirect(self, log_file: Path, *, scope: str) -> Iterator[logging.Logger]:
        """在上下文范围内把 scope 对应的工具 logger 定向到 log_file。
        参数:
        - log_file: 工具日志文件，追加写入。
        - scope: 调用范围标识，通常为 job_step，不同调用互不干扰。
        返回:
        - 已定向的 logger；无论正常退出还是抛出异常，处理器都会被移除。
        """
        tool_logger = self.logger_for(scope)
        previous_level = tool_logger.level
        previous_propagate = tool_logger.propagate
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        handler.setFormatter(logging.Formatter(TOOL_LOG_FORMAT))
        handler.setLevel(logging.DEBUG)
        tool_logger.addHandler(handler)
        tool_logger.setLevel(logging.DEBUG)
        # 工具日志只落专属文件，不混入服务 JSON 日志。
        tool_logger.propagate = False
        token = _tool_log_file_var.set(str(log_file))
        try:
            yield tool_logger
        finally:
            _tool_log_file_var.reset(token)
            tool_logger.removeHandler(handler)
            handler.close()
            tool_logger.setLevel(previous_level)
            tool_logger.propagate = previous_propagate
