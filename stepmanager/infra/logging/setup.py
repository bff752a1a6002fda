"""日志初始化：服务日志写为 JSON 行，经队列异步落盘，DEBUG 按模块、作业或步骤调试级别放行。"""

from __future__ import annotations

import json
import logging
import logging.config
import re
import sys
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue
from typing import Any

from stepmanager.config import Settings
from stepmanager.infra.logging.context import get_debug_level, get_log_context

_listener: QueueListener | None = None

# 作业参数中的调试级别达到该值时放行该步骤的 DEBUG 日志。
STEP_DEBUG_THRESHOLD = 2

CONTEXT_FIELDS = ("job_id", "step", "tool", "task_id")
TEXT_FIELDS = ("event", "phase", "external_service", "op", "path", "error_type")
NUMERIC_FIELDS = ("duration_ms", "status_code", "exit_code", "retry")
QUIET_LOGGERS = ("httpx", "httpcore", "kombu", "celery.redirected", "sqlalchemy.engine")

# 数据库、消息队列连接串与共享目录凭据是步骤日志里最常见的敏感信息。
_CREDENTIAL_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\b([a-z][a-z0-9+.-]*://[^:/@\s]*:)[^@\s]+(@)"), r"\1***\2"),
    (re.compile(r"(?i)\b(password|pwd)\s*=\s*[^;,\s]+"), r"\1=***"),
    (re.compile(r"(?i)(authorization\s*[:=]\s*bearer\s+)[^\s,;]+"), r"\1***"),
    (re.compile(r"(?i)\b(token|secret|api[_-]?key)\s*[:=]\s*[^\s,;]+"), r"\1=***"),
)
_STRICT_PATTERN = re.compile(r"(?i)\b(password|pwd|token|secret|authorization)\b[^,;\s}]*")


def redact_text(value: str | None, mode: str) -> str | None:
    """按脱敏模式处理文本；off 原样返回，strict 额外抹掉敏感键名后的全部内容。"""
    if value is None:
        return None
    text = str(value)
    mode = mode.lower()
    if mode == "off":
        return text
    for pattern, replacement in _CREDENTIAL_PATTERNS:
        text = pattern.sub(replacement, text)
    if mode == "strict":
        text = _STRICT_PATTERN.sub(lambda match: f"{match.group(1)}=***", text)
    return text


def render_payload_preview(payload: Any, *, max_chars: int, redaction_mode: str) -> str | None:
    """把 payload 序列化为预览文本，超过 max_chars 的部分截断。"""
    if payload is None:
        return None
    if isinstance(payload, str):
        serialized = payload
    else:
        serialized = json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
    redacted = redact_text(serialized, redaction_mode) or ""
    if len(redacted) > max_chars:
        return f"{redacted[:max_chars]}...(truncated)"
    return redacted


class DebugRoutingFilter(logging.Filter):
    """默认级别以下只放行 DEBUG，且需命中调试模块、调试作业或步骤调试级别之一。"""

    def __init__(
        self,
        *,
        min_level: int,
        debug_modules: set[str],
        debug_job_ids: set[str],
        step_debug_threshold: int = STEP_DEBUG_THRESHOLD,
    ) -> None:
        super().__init__()
        self._min_level = min_level
        self._debug_prefixes = tuple(f"{item}." for item in debug_modules)
        self._debug_modules = debug_modules
        self._debug_job_ids = debug_job_ids
        self._step_debug_threshold = step_debug_threshold

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self._min_level:
            return True
        if record.levelno != logging.DEBUG:
            return False
        if record.name in self._debug_modules or record.name.startswith(self._debug_prefixes):
            return True
        job_id = getattr(record, "job_id", None) or get_log_context()["job_id"]
        if job_id is not None and job_id in self._debug_job_ids:
            return True
        return get_debug_level() >= self._step_debug_threshold


class ContextInjectionFilter(logging.Filter):
    """入队前把当前线程的步骤上下文写入 record，监听线程里就不再依赖 contextvars。"""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if value is not None and getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class StructuredJsonFormatter(logging.Formatter):
    """步骤管理器 JSON 行格式；每行带管理器名与 job/step/tool 标识。"""

    def __init__(
        self,
        *,
        service: str,
        manager_name: str,
        process_role: str,
        redaction_mode: str,
        payload_preview_chars: int,
    ) -> None:
        super().__init__()
        self._static_fields = {"service": service, "manager": manager_name, "process_role": process_role}
        self._redaction_mode = redaction_mode
        self._payload_preview_chars = payload_preview_chars

    @staticmethod
    def _as_number(value: Any) -> int | float | None:
        if value is None or isinstance(value, (int, float)):
            return value
        text = str(value).strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return None

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            **self._static_fields,
            "module": record.name,
        }
        for key in CONTEXT_FIELDS:
            entry[key] = getattr(record, key, None) or ctx.get(key)
        for key in TEXT_FIELDS:
            entry[key] = getattr(record, key, None)
        for key in NUMERIC_FIELDS:
            entry[key] = self._as_number(getattr(record, key, None))

        error_text = getattr(record, "error", None)
        if error_text is None and record.exc_info:
            error_text = self.formatException(record.exc_info)
        entry["message"] = redact_text(record.getMessage(), self._redaction_mode)
        entry["error"] = redact_text(str(error_text), self._redaction_mode) if error_text is not None else None
        entry["payload_preview"] = render_payload_preview(
            getattr(record, "payload_preview", None),
            max_chars=self._payload_preview_chars,
            redaction_mode=self._redaction_mode,
        )
        return json.dumps(entry, ensure_ascii=False)


def _parse_level(level_text: str) -> int:
    level = logging.getLevelName(str(level_text).upper())
    return level if isinstance(level, int) else logging.INFO


def log_file_for(settings: Settings, process_role: str) -> Path:
    """返回进程角色对应的日志文件：<log_dir>/<role>/<manager_name>.jsonl。"""
    log_root = settings.log_dir if settings.log_dir.is_absolute() else (Path.cwd() / settings.log_dir).resolve()
    safe_manager = re.sub(r"[^A-Za-z0-9_.-]+", "_", settings.manager_name) or "stepmanager"
    return log_root / process_role / f"{safe_manager}.jsonl"


def configure_logging(settings: Settings, *, process_role: str) -> Path:
    """初始化全局日志：根 logger 只挂队列处理器，监听线程负责写 JSONL 文件与 stderr。"""
    global _listener
    shutdown_logging()

    log_file = log_file_for(settings, process_role)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    records: SimpleQueue[logging.LogRecord] = SimpleQueue()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "context": {"()": ContextInjectionFilter},
                "debug_routing": {
                    "()": DebugRoutingFilter,
                    "min_level": _parse_level(settings.log_level),
                    "debug_modules": set(settings.log_debug_modules_list()),
                    "debug_job_ids": set(settings.log_debug_job_ids_list()),
                },
            },
            "handlers": {
                "queue": {
                    "class": "logging.handlers.QueueHandler",
                    "queue": records,
                    "filters": ["context", "debug_routing"],
                }
            },
            "root": {"level": "DEBUG", "handlers": ["queue"]},
            "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
        }
    )
    if not any(isinstance(item, QueueHandler) for item in logging.getLogger().handlers):
        raise RuntimeError("queue logging handler is not configured")

    formatter = StructuredJsonFormatter(
        service="analysis-step-manager",
        manager_name=settings.manager_name,
        process_role=process_role,
        redaction_mode=settings.log_redaction_mode,
        payload_preview_chars=settings.log_payload_preview_chars,
    )
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    stderr_handler = logging.StreamHandler(stream=sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    _listener = QueueListener(records, file_handler, stderr_handler, respect_handler_level=True)
    _listener.start()
    return log_file


def shutdown_logging() -> None:
    """停止队列监听器，刷新并关闭文件句柄。"""
    global _listener
    listener, _listener = _listener, None
    if listener is None:
        return
    listener.stop()
    for handler in listener.handlers:
        handler.close()
