"""控制台解析与日志测试：覆盖进度提取、错误捕获、日志上下文与工具日志定向。"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from stepmanager.infra.logging.context import (
    ToolLogContext,
    bind_log_context,
    get_debug_level,
    get_log_context,
    get_tool_log_file,
)
from stepmanager.infra.logging.setup import (
    DebugRoutingFilter,
    StructuredJsonFormatter,
    redact_text,
    render_payload_preview,
)
from stepmanager.infra.process.console import ConsoleOutputParser


def _record(level: int = logging.INFO, name: str = "stepmanager.application.runner", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(name, level, __file__, 1, "step phase changed", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_console_parser_tracks_latest_progress() -> None:
    parser = ConsoleOutputParser("Demo")

    assert parser.feed("Reading spectra 12.5%") == 12.5
    assert parser.feed("no numbers here") is None
    assert parser.feed("Scored 30% of 250% budget") is None
    assert parser.feed("Overall 40 %") == 40.0
    assert parser.progress == 40.0
    assert parser.has_error is False
    assert parser.error_message == ""


def test_console_parser_collects_error_block(tmp_path: Path) -> None:
    console = tmp_path / "Demo_ConsoleOutput.txt"
    console.write_text(
        "demo.exe input.raw\n\nStep 1 20%\nError: could not open input.raw\n\n=====\nAccess denied\n",
        encoding="utf-8",
    )
    parser = ConsoleOutputParser("Demo")

    parser.parse_file(console)

    assert parser.progress == 20.0
    assert parser.error_message == "Error running Demo: Error: could not open input.raw; Access denied"


def test_console_parser_ignores_error_inside_line() -> None:
    parser = ConsoleOutputParser("Demo")

    parser.feed("0 errors found")
    parser.feed("Errors: 0")

    assert parser.has_error is False


def test_bind_log_context_restores_previous_values() -> None:
    with bind_log_context(job_id="10", step="1", tool="Demo", debug_level=3):
        with bind_log_context(step="2"):
            assert get_log_context()["step"] == "2"
            assert get_log_context()["job_id"] == "10"
        assert get_log_context()["step"] == "1"
        assert get_debug_level() == 3
    assert get_log_context() == {"job_id": None, "step": None, "tool": None, "task_id": None}
    assert get_debug_level() == 0


def test_tool_log_redirect_restored_after_exception(tmp_path: Path) -> None:
    """验证工具日志定向在异常退出时同样被撤销。"""
    context = ToolLogContext()
    log_file = tmp_path / "Tool_Log.txt"

    with pytest.raises(RuntimeError):
        with context.redirect(log_file, scope="10_1") as tool_logger:
            assert get_tool_log_file() == str(log_file)
            tool_logger.debug("loading workflow")
            raise RuntimeError("workflow crashed")

    assert "loading workflow" in log_file.read_text(encoding="utf-8")
    assert get_tool_log_file() is None
    restored = context.logger_for("10_1")
    assert restored.handlers == []
    assert restored.propagate is True
    assert restored.level == logging.NOTSET


def test_concurrent_scopes_write_to_separate_files(tmp_path: Path) -> None:
    context = ToolLogContext()

    with context.redirect(tmp_path / "a.txt", scope="1_1") as first:
        with context.redirect(tmp_path / "b.txt", scope="2_1") as second:
            first.info("from job 1")
            second.info("from job 2")

    assert "from job 2" not in (tmp_path / "a.txt").read_text(encoding="utf-8")
    assert "from job 1" not in (tmp_path / "b.txt").read_text(encoding="utf-8")


def test_debug_filter_honours_step_debug_level() -> None:
    routing = DebugRoutingFilter(min_level=logging.INFO, debug_modules={"stepmanager.infra"}, debug_job_ids={"77"})

    assert routing.filter(_record(logging.WARNING)) is True
    assert routing.filter(_record(logging.DEBUG)) is False
    assert routing.filter(_record(logging.DEBUG, name="stepmanager.infra.storage.workspace")) is True
    assert routing.filter(_record(logging.DEBUG, job_id="77")) is True
    with bind_log_context(debug_level=2):
        assert routing.filter(_record(logging.DEBUG)) is True


def test_structured_formatter_emits_step_fields() -> None:
    formatter = StructuredJsonFormatter(
        service="analysis-step-manager",
        manager_name="Pub-88-3",
        process_role="worker",
        redaction_mode="standard",
        payload_preview_chars=40,
    )

    with bind_log_context(job_id="10", step="2", tool="Demo"):
        line = formatter.format(
            _record(event="step.phase.changed", phase="executing", exit_code="3", payload_preview={"token": "abc"})
        )

    entry = json.loads(line)
    assert entry["job_id"] == "10"
    assert entry["step"] == "2"
    assert entry["tool"] == "Demo"
    assert entry["phase"] == "executing"
    assert entry["exit_code"] == 3
    assert entry["service"] == "analysis-step-manager"
    assert entry["manager"] == "Pub-88-3"


def test_redaction_and_preview_truncation() -> None:
    assert redact_text("password=hunter2", "standard") == "password=***"
    assert redact_text("password=hunter2", "off") == "password=hunter2"
    assert redact_text("broker redis://:s3cret@queue:6379/0", "standard") == "broker redis://:***@queue:6379/0"
    assert redact_text("Server=db;Pwd=abc;Database=dms", "standard") == "Server=db;Pwd=***;Database=dms"
    assert render_payload_preview("x" * 50, max_chars=10, redaction_mode="standard") == "x" * 10 + "...(truncated)"
