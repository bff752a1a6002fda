"""工具版本记录：生成版本信息文件并写入仓储。"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from stepmanager.domain.models import JobStep, ToolInvocation, VersionRecord
from stepmanager.infra.db.repository import StepTaskRepository
from stepmanager.infra.storage.workspace import FILE_INFO_DATE_FORMAT, WorkingArea

logger = logging.getLogger(__name__)

TOOL_VERSION_INFO_PREFIX = "Tool_Version_Info_"
UNKNOWN_VERSION = "unknown"


def tool_version_info_file_name(tool_name: str) -> str:
    return f"{TOOL_VERSION_INFO_PREFIX}{tool_name}.txt"


class VersionRecorder:
    """组装并记录工具版本；两个方法都不向外抛出异常。"""

    def __init__(self, repository: StepTaskRepository | None = None) -> None:
        self._repository = repository

    def build(self, invocation: ToolInvocation) -> VersionRecord:
        """由调用描述生成版本记录，每个工具文件附带修改时间。"""
        binaries: list[str] = []
        for tool_file in invocation.tool_files:
            binaries.append(self._describe_tool_file(tool_file))
        return VersionRecord(
            tool_name=invocation.tool_name,
            version=invocation.version or UNKNOWN_VERSION,
            binaries=tuple(binaries),
        )

    def unavailable(self, tool_name: str) -> VersionRecord:
        return VersionRecord(tool_name=tool_name, version=UNKNOWN_VERSION)

    @staticmethod
    def _describe_tool_file(tool_file: Path) -> str:
        try:
            modified = datetime.fromtimestamp(tool_file.stat().st_mtime)
        except OSError:
            logger.warning(
                "tool file not found for version info",
                extra={"event": "version.tool_file.missing", "path": str(tool_file)},
            )
            return f"{tool_file.name}: {UNKNOWN_VERSION}"
        return f"{tool_file.name}: {modified.strftime(FILE_INFO_DATE_FORMAT)}"

    def record(self, step: JobStep, area: WorkingArea, version: VersionRecord) -> Path | None:
        """写入 Tool_Version_Info 文件并落库，返回文件路径；写文件失败时返回 None。"""
        info_path: Path | None = area.path / tool_version_info_file_name(step.tool_name)
        lines = [
            f"Date: {version.recorded_at.astimezone().strftime(FILE_INFO_DATE_FORMAT)}",
            f"Dataset: {step.dataset_name}",
            f"Job: {step.job_id}",
            f"Step: {step.step_number}",
            f"Tool: {version.tool_name}",
            "ToolVersionInfo:",
            *version.entries(),
        ]
        try:
            info_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as exc:
            logger.warning(
                "tool version file write failed",
                extra={"event": "version.file.failed", "error_type": type(exc).__name__, "error": str(exc)},
            )
            info_path = None

        if self._repository is not None:
            try:
                self._repository.record_tool_version(step.job_id, step.step_number, version)
            except Exception as exc:
                logger.warning(
                    "tool version persist failed",
                    extra={
                        "event": "version.persist.failed",
                        "external_service": "database",
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
        logger.info(
            "tool version recorded",
            extra={"event": "version.recorded", "payload_preview": {"version": version.version, "binaries": version.binaries}},
        )
        return info_path
