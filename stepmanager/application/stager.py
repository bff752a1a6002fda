"""资源准备阶段：把工具所需的输入复制到工作区并按需解压。"""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path

from stepmanager.domain.enums import CompletionStatus
from stepmanager.domain.errors import ConfigurationError, ResourceNotFoundError, StepError
from stepmanager.domain.models import JobStep, PhaseResult, StagedArtifact
from stepmanager.domain.tools.base import BaseStepTool
from stepmanager.infra.storage.file_tools import FileTools
from stepmanager.infra.storage.workspace import WorkingArea

logger = logging.getLogger(__name__)


class ResourceStager:
    """资源准备器；第一处失败即停止，已复制的文件留给失败归档。"""

    def __init__(self, *, file_tools: FileTools) -> None:
        self._file_tools = file_tools

    def stage(self, step: JobStep, area: WorkingArea, tool: BaseStepTool) -> PhaseResult:
        """准备全部输入并返回阶段结果。"""
        try:
            missing = tool.missing_parameters(step)
            if missing:
                raise ConfigurationError(f"Missing required parameter(s) for {tool.name}: {', '.join(missing)}")
            artifacts = tool.required_inputs(step)
            tool.prepare_packaging(step, area)
            for artifact in artifacts:
                self._stage_artifact(artifact, area)
        except StepError as exc:
            logger.warning(
                "staging failed",
                extra={"event": "stage.failed", "error_type": type(exc).__name__, "error": exc.message},
            )
            return PhaseResult.from_error(exc)
        except (OSError, zipfile.BadZipFile, ValueError) as exc:
            logger.warning(
                "staging failed",
                extra={"event": "stage.failed", "error_type": type(exc).__name__, "error": str(exc)},
            )
            return PhaseResult.failure(CompletionStatus.FAILED, f"Error staging input files: {exc}")
        logger.info(
            "staging finished",
            extra={"event": "stage.succeeded", "payload_preview": {"artifacts": [item.name for item in artifacts]}},
        )
        return PhaseResult.success()

    def _stage_artifact(self, artifact: StagedArtifact, area: WorkingArea) -> None:
        source = artifact.source_path
        target_dir = area.path / artifact.target_subdir if artifact.target_subdir else area.path
        if artifact.is_directory:
            if not source.is_dir():
                if artifact.required:
                    raise ResourceNotFoundError(f"Required directory not found: {source}")
                self._log_optional_missing(source)
                return
            self._file_tools.copy_directory(source, target_dir)
            if artifact.skip_in_results:
                area.skip_file(target_dir.name)
            logger.debug("directory staged", extra={"event": "stage.directory.copied", "path": str(source)})
            return

        if not source.is_file():
            if artifact.required:
                raise ResourceNotFoundError(f"Required file not found: {source}")
            self._log_optional_missing(source)
            return
        target = target_dir / artifact.name
        self._file_tools.copy_file_with_retry(source, target)
        if artifact.skip_in_results:
            area.skip_file(artifact.name)
        if artifact.delete_upstream:
            area.mark_for_upstream_deletion(source)
        logger.debug("file staged", extra={"event": "stage.file.copied", "path": str(source)})

        if artifact.unzip:
            extracted = self._file_tools.extract_archive(target, target_dir)
            # 解出的文件同属输入，和压缩包一起排除出结果。
            for item in extracted:
                if artifact.skip_in_results:
                    area.skip_file(item.name)
            area.skip_file(artifact.name)
            logger.debug(
                "archive extracted",
                extra={"event": "stage.archive.extracted", "path": str(target), "payload_preview": len(extracted)},
            )

    @staticmethod
    def _log_optional_missing(source: Path) -> None:
        logger.info("optional input not found", extra={"event": "stage.optional.missing", "path": str(source)})
