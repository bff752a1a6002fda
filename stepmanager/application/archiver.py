"""失败归档：把失败步骤的工作区快照复制到归档目录，供事后排查。"""

from __future__ import annotations

import logging
import shutil
from datetime import datetime
from pathlib import Path

from stepmanager.application.packager import ResultPackager
from stepmanager.domain.errors import ArchivalWarning, StepError
from stepmanager.domain.models import ArchiveRecord, JobStep
from stepmanager.domain.tools.base import BaseStepTool
from stepmanager.infra.storage.workspace import FILE_INFO_DATE_FORMAT, WORKDIR_FILE_INFO_NAME, WorkingArea

logger = logging.getLogger(__name__)

FAILED_RESULTS_INFO_PREFIX = "FailedResultsFolderInfo_"


class FailureArchiver:
    """失败归档器；归档目录只追加，不覆盖、不清理。"""

    def __init__(self, *, packager: ResultPackager, archive_root: Path, manager_name: str) -> None:
        self._packager = packager
        self._archive_root = archive_root
        self._manager_name = manager_name

    def archive(self, step: JobStep, area: WorkingArea, tool: BaseStepTool | None) -> ArchiveRecord | None:
        """归档失败步骤；任何问题都只记录警告，返回 None。"""
        try:
            return self._archive(step, area, tool)
        except Exception as exc:
            logger.warning(
                "failed results archive incomplete",
                extra={
                    "event": "archive.failed",
                    "path": str(area.path),
                    "error_type": ArchivalWarning.__name__,
                    "error": f"{type(exc).__name__}: {exc}",
                },
            )
            return None

    def _archive(self, step: JobStep, area: WorkingArea, tool: BaseStepTool | None) -> ArchiveRecord:
        area.path.mkdir(parents=True, exist_ok=True)
        # 先写文件清单，保证归档至少包含失败时刻的快照。
        area.write_file_info(WORKDIR_FILE_INFO_NAME)
        area.skip_file(WORKDIR_FILE_INFO_NAME)

        source = area.path
        from_results = False
        if area.partial_delivery is not None:
            logger.warning(
                "results already left the working area, archiving raw working area",
                extra={
                    "event": "archive.partial_delivery",
                    "path": str(area.partial_delivery),
                    "error_type": ArchivalWarning.__name__,
                },
            )
        elif tool is not None:
            try:
                source = self._packager.materialize(step, area, tool)
                from_results = True
                # 清单随结果目录一并归档。
                shutil.copy2(area.path / WORKDIR_FILE_INFO_NAME, source / WORKDIR_FILE_INFO_NAME)
            except (StepError, OSError) as exc:
                logger.warning(
                    "results materialization failed, archiving raw working area",
                    extra={
                        "event": "archive.materialize.skipped",
                        "error_type": ArchivalWarning.__name__,
                        "error": str(exc),
                    },
                )
                source = area.path

        self._archive_root.mkdir(parents=True, exist_ok=True)
        target = self._unique_target(step)
        shutil.copytree(source, target)
        files = tuple(sorted(item.relative_to(target).as_posix() for item in target.rglob("*") if item.is_file()))
        info_file = self._write_info_file(step, target, source, area.partial_delivery)
        logger.warning(
            "failed results archived",
            extra={
                "event": "archive.created",
                "path": str(target),
                "payload_preview": {"files": len(files), "from_results_directory": from_results},
            },
        )
        return ArchiveRecord(
            archive_path=target,
            source_path=source,
            from_results_directory=from_results,
            files=files,
            info_file=info_file,
        )

    def _unique_target(self, step: JobStep) -> Path:
        target = self._archive_root / f"{step.job_id}_{step.step_number}"
        if not target.exists():
            return target
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        candidate = self._archive_root / f"{target.name}_{stamp}"
        index = 1
        while candidate.exists():
            candidate = self._archive_root / f"{target.name}_{stamp}_{index}"
            index += 1
        return candidate

    def _write_info_file(self, step: JobStep, target: Path, source: Path, partial_delivery: Path | None) -> Path:
        info_path = self._archive_root / f"{FAILED_RESULTS_INFO_PREFIX}{target.name}.txt"
        rows = [
            ("Date", datetime.now().strftime(FILE_INFO_DATE_FORMAT)),
            ("ResultsFolderName", target.name),
            ("Manager", self._manager_name),
            ("Job", str(step.job_id)),
            ("Step", str(step.step_number)),
            ("Tool", step.tool_name),
            ("Dataset", step.dataset_name),
            ("XferFolder", str(step.transfer_root or "")),
            ("SourceFolder", str(source)),
            ("PartialDeliveryFolder", str(partial_delivery or "")),
            ("CompletionCode", step.status.value),
            ("CompletionMessage", step.message),
        ]
        info_path.write_text("\n".join(f"{key}\t{value}" for key, value in rows) + "\n", encoding="utf-8")
        return info_path
