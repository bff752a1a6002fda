"""结果打包阶段：整理 Results 目录并整体移动到交付目录。"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from stepmanager.domain.errors import PackagingError, StepError
from stepmanager.domain.models import JobStep, PhaseResult
from stepmanager.domain.tools.base import BaseStepTool
from stepmanager.infra.storage.file_tools import FileTools
from stepmanager.infra.storage.workspace import WorkingArea

logger = logging.getLogger(__name__)

# 这些数据集名代表跨数据集作业，交付目录不再按数据集分层。
AGGREGATION_DATASET_NAMES = frozenset({"aggregation", "dataset_aggregation"})


class ResultPackager:
    """结果打包器，分为整理与交付两步；失败归档只复用整理这一步。"""

    def __init__(self, *, file_tools: FileTools) -> None:
        self._file_tools = file_tools

    def package(self, step: JobStep, area: WorkingArea, tool: BaseStepTool) -> PhaseResult:
        """整理并交付结果，交付确认后删除登记的上游文件。"""
        try:
            results_dir = self.materialize(step, area, tool)
            destination = self.transfer(step, area, results_dir)
        except StepError as exc:
            return PhaseResult.from_error(exc)
        except OSError as exc:
            return PhaseResult.from_error(PackagingError(f"Error packaging results: {exc}"))
        self.delete_upstream(area)
        return PhaseResult.success(str(destination))

    def materialize(self, step: JobStep, area: WorkingArea, tool: BaseStepTool) -> Path:
        """在工作区内建立 Results 目录并移入全部结果文件。

        可重复调用：已移入的文件不会再次出现在工作区根目录。
        """
        results_dir = self._file_tools.create_directory_with_retry(area.results_path)
        errors: list[str] = []

        for aux_name in tool.auxiliary_directories:
            aux_dir = area.path / aux_name
            if not aux_dir.is_dir():
                continue
            target = results_dir / aux_name
            try:
                if target.exists():
                    shutil.copytree(aux_dir, target, dirs_exist_ok=True)
                    shutil.rmtree(aux_dir)
                else:
                    shutil.move(str(aux_dir), str(target))
            except OSError as exc:
                errors.append(f"{aux_name}: {exc}")

        skip_dirs = {area.results_directory_name.lower(), *(name.lower() for name in tool.auxiliary_directories)}
        for item in sorted(area.path.iterdir()):
            if item.is_dir():
                if not tool.include_subdirectories or item.name.lower() in skip_dirs:
                    continue
                if not area.should_package(item.name):
                    continue
                self._move_tree(item, results_dir / item.name, area, step, errors)
                continue
            self._move_one(item, results_dir / item.name, area, step, errors)

        if errors:
            logger.warning(
                "results materialization incomplete",
                extra={"event": "package.materialize.failed", "payload_preview": errors},
            )
            raise PackagingError(f"Error moving results files to {results_dir.name}: {'; '.join(errors)}")
        logger.info(
            "results materialized",
            extra={"event": "package.materialized", "path": str(results_dir)},
        )
        return results_dir

    def _move_tree(self, source: Path, target: Path, area: WorkingArea, step: JobStep, errors: list[str]) -> None:
        for item in sorted(source.iterdir()):
            if item.is_dir():
                self._move_tree(item, target / item.name, area, step, errors)
            else:
                self._move_one(item, target / item.name, area, step, errors)
        try:
            if not any(source.iterdir()):
                source.rmdir()
        except OSError:
            pass

    def _move_one(self, source: Path, target: Path, area: WorkingArea, step: JobStep, errors: list[str]) -> None:
        if not area.should_package(source.name):
            if step.debug_level >= 5:
                logger.debug("result file skipped", extra={"event": "package.file.skipped", "path": str(source)})
            return
        try:
            self._file_tools.move_file(source, target)
        except OSError as exc:
            errors.append(f"{source.name}: {exc}")

    def destination_for(self, step: JobStep) -> Path:
        """计算交付目录：<transferRoot>/<数据集或作业号>/<输出目录名>。"""
        if step.transfer_root is None:
            raise PackagingError("Transfer directory not defined")
        if not step.output_directory_name:
            raise PackagingError("Output directory name not defined")
        dataset_dir = step.dataset_directory_name or step.dataset_name
        if not dataset_dir or dataset_dir.lower() in AGGREGATION_DATASET_NAMES or step.data_package_id > 0:
            dataset_dir = str(step.job_id)
        return step.transfer_root / dataset_dir / step.output_directory_name

    def transfer(self, step: JobStep, area: WorkingArea, results_dir: Path) -> Path:
        """把 Results 目录整体移动到交付目录；目标已有内容时失败，不合并不覆盖。"""
        destination = self.destination_for(step)
        if step.transfer_root is not None and not step.transfer_root.is_dir():
            raise PackagingError(f"Transfer directory not found: {step.transfer_root}")
        if destination.exists():
            if destination.is_file() or any(destination.iterdir()):
                raise PackagingError(f"Results directory already exists in the transfer directory: {destination}")
            destination.rmdir()

        expected_files = self._file_tools.count_files(results_dir)
        self._file_tools.create_directory_with_retry(destination.parent)
        try:
            shutil.move(str(results_dir), str(destination))
        except OSError as exc:
            if destination.exists():
                area.partial_delivery = destination
            raise PackagingError(f"Error moving results to {destination}: {exc}") from exc

        delivered_files = self._file_tools.count_files(destination)
        if delivered_files != expected_files:
            area.partial_delivery = destination
            raise PackagingError(
                f"Transfer to {destination} incomplete: {delivered_files} of {expected_files} files present"
            )
        logger.info(
            "results delivered",
            extra={"event": "package.delivered", "path": str(destination), "payload_preview": {"files": delivered_files}},
        )
        return destination

    def delete_upstream(self, area: WorkingArea) -> None:
        """删除登记的上游源文件；删除失败只记录警告。"""
        for source in area.files_to_delete_upstream:
            if not self._file_tools.delete_file_with_retry(source):
                logger.warning(
                    "upstream file delete failed",
                    extra={"event": "package.upstream_delete.failed", "path": str(source)},
                )
            else:
                logger.info("upstream file deleted", extra={"event": "package.upstream_deleted", "path": str(source)})
