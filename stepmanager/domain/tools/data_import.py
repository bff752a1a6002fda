"""数据导入工具：从共享目录导入文件，校验摘要后随结果交付，交付成功再删除源文件。"""

from __future__ import annotations

import json
from pathlib import Path

from stepmanager.domain.errors import ResourceNotFoundError, ToolExecutionError
from stepmanager.domain.models import JobStep, StagedArtifact, ToolInvocation, ToolRunContext
from stepmanager.domain.tools.base import BaseStepTool
from stepmanager.infra.storage.workspace import WorkingArea, sha256_file

MANIFEST_FILE_NAME = "DataImport_Manifest.json"


class DataImportTool(BaseStepTool):
    """数据导入工具。"""
    code = "data-import"
    name = "DataImport"
    aliases = ("dta-import", "dtaimport", "dataimport")
    version = "1.0.0"
    description = "导入共享目录中匹配掩码的文件，并以 SHA-256 校验副本。"
    required_parameters = ("DataImportSharePath",)
    result_files_to_skip = ("DataImport_AnalysisSummary.txt",)

    def source_folder(self, step: JobStep) -> Path:
        share = Path(self.require_param(step, "DataImportSharePath"))
        if not share.is_dir():
            raise ResourceNotFoundError(f"Data import share not found: {share}")
        folder = share / step.get_param("DataImportFolder", step.dataset_name)
        if not folder.is_dir():
            raise ResourceNotFoundError(f"Data import folder not found: {folder}")
        return folder

    def required_inputs(self, step: JobStep) -> list[StagedArtifact]:
        folder = self.source_folder(step)
        mask = step.get_param("DataImportFileMask", "*")
        files = sorted(item for item in folder.glob(mask) if item.is_file())
        if not files:
            raise ResourceNotFoundError(f"No files matching {mask} found in {folder}")
        delete_upstream = step.get_bool_param("MoveFilesAfterImport", True)
        return [
            StagedArtifact(
                name=item.name,
                source_dir=folder,
                skip_in_results=False,
                delete_upstream=delete_upstream,
            )
            for item in files
        ]

    def prepare_packaging(self, step: JobStep, area: WorkingArea) -> None:
        super().prepare_packaging(step, area)
        area.skip_file(f"JobParameters_{step.job_id}.xml")

    def build_invocation(self, step: JobStep, area: WorkingArea) -> ToolInvocation:
        folder = self.source_folder(step)
        artifacts = self.required_inputs(step)

        def _verify(context: ToolRunContext) -> bool:
            manifest: list[dict[str, object]] = []
            for index, artifact in enumerate(artifacts, start=1):
                context.raise_if_cancelled()
                staged = area.path / artifact.name
                if not staged.is_file():
                    raise ToolExecutionError(f"Imported file missing from working directory: {artifact.name}")
                staged_hash = sha256_file(staged)
                if staged_hash != sha256_file(artifact.source_path):
                    raise ToolExecutionError(f"Checksum mismatch for imported file: {artifact.name}")
                manifest.append({"file": artifact.name, "size_bytes": staged.stat().st_size, "sha256": staged_hash})
                context.logger.info("Verified %s", artifact.name)
                context.report_progress(index * 100.0 / len(artifacts))
            (area.path / MANIFEST_FILE_NAME).write_text(
                json.dumps({"source": str(folder), "files": manifest}, ensure_ascii=False, indent=2) + "\n",
                encoding="utf-8",
            )
            return True

        return ToolInvocation(
            tool_name=step.tool_name,
            work_dir=area.path,
            entry_point=_verify,
            expected_outputs=[MANIFEST_FILE_NAME],
            version=f"{self.name} {self.version}",
        )
