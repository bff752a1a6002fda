"""结果打包测试：覆盖 Results 整理、交付冲突与上游文件清理。"""

from __future__ import annotations

from pathlib import Path

import pytest

from stepmanager.application.packager import ResultPackager
from stepmanager.domain.enums import CompletionStatus
from stepmanager.domain.errors import PackagingError
from stepmanager.domain.models import JobStep, StagedArtifact, ToolInvocation
from stepmanager.domain.tools.base import BaseStepTool
from stepmanager.infra.storage.file_tools import FileTools
from stepmanager.infra.storage.workspace import WorkingArea


class _PlotTool(BaseStepTool):
    code = "plot"
    name = "Plot"
    auxiliary_directories = ("Plots",)
    result_files_to_skip = ("params.xml",)
    result_extensions_to_skip = (".tmp",)

    def required_inputs(self, step: JobStep) -> list[StagedArtifact]:
        return []

    def build_invocation(self, step: JobStep, area: WorkingArea) -> ToolInvocation:
        return ToolInvocation(tool_name=step.tool_name, work_dir=area.path)


def _setup(tmp_path: Path) -> tuple[ResultPackager, JobStep, WorkingArea, BaseStepTool]:
    work = tmp_path / "work"
    work.mkdir()
    transfer = tmp_path / "transfer"
    transfer.mkdir()
    step = JobStep(
        job_id=55,
        step_number=3,
        tool_name="Plot",
        working_dir=work,
        dataset_name="DS_A",
        transfer_root=transfer,
        output_directory_name="PLT_55",
    )
    area = WorkingArea(work)
    tool = _PlotTool()
    tool.prepare_packaging(step, area)
    (work / "summary.txt").write_text("ok", encoding="utf-8")
    (work / "params.xml").write_text("<p/>", encoding="utf-8")
    (work / "scratch.tmp").write_text("x", encoding="utf-8")
    (work / "Plots").mkdir()
    (work / "Plots" / "heatmap.png").write_bytes(b"png")
    (work / "cache").mkdir()
    (work / "cache" / "index.bin").write_bytes(b"bin")
    packager = ResultPackager(file_tools=FileTools(retry_count=1, retry_holdoff_seconds=0))
    return packager, step, area, tool


def test_materialize_moves_results_and_is_idempotent(tmp_path: Path) -> None:
    packager, step, area, tool = _setup(tmp_path)

    results = packager.materialize(step, area, tool)
    again = packager.materialize(step, area, tool)

    assert results == again == area.results_path
    assert sorted(item.relative_to(results).as_posix() for item in results.rglob("*") if item.is_file()) == [
        "Plots/heatmap.png",
        "summary.txt",
    ]
    assert (area.path / "params.xml").exists()
    assert (area.path / "scratch.tmp").exists()
    assert (area.path / "cache" / "index.bin").exists()


def test_package_delivers_under_dataset_directory(tmp_path: Path) -> None:
    packager, step, area, tool = _setup(tmp_path)

    result = packager.package(step, area, tool)

    destination = step.transfer_root / "DS_A" / "PLT_55"
    assert result.succeeded
    assert result.message == str(destination)
    assert (destination / "summary.txt").exists()
    assert (destination / "Plots" / "heatmap.png").exists()
    assert not area.results_path.exists()


def test_existing_destination_with_files_is_not_overwritten(tmp_path: Path) -> None:
    """验证交付目录已有文件时打包失败，旧内容保持不变。"""
    packager, step, area, tool = _setup(tmp_path)
    destination = step.transfer_root / "DS_A" / "PLT_55"
    destination.mkdir(parents=True)
    (destination / "summary.txt").write_text("previous", encoding="utf-8")

    result = packager.package(step, area, tool)

    assert result.status == CompletionStatus.FAILED
    assert "already exists" in result.message
    assert (destination / "summary.txt").read_text(encoding="utf-8") == "previous"
    assert (area.results_path / "summary.txt").exists()


def test_empty_destination_is_replaced(tmp_path: Path) -> None:
    packager, step, area, tool = _setup(tmp_path)
    destination = step.transfer_root / "DS_A" / "PLT_55"
    destination.mkdir(parents=True)

    result = packager.package(step, area, tool)

    assert result.succeeded
    assert (destination / "summary.txt").exists()


def test_missing_transfer_root_fails(tmp_path: Path) -> None:
    packager, step, area, tool = _setup(tmp_path)
    step.transfer_root = tmp_path / "offline-share"

    result = packager.package(step, area, tool)

    assert result.status == CompletionStatus.FAILED
    assert "Transfer directory not found" in result.message


@pytest.mark.parametrize(
    ("dataset", "package_id", "expected"),
    [
        ("DS_A", 0, "DS_A"),
        ("Aggregation", 0, "55"),
        ("DS_A", 12, "55"),
    ],
)
def test_destination_for_uses_job_for_aggregation(tmp_path: Path, dataset: str, package_id: int, expected: str) -> None:
    packager, step, _, _ = _setup(tmp_path)
    step.dataset_name = dataset
    step.data_package_id = package_id

    assert packager.destination_for(step) == step.transfer_root / expected / "PLT_55"


def test_destination_requires_output_directory(tmp_path: Path) -> None:
    packager, step, _, _ = _setup(tmp_path)
    step.output_directory_name = None

    with pytest.raises(PackagingError):
        packager.destination_for(step)


def test_upstream_files_deleted_only_after_delivery(tmp_path: Path) -> None:
    """验证登记的上游文件在确认交付后删除，交付失败时保留。"""
    packager, step, area, tool = _setup(tmp_path)
    upstream = tmp_path / "share" / "raw.mzML"
    upstream.parent.mkdir()
    upstream.write_text("raw", encoding="utf-8")
    area.mark_for_upstream_deletion(upstream)
    blocked = step.transfer_root / "DS_A" / "PLT_55"
    blocked.mkdir(parents=True)
    (blocked / "old.txt").write_text("old", encoding="utf-8")

    failed = packager.package(step, area, tool)
    assert not failed.succeeded
    assert upstream.exists()

    (blocked / "old.txt").unlink()
    delivered = packager.package(step, area, tool)
    assert delivered.succeeded
    assert not upstream.exists()
