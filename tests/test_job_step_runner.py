"""步骤运行器端到端测试：覆盖准备失败、工具失败、成功交付与交付冲突四类场景。"""

from __future__ import annotations

from pathlib import Path

from conftest import DATASET, OUTPUT_DIR, make_params, script_params, write_script

from stepmanager.application.container import build_job_step_runner
from stepmanager.application.runner import JobStepRunner
from stepmanager.config import Settings
from stepmanager.domain.enums import CompletionStatus, StepPhase
from stepmanager.domain.models import CancellationToken, JobStep, StagedArtifact, ToolInvocation
from stepmanager.domain.tools.base import BaseStepTool
from stepmanager.domain.tools.registry import ToolRegistry
from stepmanager.infra.db.repository import StepTaskRepository
from stepmanager.infra.status.sinks import MemoryStatusSink
from stepmanager.infra.storage.workspace import WorkingArea

SUCCESS_SCRIPT = """
    from pathlib import Path
    print("Processing 50%")
    Path("result.txt").write_text("peaks\\n", encoding="utf-8")
    print("Processing 100%")
"""

FAILING_SCRIPT = """
    import sys
    from pathlib import Path
    Path("partial_output.txt").write_text("partial\\n", encoding="utf-8")
    print("starting analysis")
    sys.exit(3)
"""


class _RecordingTool(BaseStepTool):
    """记录调用情况的测试工具，输入缺失时不会进入执行阶段。"""
    code = "recording"
    name = "Recording"

    def __init__(self, source_dir: Path) -> None:
        self.source_dir = source_dir
        self.invocations = 0

    def required_inputs(self, step: JobStep) -> list[StagedArtifact]:
        return [StagedArtifact(name="input.raw", source_dir=self.source_dir)]

    def build_invocation(self, step: JobStep, area: WorkingArea) -> ToolInvocation:
        self.invocations += 1

        def _noop(context) -> bool:
            return True

        return ToolInvocation(tool_name=step.tool_name, work_dir=area.path, entry_point=_noop)


def _archive_dirs(settings: Settings) -> list[Path]:
    if not settings.failed_results_root.exists():
        return []
    return [item for item in settings.failed_results_root.iterdir() if item.is_dir()]


def _phases(sink: MemoryStatusSink) -> list[StepPhase]:
    phases: list[StepPhase] = []
    for record in sink.records:
        if not phases or phases[-1] != record.phase:
            phases.append(record.phase)
    return phases


def test_missing_input_returns_file_not_found_and_archives(
    runner: JobStepRunner, settings: Settings, status_sink: MemoryStatusSink, tmp_path: Path
) -> None:
    """验证必需输入缺失时返回 FILE_NOT_FOUND，不进入执行阶段，并生成归档。"""
    source_dir = tmp_path / "source"
    source_dir.mkdir()
    script = write_script(tmp_path / "scripts", "tool.py", SUCCESS_SCRIPT)
    params = make_params(
        parameters=script_params(script, InputFiles="missing.raw", InputDirectory=str(source_dir)),
    )

    outcome = runner.run(params)

    assert outcome.status == CompletionStatus.FILE_NOT_FOUND
    assert outcome.phase == StepPhase.FAILED
    assert "missing.raw" in outcome.message
    assert outcome.version is None
    assert outcome.archive is not None
    assert outcome.archive.archive_path.is_dir()
    assert "_WorkDir_File_Info_.tsv" in outcome.archive.files
    assert not any("Tool_Version_Info" in name for name in outcome.archive.files)
    assert StepPhase.EXECUTING not in _phases(status_sink)
    assert _phases(status_sink)[-2:] == [StepPhase.ARCHIVING, StepPhase.FAILED]


def test_staging_failure_never_invokes_tool(settings: Settings, status_sink: MemoryStatusSink, tmp_path: Path) -> None:
    """验证准备阶段失败后不会构建工具调用，也不会打包。"""
    source_dir = tmp_path / "source"
    source_dir.mkdir()
    tool = _RecordingTool(source_dir)
    registry = ToolRegistry(register_defaults=False)
    registry.register(tool)
    runner = build_job_step_runner(settings, status_sink=status_sink, tool_registry=registry)

    outcome = runner.run(make_params(tool_name="recording"))

    assert outcome.status == CompletionStatus.FILE_NOT_FOUND
    assert tool.invocations == 0
    assert StepPhase.PACKAGING not in _phases(status_sink)
    assert not (settings.default_transfer_root / DATASET).exists()


def test_tool_exit_code_returns_tool_execution_error(
    runner: JobStepRunner, settings: Settings, tmp_path: Path
) -> None:
    """验证工具以退出码 3 结束时返回 TOOL_EXECUTION_ERROR，归档包含工具输出与控制台日志。"""
    script = write_script(tmp_path / "scripts", "tool.py", FAILING_SCRIPT)

    outcome = runner.run(make_params(parameters=script_params(script)))

    assert outcome.status == CompletionStatus.TOOL_EXECUTION_ERROR
    assert outcome.phase == StepPhase.FAILED
    assert "exit code 3" in outcome.message
    assert outcome.archive is not None
    assert outcome.archive.from_results_directory is True
    assert "partial_output.txt" in outcome.archive.files
    assert "command-line_ConsoleOutput.txt" in outcome.archive.files
    console = (outcome.archive.archive_path / "command-line_ConsoleOutput.txt").read_text(encoding="utf-8")
    assert "starting analysis" in console
    assert not (settings.default_transfer_root / DATASET / OUTPUT_DIR).exists()
    info_files = list(settings.failed_results_root.glob("FailedResultsFolderInfo_*.txt"))
    assert len(info_files) == 1
    assert "Job\t1001" in info_files[0].read_text(encoding="utf-8")


def test_successful_step_delivers_results_and_leaves_archive_untouched(
    runner: JobStepRunner, settings: Settings, status_sink: MemoryStatusSink, tmp_path: Path
) -> None:
    """验证工具成功且移动成功时返回 SUCCESS，工作区被清理，归档目录保持不变。"""
    script = write_script(tmp_path / "scripts", "tool.py", SUCCESS_SCRIPT)

    outcome = runner.run(make_params(parameters=script_params(script, ExpectedOutputs="result.txt")))

    destination = settings.default_transfer_root / DATASET / OUTPUT_DIR
    assert outcome.status == CompletionStatus.SUCCESS
    assert outcome.phase == StepPhase.DELIVERED
    assert outcome.destination == destination
    assert (destination / "result.txt").read_text(encoding="utf-8") == "peaks\n"
    assert (destination / "Tool_Version_Info_command-line.txt").exists()
    assert outcome.archive is None
    assert _archive_dirs(settings) == []
    assert not (settings.work_dir_root / "Job1001_Step2").exists()
    assert _phases(status_sink) == [
        StepPhase.INIT,
        StepPhase.STAGING,
        StepPhase.EXECUTING,
        StepPhase.PACKAGING,
        StepPhase.DELIVERED,
    ]
    assert status_sink.records[-1].progress == 100.0


def test_data_import_deletes_upstream_files_after_transfer(
    runner: JobStepRunner, settings: Settings, tmp_path: Path
) -> None:
    """验证数据导入成功交付后删除共享目录中的源文件。"""
    share = tmp_path / "share"
    folder = share / DATASET
    folder.mkdir(parents=True)
    (folder / "scan_1.mzML").write_text("spectrum-1", encoding="utf-8")
    (folder / "scan_2.mzML").write_text("spectrum-2", encoding="utf-8")

    outcome = runner.run(
        make_params(tool_name="DataImport", parameters={"DataImportSharePath": str(share)}),
    )

    destination = settings.default_transfer_root / DATASET / OUTPUT_DIR
    assert outcome.status == CompletionStatus.SUCCESS
    assert (destination / "scan_1.mzML").read_text(encoding="utf-8") == "spectrum-1"
    assert (destination / "DataImport_Manifest.json").exists()
    assert list(folder.iterdir()) == []
    assert _archive_dirs(settings) == []


def test_existing_destination_fails_packaging_and_archives_results(
    runner: JobStepRunner, settings: Settings, tmp_path: Path
) -> None:
    """验证交付目录已有内容时从 PACKAGING 失败，不覆盖旧结果，并归档整理后的 Results。"""
    destination = settings.default_transfer_root / DATASET / OUTPUT_DIR
    destination.mkdir(parents=True)
    (destination / "previous_result.txt").write_text("old", encoding="utf-8")
    script = write_script(tmp_path / "scripts", "tool.py", SUCCESS_SCRIPT)

    outcome = runner.run(make_params(parameters=script_params(script)))

    assert outcome.status == CompletionStatus.FAILED
    assert outcome.phase == StepPhase.FAILED
    assert "already exists" in outcome.message
    assert [item.name for item in destination.iterdir()] == ["previous_result.txt"]
    assert outcome.archive is not None
    assert outcome.archive.from_results_directory is True
    assert "result.txt" in outcome.archive.files


def test_unknown_tool_fails_without_running(runner: JobStepRunner, settings: Settings) -> None:
    """验证未注册的工具名返回 NO_PARAM_FILE 并仍然生成归档快照。"""
    outcome = runner.run(make_params(tool_name="NoSuchTool"))

    assert outcome.status == CompletionStatus.NO_PARAM_FILE
    assert outcome.phase == StepPhase.FAILED
    assert outcome.archive is not None
    assert outcome.archive.files == ("_WorkDir_File_Info_.tsv",)


def test_cancelled_step_is_failed_and_archived(runner: JobStepRunner, tmp_path: Path) -> None:
    """验证取消视为失败并进入归档。"""
    script = write_script(tmp_path / "scripts", "tool.py", "import time\ntime.sleep(30)\n")
    token = CancellationToken()
    token.cancel("operator request")

    outcome = runner.run(make_params(parameters=script_params(script)), cancel_token=token)

    assert outcome.status == CompletionStatus.FAILED
    assert "operator request" in outcome.message
    assert outcome.archive is not None


def test_version_recorded_once_per_attempt(
    settings: Settings, status_sink: MemoryStatusSink, repository: StepTaskRepository, tmp_path: Path
) -> None:
    """验证成功与失败的调用都只写入一条工具版本记录。"""
    runner = build_job_step_runner(settings, status_sink=status_sink, repository=repository)
    failing = write_script(tmp_path / "scripts", "fail.py", FAILING_SCRIPT)
    passing = write_script(tmp_path / "scripts", "pass.py", SUCCESS_SCRIPT)

    runner.run(make_params(step_number=3, parameters=script_params(failing)))
    runner.run(make_params(step_number=4, parameters=script_params(passing)))

    assert len(repository.list_tool_versions(1001, 3)) == 1
    assert len(repository.list_tool_versions(1001, 4)) == 1


def test_missing_parameter_returns_no_param_file(runner: JobStepRunner) -> None:
    """验证缺少必需参数时返回 NO_PARAM_FILE。"""
    outcome = runner.run(make_params(parameters={}))

    assert outcome.status == CompletionStatus.NO_PARAM_FILE
    assert "ProgramPath" in outcome.message


class _ExplodingTool(BaseStepTool):
    code = "exploding"
    name = "Exploding"

    def required_inputs(self, step: JobStep) -> list[StagedArtifact]:
        return []

    def build_invocation(self, step: JobStep, area: WorkingArea) -> ToolInvocation:
        raise RuntimeError("kaboom")


def test_unexpected_error_is_failed_and_archived(
    settings: Settings, status_sink: MemoryStatusSink
) -> None:
    """验证阶段内的意外异常映射为 FAILED，保留异常信息并照常归档。"""
    registry = ToolRegistry(register_defaults=False)
    registry.register(_ExplodingTool())
    runner = build_job_step_runner(settings, status_sink=status_sink, tool_registry=registry)

    outcome = runner.run(make_params(tool_name="exploding"))

    assert outcome.status == CompletionStatus.FAILED
    assert outcome.phase == StepPhase.FAILED
    assert "kaboom" in outcome.message
    assert "executing" in outcome.message
    assert outcome.archive is not None
    assert outcome.version is not None
    assert outcome.version.version == "unknown"
    assert "Tool_Version_Info_exploding.txt" in outcome.archive.files
    assert status_sink.records[-1].phase == StepPhase.FAILED
    assert status_sink.records[-1].progress == 100.0
