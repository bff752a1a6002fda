"""测试公共夹具：隔离目录的配置、内存状态通道与步骤参数构造。"""

from __future__ import annotations

import sys
import textwrap
from pathlib import Path
from typing import Any

import pytest

from stepmanager.application.container import build_job_step_runner
from stepmanager.application.runner import JobStepRunner
from stepmanager.config import Settings
from stepmanager.domain.schemas import StepParams
from stepmanager.infra.db.repository import StepTaskRepository
from stepmanager.infra.db.session import build_engine, build_session_factory, init_db
from stepmanager.infra.status.sinks import MemoryStatusSink

DATASET = "QC_Shew_23_01"
OUTPUT_DIR = "CMD202610181200_Auto1001"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """构造全部目录位于 tmp_path 下、无重试等待的配置。"""
    transfer_root = tmp_path / "transfer"
    transfer_root.mkdir()
    return Settings(
        _env_file=None,
        work_dir_root=tmp_path / "work",
        failed_results_root=tmp_path / "failed",
        default_transfer_root=transfer_root,
        status_file_path=tmp_path / "status" / "step-status.json",
        status_db_enabled=False,
        status_endpoint_url=None,
        file_copy_retry_count=1,
        file_copy_retry_holdoff_seconds=0,
        tool_release_grace_seconds=0,
        process_monitor_interval_seconds=0.02,
        process_abort_grace_seconds=2,
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def status_sink() -> MemoryStatusSink:
    return MemoryStatusSink()


@pytest.fixture
def repository(tmp_path: Path) -> StepTaskRepository:
    engine = build_engine(f"sqlite:///{tmp_path / 'steps.db'}")
    init_db(engine)
    return StepTaskRepository(build_session_factory(engine))


@pytest.fixture
def runner(settings: Settings, status_sink: MemoryStatusSink) -> JobStepRunner:
    return build_job_step_runner(settings, status_sink=status_sink)


def make_params(**overrides: Any) -> StepParams:
    """构造默认的命令行工具步骤参数。"""
    values: dict[str, Any] = {
        "job_id": 1001,
        "step_number": 2,
        "tool_name": "command-line",
        "dataset_name": DATASET,
        "output_directory_name": OUTPUT_DIR,
        "parameters": {},
    }
    values.update(overrides)
    return StepParams(**values)


def write_script(directory: Path, name: str, body: str) -> Path:
    """写入一个由当前解释器执行的小脚本。"""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
    return path


def script_params(script: Path, **parameters: Any) -> dict[str, Any]:
    """返回用当前解释器运行脚本的工具参数。"""
    values: dict[str, Any] = {"ProgramPath": sys.executable, "ProgramArgs": f'"{script}"'}
    values.update(parameters)
    return values
