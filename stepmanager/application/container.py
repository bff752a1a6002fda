"""依赖容器模块，负责单例化创建仓储、状态通道与步骤运行器。"""

from __future__ import annotations

import logging
from functools import lru_cache

from stepmanager.application.archiver import FailureArchiver
from stepmanager.application.executor import ToolExecutor
from stepmanager.application.packager import ResultPackager
from stepmanager.application.runner import JobStepRunner
from stepmanager.application.stager import ResourceStager
from stepmanager.application.status_reporter import StatusReporter
from stepmanager.application.version import VersionRecorder
from stepmanager.config import Settings, get_settings
from stepmanager.domain.tools.registry import ToolRegistry
from stepmanager.infra.db.repository import StepTaskRepository
from stepmanager.infra.db.session import get_engine, get_session_factory, init_db
from stepmanager.infra.logging.context import ToolLogContext
from stepmanager.infra.process.runner import ProgramRunner
from stepmanager.infra.status.sinks import (
    CompositeStatusSink,
    HttpStatusSink,
    JsonStatusFileSink,
    RepositoryStatusSink,
    StatusSink,
)
from stepmanager.infra.storage.file_tools import FileTools
from stepmanager.infra.storage.workspace import WorkingAreaManager

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_tool_registry() -> ToolRegistry:
    """获取工具注册中心单例。"""
    return ToolRegistry()


@lru_cache(maxsize=1)
def get_repository() -> StepTaskRepository | None:
    """获取步骤仓储单例；关闭数据库上报时返回 None。
    返回:
    - 仓储对象，首次获取时按需建表。
    """
    settings = get_settings()
    if not settings.status_db_enabled:
        return None
    init_db()
    return StepTaskRepository(get_session_factory())


@lru_cache(maxsize=1)
def get_status_sink() -> CompositeStatusSink:
    """获取状态上报组合通道单例。"""
    return build_status_sink(get_settings(), repository=get_repository())


@lru_cache(maxsize=1)
def get_job_step_runner() -> JobStepRunner:
    """获取步骤运行器单例。"""
    return build_job_step_runner(
        get_settings(),
        status_sink=get_status_sink(),
        repository=get_repository(),
        tool_registry=get_tool_registry(),
    )


def build_status_sink(settings: Settings, *, repository: StepTaskRepository | None = None) -> CompositeStatusSink:
    """按配置组装状态通道：状态文件必选，HTTP 与数据库按需启用。"""
    sinks: list[StatusSink] = [JsonStatusFileSink(settings.status_file_path)]
    if settings.status_endpoint_url:
        sinks.append(HttpStatusSink(settings.status_endpoint_url, settings.status_request_timeout_seconds))
    if repository is not None:
        sinks.append(RepositoryStatusSink(repository))
    return CompositeStatusSink(sinks)


def build_job_step_runner(
    settings: Settings,
    *,
    status_sink: StatusSink,
    repository: StepTaskRepository | None = None,
    tool_registry: ToolRegistry | None = None,
) -> JobStepRunner:
    """按显式依赖组装步骤运行器。
    参数:
    - settings: 运行配置。
    - status_sink: 状态接收方。
    - repository: 可选仓储，用于工具版本落库。
    - tool_registry: 可选工具注册中心，默认注册内置工具。
    返回:
    - 组装完成的 JobStepRunner。
    """
    file_tools = FileTools(
        retry_count=settings.file_copy_retry_count,
        retry_holdoff_seconds=settings.file_copy_retry_holdoff_seconds,
    )
    reporter = StatusReporter(
        status_sink,
        manager_name=settings.manager_name,
        interval_seconds=settings.status_update_interval_seconds,
    )
    packager = ResultPackager(file_tools=file_tools)
    executor = ToolExecutor(
        version_recorder=VersionRecorder(repository),
        reporter=reporter,
        program_runner=ProgramRunner(
            monitor_interval_seconds=settings.process_monitor_interval_seconds,
            abort_grace_seconds=settings.process_abort_grace_seconds,
        ),
        log_context=ToolLogContext(),
        monitor_interval_seconds=settings.process_monitor_interval_seconds,
        release_grace_seconds=settings.tool_release_grace_seconds,
    )
    return JobStepRunner(
        tool_registry=tool_registry or ToolRegistry(),
        area_manager=WorkingAreaManager(settings.work_dir_root, results_directory_name=settings.results_directory_name),
        stager=ResourceStager(file_tools=file_tools),
        executor=executor,
        packager=packager,
        archiver=FailureArchiver(
            packager=packager,
            archive_root=settings.failed_results_root,
            manager_name=settings.manager_name,
        ),
        reporter=reporter,
        default_transfer_root=settings.default_transfer_root,
        default_debug_level=settings.default_debug_level,
        cleanup_working_area=settings.cleanup_working_area,
    )


def shutdown_container_resources() -> None:
    """关闭状态通道与数据库连接池，并清理依赖容器缓存。"""
    if get_status_sink.cache_info().currsize:
        try:
            get_status_sink().close()
        except Exception as exc:
            logger.warning(
                "status sink close failed",
                extra={"event": "container.shutdown.failed", "op": "status_sink", "error": str(exc)},
            )
    if get_engine.cache_info().currsize:
        get_engine().dispose()

    for provider in (
        get_job_step_runner,
        get_status_sink,
        get_repository,
        get_tool_registry,
        get_session_factory,
        get_engine,
    ):
        provider.cache_clear()
