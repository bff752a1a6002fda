"""全局配置加载模块：从环境变量构建运行参数并提供缓存访问。"""

from __future__ import annotations

import errno
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _csv_to_list(value: str) -> list[str]:
    """将逗号分隔字符串转换为去空白列表。"""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """步骤管理器运行配置对象，从环境变量读取并提供类型化访问。"""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Analysis Step Manager"
    manager_name: str = "stepmgr-local"
    environment: str = "dev"

    database_url: str = "sqlite:///./stepmanager.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_task_always_eager: bool = False
    job_soft_timeout_seconds: int = 12 * 60 * 60
    job_hard_timeout_seconds: int = 13 * 60 * 60

    work_dir_root: Path = Field(default=Path("./data/work"))
    failed_results_root: Path = Field(default=Path("./data/DMS_FailedResults"))
    default_transfer_root: Path | None = None
    results_directory_name: str = "Results"
    cleanup_working_area: bool = True

    status_update_interval_seconds: int = Field(default=15, ge=5)
    process_monitor_interval_seconds: float = 0.5
    process_abort_grace_seconds: float = 5.0
    tool_release_grace_seconds: float = 1.0
    file_copy_retry_count: int = 3
    file_copy_retry_holdoff_seconds: float = 15.0
    default_debug_level: int = 1

    status_file_path: Path = Field(default=Path("./data/status/step-status.json"))
    status_endpoint_url: str | None = None
    status_request_timeout_seconds: int = 10
    status_db_enabled: bool = True

    log_dir: Path = Field(default=Path("./data/logs"))
    log_level: str = "INFO"
    log_debug_modules: str = ""
    log_debug_job_ids: str = ""
    log_redaction_mode: str = "standard"
    log_payload_preview_chars: int = 2000
    log_max_bytes: int = 50 * 1024 * 1024
    log_backup_count: int = 10

    def log_debug_modules_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_modules)

    def log_debug_job_ids_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_job_ids)


def _ensure_writable_dir(path: Path, fallback_name: str) -> Path:
    """解析为绝对路径并确保目录存在；只读环境下回退到当前目录。"""
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        if exc.errno not in {errno.EACCES, errno.EPERM, errno.EROFS}:
            raise
        # 容器只读或权限受限时回退到当前工作目录下的本地路径。
        path = (Path.cwd() / "data" / fallback_name).resolve()
        path.mkdir(parents=True, exist_ok=True)
    return path


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """构建并缓存 Settings，同时确保工作目录与失败归档目录可写。"""
    settings = Settings()
    settings.work_dir_root = _ensure_writable_dir(settings.work_dir_root, "work")
    settings.failed_results_root = _ensure_writable_dir(settings.failed_results_root, "DMS_FailedResults")
    # 状态文件目录在首次写入时创建，这里只统一为绝对路径。
    if not settings.status_file_path.is_absolute():
        settings.status_file_path = (Path.cwd() / settings.status_file_path).resolve()
    return settings
