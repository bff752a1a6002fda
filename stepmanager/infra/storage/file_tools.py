"""文件操作工具：带重试的复制、建目录、删除，以及归档解压。"""

from __future__ import annotations

import gzip
import logging
import shutil
import time
import zipfile
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_RETRY_COUNT = 3
DEFAULT_RETRY_HOLDOFF_SECONDS = 15.0


class FileTools:
    """文件操作工具，共享存储偶发失败时按固定间隔重试。"""

    def __init__(
        self,
        *,
        retry_count: int = DEFAULT_RETRY_COUNT,
        retry_holdoff_seconds: float = DEFAULT_RETRY_HOLDOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._retry_count = max(1, retry_count)
        self._retry_holdoff_seconds = max(0.0, retry_holdoff_seconds)
        self._sleep = sleep

    def _with_retry(self, op: str, path: Path, action: Callable[[], Path]) -> Path:
        attempt = 0
        while True:
            attempt += 1
            try:
                return action()
            except FileNotFoundError:
                # 源文件不存在时重试没有意义。
                raise
            except OSError as exc:
                if attempt >= self._retry_count:
                    logger.error(
                        "file operation failed",
                        extra={
                            "event": "file.op.failed",
                            "op": op,
                            "path": str(path),
                            "retry": attempt,
                            "error_type": type(exc).__name__,
                            "error": str(exc),
                        },
                    )
                    raise
                logger.warning(
                    "file operation failed, retrying",
                    extra={
                        "event": "file.op.retrying",
                        "op": op,
                        "path": str(path),
                        "retry": attempt,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                self._sleep(self._retry_holdoff_seconds)

    def copy_file_with_retry(self, source: Path, target: Path, *, overwrite: bool = True) -> Path:
        """复制单个文件到目标路径，父目录不存在时自动创建。"""
        if not source.is_file():
            raise FileNotFoundError(f"source file not found: {source}")
        if target.exists() and not overwrite:
            raise FileExistsError(f"target file already exists: {target}")

        def _copy() -> Path:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
            return target

        return self._with_retry("copy_file", source, _copy)

    def create_directory_with_retry(self, path: Path) -> Path:
        def _create() -> Path:
            path.mkdir(parents=True, exist_ok=True)
            return path

        return self._with_retry("create_directory", path, _create)

    def delete_file_with_retry(self, path: Path) -> bool:
        """删除文件；文件本就不存在时视为成功，重试耗尽返回 False。"""
        def _delete() -> Path:
            path.unlink(missing_ok=True)
            return path

        try:
            self._with_retry("delete_file", path, _delete)
        except OSError:
            return False
        return True

    def move_file(self, source: Path, target: Path) -> Path:
        """移动文件；跨设备或被占用导致移动失败时改为复制。"""
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.move(str(source), str(target))
        except OSError as exc:
            logger.warning(
                "move failed, copying instead",
                extra={
                    "event": "file.move.fallback_copy",
                    "path": str(source),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            self.copy_file_with_retry(source, target)
        return target

    def copy_directory(self, source: Path, target: Path) -> Path:
        """整体复制目录树，目标已存在的同名文件被覆盖。"""
        if not source.is_dir():
            raise FileNotFoundError(f"source directory not found: {source}")

        def _copy_tree() -> Path:
            shutil.copytree(source, target, dirs_exist_ok=True)
            return target

        return self._with_retry("copy_directory", source, _copy_tree)

    def extract_archive(self, archive_path: Path, target_dir: Path) -> list[Path]:
        """解压 .zip 或 .gz 文件到目标目录，返回解出的文件列表。"""
        suffix = archive_path.suffix.lower()
        if suffix == ".zip":
            with zipfile.ZipFile(archive_path) as archive:
                target_root = target_dir.resolve()
                for member in archive.namelist():
                    # 拒绝指向目标目录之外的条目。
                    if not (target_root / member).resolve().is_relative_to(target_root):
                        raise zipfile.BadZipFile(f"unsafe entry in {archive_path.name}: {member}")
                archive.extractall(target_dir)
                return [target_dir / name for name in archive.namelist() if not name.endswith("/")]
        if suffix == ".gz":
            target = target_dir / archive_path.stem
            with gzip.open(archive_path, "rb") as src, target.open("wb") as dst:
                shutil.copyfileobj(src, dst, 1024 * 1024)
            return [target]
        raise ValueError(f"unsupported archive type: {archive_path.name}")

    @staticmethod
    def count_files(path: Path) -> int:
        if not path.exists():
            return 0
        return sum(1 for item in path.rglob("*") if item.is_file())
