"""工作区管理：为单个作业步骤创建独占目录，并维护打包过滤与上游清理清单。"""

from __future__ import annotations

import hashlib
import logging
import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

WORKDIR_FILE_INFO_NAME = "_WorkDir_File_Info_.tsv"
VIM_SWAP_RE = re.compile(r"^\..+\.sw[a-p]$", re.IGNORECASE)
FILE_INFO_DATE_FORMAT = "%Y-%m-%d %I:%M:%S %p"


def sha256_file(path: Path) -> str:
    """流式计算文件 SHA-256 摘要。"""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        # 分块读取大文件，避免一次性加载导致内存峰值过高。
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def has_unsafe_characters(name: str) -> bool:
    """文件名包含控制字符或非 ASCII 字符时返回 True。"""
    return any(ord(char) <= 31 or ord(char) >= 128 for char in name)


@dataclass(slots=True)
class WorkingFileInfo:
    """工作区文件快照条目。"""
    relative_path: str
    size_bytes: int
    modified_at: datetime

    @property
    def subdirectory(self) -> str:
        parent = Path(self.relative_path).parent
        return "" if str(parent) == "." else parent.as_posix()


class WorkingArea:
    """单个作业步骤独占的工作目录。"""

    def __init__(self, path: Path, *, results_directory_name: str = "Results") -> None:
        self.path = path
        self.results_directory_name = results_directory_name
        self._files_to_skip: set[str] = set()
        self._extensions_to_skip: set[str] = set()
        self._files_to_keep: set[str] = set()
        self._upstream_deletions: list[Path] = []
        # 结果目录已移出但交付未确认时记录实际落点。
        self.partial_delivery: Path | None = None

    @property
    def results_path(self) -> Path:
        return self.path / self.results_directory_name

    @property
    def files_to_skip(self) -> frozenset[str]:
        return frozenset(self._files_to_skip)

    @property
    def files_to_delete_upstream(self) -> tuple[Path, ...]:
        return tuple(self._upstream_deletions)

    def skip_file(self, name: str) -> None:
        """登记不进入结果目录的文件名，大小写不敏感。"""
        self._files_to_skip.add(Path(name).name.lower())

    def skip_extension(self, extension: str) -> None:
        """登记不进入结果目录的扩展名或文件名后缀，例如 .tmp 或 _temp.txt。"""
        self._extensions_to_skip.add(extension.lower())

    def keep_file(self, name: str) -> None:
        """登记必须进入结果目录的文件名，优先于跳过规则。"""
        self._files_to_keep.add(Path(name).name.lower())

    def mark_for_upstream_deletion(self, source: Path) -> None:
        if source not in self._upstream_deletions:
            self._upstream_deletions.append(source)

    def should_package(self, name: str) -> bool:
        """判断文件名是否应进入结果目录。"""
        lowered = name.lower()
        if has_unsafe_characters(name) or VIM_SWAP_RE.match(name):
            return False
        if lowered in self._files_to_keep:
            return True
        if lowered in self._files_to_skip:
            return False
        return not any(lowered.endswith(ext) for ext in self._extensions_to_skip)

    def snapshot(self) -> list[WorkingFileInfo]:
        """列出工作区内全部文件，按相对路径排序。"""
        if not self.path.exists():
            return []
        entries: list[WorkingFileInfo] = []
        for item in sorted(self.path.rglob("*")):
            if not item.is_file():
                continue
            stat = item.stat()
            entries.append(
                WorkingFileInfo(
                    relative_path=item.relative_to(self.path).as_posix(),
                    size_bytes=stat.st_size,
                    modified_at=datetime.fromtimestamp(stat.st_mtime),
                )
            )
        return entries

    def write_file_info(self, file_name: str = WORKDIR_FILE_INFO_NAME) -> Path:
        """把工作区文件清单写入制表符分隔文件，用于失败排查。"""
        entries = [item for item in self.snapshot() if item.relative_path != file_name]
        lines = ["Date\tSize\tFile\tSubdirectory"]
        for entry in entries:
            lines.append(
                "\t".join(
                    (
                        entry.modified_at.strftime(FILE_INFO_DATE_FORMAT),
                        str(entry.size_bytes),
                        Path(entry.relative_path).name,
                        entry.subdirectory,
                    )
                )
            )
        target = self.path / file_name
        target.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return target

    def is_empty(self) -> bool:
        return not self.path.exists() or not any(self.path.iterdir())

    def destroy(self) -> None:
        """删除整个工作目录。"""
        if self.path.exists():
            shutil.rmtree(self.path)
            logger.info("working area removed", extra={"event": "workarea.destroyed", "path": str(self.path)})


class WorkingAreaManager:
    """工作区管理器，负责在工作根目录下分配步骤目录。"""

    def __init__(self, work_dir_root: Path, *, results_directory_name: str = "Results") -> None:
        self._work_dir_root = work_dir_root
        self._results_directory_name = results_directory_name

    def working_dir(self, job_id: int, step_number: int) -> Path:
        return self._work_dir_root / f"Job{job_id}_Step{step_number}"

    def create(self, job_id: int, step_number: int, override: Path | None = None) -> WorkingArea:
        """创建步骤工作区；目录已存在且非空时先清空。"""
        path = override or self.working_dir(job_id, step_number)
        if path.exists() and any(path.iterdir()):
            # 上一次尝试的残留文件会污染打包结果。
            logger.warning(
                "working area not empty, purging",
                extra={"event": "workarea.purged", "path": str(path)},
            )
            for item in path.iterdir():
                if item.is_dir() and not item.is_symlink():
                    shutil.rmtree(item)
                else:
                    item.unlink()
        path.mkdir(parents=True, exist_ok=True)
        return WorkingArea(path, results_directory_name=self._results_directory_name)
