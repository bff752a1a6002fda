"""控制台输出解析：提取进度百分比并捕获工具错误信息。"""

from __future__ import annotations

import re
from pathlib import Path

PROGRESS_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")
ERROR_LINE_RE = re.compile(r"^error\b", re.IGNORECASE)
SEPARATOR_PREFIX = "===="


class ConsoleOutputParser:
    """逐行解析工具控制台输出。

    以 error 开头的行出现后停止进度解析，其后的非空行原样拼入错误信息。
    """

    def __init__(self, tool_label: str) -> None:
        self._tool_label = tool_label
        self._progress: float | None = None
        self._error_lines: list[str] = []
        self._in_error = False

    @property
    def progress(self) -> float | None:
        return self._progress

    @property
    def has_error(self) -> bool:
        return self._in_error

    @property
    def error_message(self) -> str:
        if not self._in_error:
            return ""
        return f"Error running {self._tool_label}: " + "; ".join(self._error_lines)

    def feed(self, line: str) -> float | None:
        """解析一行输出，返回本行得到的新进度；没有新进度时返回 None。"""
        text = line.strip()
        if not text:
            return None
        if self._in_error:
            if not text.startswith(SEPARATOR_PREFIX):
                self._error_lines.append(text)
            return None
        if ERROR_LINE_RE.match(text):
            self._in_error = True
            self._error_lines.append(text)
            return None
        matches = PROGRESS_RE.findall(text)
        if not matches:
            return None
        value = float(matches[-1])
        if value > 100:
            return None
        self._progress = value
        return value

    def parse_file(self, path: Path) -> None:
        """解析已写完的控制台输出文件。"""
        if not path.exists():
            return
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                self.feed(line)
