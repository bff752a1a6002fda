"""外部程序运行器：启动子进程、后台线程落盘控制台输出并由主循环监控。"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, TextIO

from stepmanager.domain.models import CancellationToken

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProgramResult:
    """子进程运行结果。"""
    exit_code: int | None
    aborted: bool
    timed_out: bool
    run_seconds: float

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.aborted and not self.timed_out


class ProgramRunner:
    """同步运行外部程序；stdout 与 stderr 合并后写入控制台输出文件。"""

    def __init__(
        self,
        *,
        monitor_interval_seconds: float = 0.5,
        abort_grace_seconds: float = 5.0,
        reader_join_seconds: float = 10.0,
    ) -> None:
        self._monitor_interval_seconds = max(0.01, monitor_interval_seconds)
        self._abort_grace_seconds = abort_grace_seconds
        self._reader_join_seconds = reader_join_seconds

    def run(
        self,
        program: Path,
        arguments: list[str],
        *,
        work_dir: Path,
        console_output_path: Path | None = None,
        on_output_line: Callable[[str], None] | None = None,
        loop_waiting: Callable[[], None] | None = None,
        cancel_token: CancellationToken | None = None,
        max_runtime_seconds: int = 0,
    ) -> ProgramResult:
        """运行程序直到退出、被取消或超过最长运行时间。
        参数:
        - on_output_line: 在读取线程中调用，只应做线程安全的投递。
        - loop_waiting: 在控制循环中每轮调用一次。
        返回:
        - ProgramResult；程序无法启动时抛出 OSError。
        """
        command = [str(program), *arguments]
        started = time.monotonic()
        console_handle: TextIO | None = None
        if console_output_path is not None:
            console_handle = console_output_path.open("w", encoding="utf-8")
            console_handle.write(subprocess.list2cmdline(command) + "\n\n")
            console_handle.flush()

        try:
            process = subprocess.Popen(
                command,
                cwd=str(work_dir),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError:
            if console_handle is not None:
                console_handle.close()
            raise

        logger.info(
            "program started",
            extra={"event": "process.started", "op": program.name, "payload_preview": command},
        )
        reader = threading.Thread(
            target=self._read_output,
            args=(process, console_handle, on_output_line),
            name=f"console-reader-{process.pid}",
            daemon=True,
        )
        reader.start()

        aborted = False
        timed_out = False
        try:
            while process.poll() is None:
                if loop_waiting is not None:
                    loop_waiting()
                if cancel_token is not None and cancel_token.cancelled:
                    aborted = True
                    self._abort(process, reason=cancel_token.reason)
                    break
                if max_runtime_seconds > 0 and time.monotonic() - started > max_runtime_seconds:
                    timed_out = True
                    self._abort(process, reason=f"exceeded {max_runtime_seconds} seconds")
                    break
                time.sleep(self._monitor_interval_seconds)
            exit_code = process.wait()
        finally:
            # 控制台文件由读取线程关闭；子孙进程仍持有输出管道时不在这里等待。
            reader.join(timeout=self._reader_join_seconds)
        if reader.is_alive():
            logger.warning(
                "console reader still attached after program exit",
                extra={"event": "process.reader.detached", "op": program.name},
            )
        if loop_waiting is not None:
            loop_waiting()

        run_seconds = time.monotonic() - started
        logger.info(
            "program exited",
            extra={
                "event": "process.exited",
                "op": program.name,
                "exit_code": exit_code,
                "duration_ms": round(run_seconds * 1000, 2),
                "payload_preview": {"aborted": aborted, "timed_out": timed_out},
            },
        )
        return ProgramResult(exit_code=exit_code, aborted=aborted, timed_out=timed_out, run_seconds=run_seconds)

    @staticmethod
    def _read_output(
        process: subprocess.Popen[str],
        console_handle: TextIO | None,
        on_output_line: Callable[[str], None] | None,
    ) -> None:
        stdout = process.stdout
        try:
            for line in stdout or ():
                if console_handle is not None:
                    console_handle.write(line)
                    console_handle.flush()
                if on_output_line is not None:
                    on_output_line(line.rstrip("\r\n"))
        finally:
            if stdout is not None:
                stdout.close()
            if console_handle is not None:
                console_handle.close()

    def _abort(self, process: subprocess.Popen[str], *, reason: str) -> None:
        logger.warning(
            "aborting program",
            extra={"event": "process.aborting", "op": str(process.pid), "error": reason},
        )
        process.terminate()
        try:
            process.wait(timeout=self._abort_grace_seconds)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
