"""状态上报通道：文件、HTTP、数据库以及组合分发实现。"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Protocol

import httpx

from stepmanager.domain.models import StatusRecord
from stepmanager.infra.db.repository import StepTaskRepository

logger = logging.getLogger(__name__)


class StatusSink(Protocol):
    """状态接收方协议。"""

    def emit(self, record: StatusRecord) -> None:
        ...


class JsonStatusFileSink:
    """把最新状态整体写入 JSON 文件，先写临时文件再替换。"""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, record: StatusRecord) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        tmp_path.write_text(json.dumps(record.to_dict(), ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp_path, self._path)


class HttpStatusSink:
    """通过 HTTP 把状态推送到外部状态服务。"""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 10,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._closed = False
        self._client = httpx.Client(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    def emit(self, record: StatusRecord) -> None:
        if self._closed:
            raise RuntimeError("HttpStatusSink is already closed")
        started = time.perf_counter()
        try:
            response = self._client.post("/status", json=record.to_dict())
            response.raise_for_status()
        except Exception as exc:
            status_code = None
            if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
                status_code = exc.response.status_code
            logger.error(
                "status request failed",
                extra={
                    "event": "status.http.failed",
                    "external_service": "status-service",
                    "op": "status.post",
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "status_code": status_code,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise

    def close(self) -> None:
        """关闭底层 HTTP 客户端连接池。"""
        if self._closed:
            return
        self._client.close()
        self._closed = True


class RepositoryStatusSink:
    """把状态写入步骤仓储。"""

    def __init__(self, repository: StepTaskRepository) -> None:
        self._repository = repository

    def emit(self, record: StatusRecord) -> None:
        self._repository.upsert_status(record)


class MemoryStatusSink:
    """在内存中保留全部状态记录。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.records: list[StatusRecord] = []

    def emit(self, record: StatusRecord) -> None:
        with self._lock:
            self.records.append(record)


class CompositeStatusSink:
    """依次分发到多个接收方；单个接收方失败只记录日志。"""

    def __init__(self, sinks: list[StatusSink]) -> None:
        self._sinks = list(sinks)

    @property
    def sinks(self) -> list[StatusSink]:
        return list(self._sinks)

    def emit(self, record: StatusRecord) -> None:
        for sink in self._sinks:
            try:
                sink.emit(record)
            except Exception as exc:
                logger.warning(
                    "status sink failed",
                    extra={
                        "event": "status.sink.failed",
                        "op": type(sink).__name__,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )

    def close(self) -> None:
        for sink in self._sinks:
            close = getattr(sink, "close", None)
            if callable(close):
                close()
