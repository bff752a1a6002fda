"""Celery 应用：每个 worker 子进程串行运行作业步骤，关闭时回收共享资源。"""

from __future__ import annotations

import logging
import sys

from celery import Celery
from celery.signals import worker_process_shutdown

from stepmanager.application.container import shutdown_container_resources
from stepmanager.config import Settings, get_settings
from stepmanager.infra.logging.setup import configure_logging, shutdown_logging

STEP_QUEUE = "steps"
STEP_TASK_NAME = "stepmanager.worker.tasks.run_job_step_task"

logger = logging.getLogger(__name__)


def is_worker_process(argv: list[str]) -> bool:
    """命令行中出现独立的 worker 子命令时视为 worker 进程。"""
    return "worker" in (item.lower() for item in argv[1:])


def create_celery_app(settings: Settings) -> Celery:
    """按配置创建 Celery 应用。"""
    app = Celery("stepmanager", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        imports=("stepmanager.worker.tasks",),
        task_default_queue=STEP_QUEUE,
        task_routes={STEP_TASK_NAME: {"queue": STEP_QUEUE}},
        # 工作区与工具进程都按单步骤独占设计。
        worker_concurrency=1,
        worker_prefetch_multiplier=1,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_track_started=True,
        task_soft_time_limit=settings.job_soft_timeout_seconds,
        task_time_limit=settings.job_hard_timeout_seconds,
        broker_connection_retry_on_startup=True,
        task_always_eager=settings.celery_task_always_eager,
        task_eager_propagates=settings.celery_task_always_eager,
    )
    return app


settings = get_settings()
if is_worker_process(sys.argv):
    log_file = configure_logging(settings, process_role="worker")
    logger.info(
        "celery app configured",
        extra={
            "event": "celery.config.loaded",
            "external_service": "redis",
            "op": "worker",
            "path": str(log_file),
            "payload_preview": {
                "broker": settings.redis_url,
                "queue": STEP_QUEUE,
                "manager": settings.manager_name,
                "always_eager": settings.celery_task_always_eager,
            },
        },
    )

celery_app = create_celery_app(settings)


@worker_process_shutdown.connect
def _shutdown_worker_resources(**_: object) -> None:
    """Worker 进程退出时关闭状态通道、连接池与日志监听线程。"""
    shutdown_container_resources()
    shutdown_logging()
