"""异步任务定义：接收调度方下发的步骤参数并运行一次作业步骤。"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from stepmanager.application.container import get_job_step_runner
from stepmanager.domain.schemas import StepParams, StepResultPayload
from stepmanager.infra.logging.context import bind_log_context
from stepmanager.worker.celery_app import STEP_TASK_NAME, celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name=STEP_TASK_NAME)
def run_job_step_task(self, payload: dict[str, Any]) -> dict[str, Any]:
    """运行作业步骤；工具失败不重试，结果以完成状态返回给调度方。"""
    with bind_log_context(job_id=str(payload.get("job_id")), task_id=self.request.id):
        try:
            params = StepParams.model_validate(payload)
        except ValidationError as exc:
            logger.error(
                "invalid step payload",
                extra={
                    "event": "step.task.rejected",
                    "payload_preview": payload,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise
        logger.info(
            "worker task started",
            extra={"event": "step.task.started", "retry": self.request.retries, "payload_preview": payload},
        )
        try:
            outcome = get_job_step_runner().run(params)
        except Exception as exc:
            logger.exception(
                "worker task failed",
                extra={"event": "step.task.failed", "error_type": type(exc).__name__, "error": str(exc)},
            )
            raise
        result = StepResultPayload(
            job_id=params.job_id,
            step_number=params.step_number,
            status=outcome.status.value,
            phase=outcome.phase.value,
            message=outcome.message,
            destination=str(outcome.destination) if outcome.destination else None,
            archive_path=str(outcome.archive.archive_path) if outcome.archive else None,
        )
        logger.info(
            "worker task finished",
            extra={"event": "step.task.finished", "payload_preview": result.model_dump()},
        )
        return result.model_dump()
