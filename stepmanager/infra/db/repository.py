"""仓储实现：封装步骤状态、事件流与工具版本的持久化操作。"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from stepmanager.domain.models import StatusRecord, VersionRecord
from stepmanager.infra.db.models import StepEventORM, StepTaskORM, ToolVersionORM


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def step_task_id(job_id: int, step_number: int) -> str:
    return f"{job_id}_{step_number}"


class StepTaskRepository:
    """步骤仓储实现，封装数据库读写。"""
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_step(self, job_id: int, step_number: int) -> StepTaskORM | None:
        """按作业号与步骤号查询步骤。"""
        with self._session_factory() as db:
            return db.get(StepTaskORM, step_task_id(job_id, step_number))

    def upsert_status(self, record: StatusRecord, *, event_type: str = "step.status") -> None:
        """写入最新状态，并追加一条状态事件。"""
        task_id = step_task_id(record.job_id, record.step_number)
        with self._session_factory.begin() as db:
            task = db.get(StepTaskORM, task_id)
            if task is None:
                task = StepTaskORM(
                    id=task_id,
                    job_id=record.job_id,
                    step_number=record.step_number,
                    tool_name=record.tool_name,
                    manager_name=record.manager_name,
                    phase=record.phase.value,
                    completion_status=record.status.value,
                    progress=record.progress,
                )
            task.phase = record.phase.value
            task.completion_status = record.status.value
            task.progress = record.progress
            task.completion_message = record.message or None
            task.updated_at = utcnow()
            db.add(task)
            db.flush()
            db.add(
                StepEventORM(
                    step_task_id=task_id,
                    phase=record.phase.value,
                    completion_status=record.status.value,
                    progress=record.progress,
                    event_type=event_type,
                    message=record.message or None,
                    payload={"tool_progress": record.tool_progress} if record.tool_progress is not None else None,
                )
            )

    def list_events(self, job_id: int, step_number: int, after_id: int = 0, limit: int = 200) -> list[StepEventORM]:
        """按游标分页查询事件流。"""
        with self._session_factory() as db:
            stmt = (
                select(StepEventORM)
                .where(StepEventORM.step_task_id == step_task_id(job_id, step_number), StepEventORM.id > after_id)
                .order_by(StepEventORM.id.asc())
                .limit(limit)
            )
            return list(db.execute(stmt).scalars().all())

    def record_tool_version(self, job_id: int, step_number: int, record: VersionRecord) -> ToolVersionORM:
        """写入一条工具版本记录。"""
        with self._session_factory.begin() as db:
            row = ToolVersionORM(
                job_id=job_id,
                step_number=step_number,
                tool_name=record.tool_name,
                version=record.version,
                binaries=list(record.binaries),
                recorded_at=record.recorded_at,
            )
            db.add(row)
            db.flush()
            return row

    def list_tool_versions(self, job_id: int, step_number: int) -> list[ToolVersionORM]:
        with self._session_factory() as db:
            stmt = (
                select(ToolVersionORM)
                .where(ToolVersionORM.job_id == job_id, ToolVersionORM.step_number == step_number)
                .order_by(ToolVersionORM.id.asc())
            )
            return list(db.execute(stmt).scalars().all())
