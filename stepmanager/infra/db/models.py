"""数据库 ORM 模型定义：步骤状态、状态事件与工具版本表结构。"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy 声明式基类。"""
    pass


class StepTaskORM(Base):
    """作业步骤主表 ORM 模型，主键为 job_step。"""
    __tablename__ = "step_tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    job_id: Mapped[int] = mapped_column(Integer, index=True)
    step_number: Mapped[int] = mapped_column(Integer)
    tool_name: Mapped[str] = mapped_column(String(64))
    manager_name: Mapped[str] = mapped_column(String(128))
    phase: Mapped[str] = mapped_column(String(32), index=True)
    completion_status: Mapped[str] = mapped_column(String(32), index=True)
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    completion_message: Mapped[str | None] = mapped_column(Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class StepEventORM(Base):
    """步骤事件表 ORM 模型，记录阶段流转与状态上报历史。"""
    __tablename__ = "step_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    step_task_id: Mapped[str] = mapped_column(ForeignKey("step_tasks.id", ondelete="CASCADE"), index=True)
    phase: Mapped[str] = mapped_column(String(32))
    completion_status: Mapped[str] = mapped_column(String(32))
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    event_type: Mapped[str] = mapped_column(String(64))
    message: Mapped[str | None] = mapped_column(Text(), nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)


class ToolVersionORM(Base):
    """工具版本表 ORM 模型，每次调用尝试一行。"""
    __tablename__ = "tool_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, index=True)
    step_number: Mapped[int] = mapped_column(Integer)
    tool_name: Mapped[str] = mapped_column(String(64))
    version: Mapped[str] = mapped_column(Text())
    binaries: Mapped[list | None] = mapped_column(JSON, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
