"""步骤输入契约：调度方下发的作业步骤参数模型。"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class StepParams(BaseModel):
    """单个作业步骤的输入参数。"""
    job_id: int = Field(gt=0)
    step_number: int = Field(ge=1)
    tool_name: str = Field(min_length=1)
    dataset_name: str = ""
    dataset_directory_name: str | None = None
    dataset_storage_path: str | None = None
    transfer_directory_path: str | None = None
    output_directory_name: str | None = None
    working_directory: str | None = None
    data_package_id: int = 0
    debug_level: int | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class StepResultPayload(BaseModel):
    """worker 任务返回给调度方的结果。"""
    job_id: int
    step_number: int
    status: str
    phase: str
    message: str
    destination: str | None = None
    archive_path: str | None = None
