"""Activity 模型 -- append-only 活动日志

运营人员通过活动日志与任务状态了解失败原因，原始异常不直接暴露给终端用户。
activity_id 使用 ULID 格式，时间有序。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field
from ulid import ULID

from ..timeutil import utcnow
from .enums import ActivityType, ActorType


class Activity(BaseModel):
    """活动日志条目"""

    activity_id: str = Field(description="唯一标识，ULID 格式，时间有序")
    ts: datetime = Field(description="时间戳")
    type: ActivityType = Field(description="活动类型")
    actor: ActorType = Field(default=ActorType.SYSTEM, description="操作者")
    organization_id: str | None = None
    lead_id: str | None = None
    task_id: str | None = None
    status: str = Field(default="success", description="success / failure / skipped")
    message: str = Field(default="", description="可读描述")
    payload: dict[str, Any] = Field(default_factory=dict, description="结构化 payload")
    execution_ms: int | None = Field(default=None, description="处理耗时（毫秒）")


def new_activity(
    activity_type: ActivityType,
    *,
    actor: ActorType = ActorType.SYSTEM,
    task=None,
    organization_id: str | None = None,
    lead_id: str | None = None,
    task_id: str | None = None,
    status: str = "success",
    message: str = "",
    payload: BaseModel | dict[str, Any] | None = None,
    execution_ms: int | None = None,
    ts: datetime | None = None,
) -> Activity:
    """构造活动日志条目

    传入 task 时自动带上 organization_id / lead_id / task_id。
    """
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return Activity(
        activity_id=str(ULID()),
        ts=ts or utcnow(),
        type=activity_type,
        actor=actor,
        organization_id=task.organization_id if task is not None else organization_id,
        lead_id=task.lead_id if task is not None else lead_id,
        task_id=task.task_id if task is not None else task_id,
        status=status,
        message=message,
        payload=payload or {},
        execution_ms=execution_ms,
    )
