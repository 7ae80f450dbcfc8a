"""Task Domain Model

一条待执行的外呼动作（电话/短信/邮件），归属于单个线索。
任务不会被删除，只会流转到终态，保留审计轨迹。
"""

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from .context import TaskContext
from .enums import (
    ActionType,
    AgentType,
    FailureKind,
    FailureScope,
    MessageType,
    TaskStatus,
    message_type_for,
)


class Task(BaseModel):
    """外呼任务数据模型

    attempt_number 从 1 开始，任何时刻不超过 max_attempts。
    终态（completed/failed/cancelled）的任务不可再修改。
    """

    task_id: str = Field(description="唯一标识，ULID 格式")
    organization_id: str = Field(description="所属组织 ID")
    lead_id: str = Field(description="所属线索 ID")

    agent_type: AgentType = Field(description="拥有该任务的智能体")
    action_type: ActionType = Field(description="外呼渠道")

    status: TaskStatus = Field(default=TaskStatus.PENDING, description="当前状态")
    scheduled_for: datetime = Field(description="最早可执行时间")
    created_at: datetime = Field(description="创建时间")
    updated_at: datetime = Field(description="更新时间")
    claimed_at: datetime | None = Field(default=None, description="被调度器认领时间")
    executed_at: datetime | None = Field(default=None, description="开始调用渠道时间")
    completed_at: datetime | None = Field(default=None, description="进入终态时间")

    attempt_number: int = Field(default=1, ge=1, description="当前尝试次数")
    max_attempts: int = Field(default=3, ge=1, le=10, description="最大尝试次数")

    context: TaskContext = Field(description="按 agent_type 区分的上下文")

    external_ref: str | None = Field(default=None, description="渠道侧调用 ID")
    claim_token: str | None = Field(default=None, description="认领批次标识")
    idempotency_key: str | None = Field(default=None, description="创建幂等键")
    result_communication_id: str | None = Field(default=None, description="结果通讯记录 ID")

    failure_reason: str | None = Field(default=None, description="失败原因（可读）")
    failure_kind: FailureKind | None = Field(default=None, description="失败分类")
    failure_scope: FailureScope | None = Field(default=None, description="失败影响范围")
    cancel_reason: str | None = Field(default=None, description="取消原因")

    @model_validator(mode="after")
    def _check_attempts(self) -> "Task":
        if self.attempt_number > self.max_attempts:
            raise ValueError(
                f"attempt_number {self.attempt_number} exceeds max_attempts {self.max_attempts}"
            )
        if self.context.agent_type != self.agent_type:
            raise ValueError("context agent_type does not match task agent_type")
        return self

    @property
    def message_type(self) -> MessageType:
        return message_type_for(self.agent_type)

    @property
    def has_attempts_left(self) -> bool:
        return self.attempt_number < self.max_attempts
