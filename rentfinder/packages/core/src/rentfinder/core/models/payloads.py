"""Activity Payload 子类型

活动日志条目的结构化 payload 定义。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import TaskStatus


class TaskCreatedPayload(BaseModel):
    """TASK_CREATED payload"""

    agent_type: str
    action_type: str
    scheduled_for: datetime
    attempt_number: int
    max_attempts: int
    source: str = Field(default="system")


class ComplianceDeniedPayload(BaseModel):
    """COMPLIANCE_DENIED payload"""

    rule: str
    reason: str
    channel: str
    message_type: str
    local_time: datetime | None = None


class DispatchAcceptedPayload(BaseModel):
    """DISPATCH_ACCEPTED payload"""

    vendor: str
    external_ref: str
    is_async: bool
    attempt_number: int


class DispatchFailedPayload(BaseModel):
    """DISPATCH_FAILED / TASK_FAILED payload"""

    error_type: str = Field(description="异常类型名")
    error_message: str
    transient: bool = Field(default=False)
    failure_scope: str = Field(default="contact")
    attempt_number: int


class RetryScheduledPayload(BaseModel):
    """RETRY_SCHEDULED payload"""

    attempt_number: int = Field(description="下一次尝试的序号")
    next_scheduled_for: datetime
    last_error: str


class StateTransitionPayload(BaseModel):
    """状态流转 payload（TASK_COMPLETED / TASK_CANCELLED / TASK_REQUEUED 等）"""

    from_status: TaskStatus
    to_status: TaskStatus
    reason: str = Field(default="")


class CallCompletedPayload(BaseModel):
    """语音外呼完成 payload"""

    vendor_call_id: str | None
    call_status: str
    duration_seconds: int
    cost_recorded: bool
    source: str = Field(default="webhook", description="webhook / poll")


class WebhookUnmatchedPayload(BaseModel):
    """WEBHOOK_UNMATCHED payload"""

    vendor: str
    vendor_call_id: str | None = None
    claimed_task_id: str | None = None
    reason: str
    payload_preview: str = Field(default="")


class LeadControlPayload(BaseModel):
    """LEAD_PAUSED / LEAD_RESUMED payload"""

    actor_id: str
    reason: str = Field(default="")
    cancelled_task_ids: list[str] = Field(default_factory=list)


class FollowUpScheduledPayload(BaseModel):
    """FOLLOW_UP_SCHEDULED payload"""

    follow_up_task_id: str
    attempt_number: int
    scheduled_for: datetime
    previous_call_status: str


class BatchCompletedPayload(BaseModel):
    """BATCH_COMPLETED payload"""

    cycle_id: str
    claimed: int = 0
    completed: int = 0
    in_progress: int = 0
    retried: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: int = 0
    errors: int = 0
