"""成本账本、通讯记录与渠道外部引用模型"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import ActionType, CostService


class CostRecord(BaseModel):
    """成本记录 -- append-only，(task_id, billable_event) 唯一"""

    cost_id: str = Field(description="唯一标识，ULID 格式")
    organization_id: str
    service: CostService
    usage_quantity: float = Field(ge=0)
    usage_unit: str = Field(description="minutes / messages / emails")
    unit_cost: float = Field(ge=0)
    total_cost: float = Field(ge=0)
    task_id: str
    lead_id: str | None = None
    communication_id: str | None = None
    billable_event: str = Field(description="计费事件键，同一任务内唯一")
    recorded_at: datetime


class Communication(BaseModel):
    """通讯/通话记录 -- 一次外呼尝试的持久证据，恰好归属一个任务"""

    communication_id: str
    organization_id: str
    lead_id: str
    task_id: str
    channel: ActionType
    direction: str = Field(default="outbound")
    recipient: str
    status: str = Field(description="渠道侧结果状态")
    external_id: str | None = None
    body: str | None = None
    duration_seconds: int = Field(default=0, ge=0)
    transcript: str | None = None
    summary: str | None = None
    recording_url: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    created_at: datetime


class ExternalReference(BaseModel):
    """任务与渠道侧调用 ID 的关联，webhook 到达时据此回查任务"""

    task_id: str
    vendor: str = Field(description="渠道供应商，如 bland / twilio / resend")
    vendor_call_id: str
    created_at: datetime
