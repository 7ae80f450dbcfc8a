"""数据模型 -- DispatchRequest / DispatchOutcome / CallStatusReport

所有渠道适配器（Bland、Twilio、Resend、Simulated）统一接收 DispatchRequest，
返回 DispatchOutcome。
"""

from pydantic import BaseModel, Field

from rentfinder.core.models.context import CampaignContext
from rentfinder.core.models.enums import CostService
from rentfinder.core.models.lead import Lead
from rentfinder.core.models.policy import OrganizationCredentials
from rentfinder.core.models.task import Task


class DispatchRequest(BaseModel):
    """一次渠道调用的完整输入"""

    task: Task
    lead: Lead
    credentials: OrganizationCredentials = Field(description="已合并环境变量兜底的渠道凭证")
    webhook_url: str | None = Field(default=None, description="异步渠道的完成回调地址")

    @property
    def idempotency_key(self) -> str:
        """同一任务同一次尝试的幂等键，崩溃重放时保持不变"""
        return f"rentfinder-{self.task.task_id}-{self.task.attempt_number}"

    def correlation_metadata(self) -> dict[str, str]:
        """随渠道请求下发、由 webhook 回传的关联信息"""
        task = self.task
        metadata = {
            "organization_id": task.organization_id,
            "lead_id": task.lead_id,
            "task_id": task.task_id,
            "agent_type": task.agent_type.value,
            "attempt_number": str(task.attempt_number),
        }
        if isinstance(task.context, CampaignContext):
            metadata["campaign_id"] = task.context.campaign_id
            metadata["campaign_recipient_id"] = task.context.campaign_recipient_id
        return metadata


class DispatchOutcome(BaseModel):
    """渠道受理结果

    同步渠道（短信/邮件）受理即完成，携带计费用量；
    异步渠道（语音）仅返回外部调用 ID，成本在完成回调时记录。
    """

    accepted: bool = Field(default=True)
    is_async: bool = Field(description="是否需要等待完成回调")
    vendor: str = Field(description="渠道供应商：bland / twilio / resend / simulated")
    external_ref: str = Field(description="渠道侧调用 ID / 消息 ID")
    recipient: str = Field(description="实际发送到的电话或邮箱")
    body: str | None = Field(default=None, description="发送内容或外呼脚本")
    status: str = Field(default="sent", description="渠道侧返回状态")

    # 计费（仅同步渠道）
    service: CostService | None = Field(default=None, description="计费服务，None 表示不计费")
    usage_quantity: float = Field(default=0.0, ge=0.0)
    usage_unit: str = Field(default="")


class CallStatusReport(BaseModel):
    """主动轮询渠道得到的通话状态"""

    external_ref: str
    final: bool = Field(description="通话是否已结束")
    status: str = Field(default="unknown")
    duration_seconds: int = Field(default=0, ge=0)
    transcript: str | None = None
    summary: str | None = None
    recording_url: str | None = None
