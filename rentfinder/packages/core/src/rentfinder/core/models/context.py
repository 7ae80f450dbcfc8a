"""任务上下文 -- 按 agent_type 区分的 tagged union

每种智能体的上下文有各自的必填字段，在创建任务时校验，
畸形任务在入库前被拒绝，而不是在渠道适配器深处才失败。
"""

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .enums import AgentType


class _ContextBase(BaseModel):
    """所有上下文变体的公共字段"""

    # 允许上游附带额外字段（原样保存，供适配器或 webhook 参考）
    model_config = ConfigDict(extra="allow")

    source: str = Field(default="system", description="任务来源")
    trigger: str | None = Field(default=None, description="触发原因")


class ShowingConfirmationContext(_ContextBase):
    """看房确认"""

    agent_type: Literal["showing_confirmation"] = "showing_confirmation"
    showing_id: str = Field(min_length=1, description="看房预约 ID")
    property_id: str = Field(min_length=1, description="房源 ID")
    property_address: str | None = Field(default=None, description="房源地址")
    showing_time: datetime | None = Field(default=None, description="预约时间")


class NoShowFollowUpContext(_ContextBase):
    """爽约跟进"""

    agent_type: Literal["no_show_follow_up"] = "no_show_follow_up"
    showing_id: str = Field(min_length=1)
    property_id: str = Field(min_length=1)
    property_address: str | None = None


class PostShowingContext(_ContextBase):
    """看房后回访"""

    agent_type: Literal["post_showing"] = "post_showing"
    showing_id: str = Field(min_length=1)
    property_id: str = Field(min_length=1)
    property_address: str | None = None


class RecaptureContext(_ContextBase):
    """流失线索召回"""

    agent_type: Literal["recapture"] = "recapture"
    property_id: str | None = None
    property_address: str | None = None


class CampaignContext(_ContextBase):
    """营销活动触达"""

    agent_type: Literal["campaign"] = "campaign"
    campaign_id: str = Field(min_length=1, description="活动 ID")
    campaign_recipient_id: str = Field(min_length=1, description="活动收件人 ID")
    voice_script: str | None = Field(default=None, description="语音外呼脚本")
    message_body: str | None = Field(default=None, description="短信/邮件正文")
    subject: str | None = Field(default=None, description="邮件标题")


class WelcomeSequenceContext(_ContextBase):
    """新线索欢迎序列"""

    agent_type: Literal["welcome_sequence"] = "welcome_sequence"
    property_id: str | None = None
    property_address: str | None = None


TaskContext = Annotated[
    ShowingConfirmationContext
    | NoShowFollowUpContext
    | PostShowingContext
    | RecaptureContext
    | CampaignContext
    | WelcomeSequenceContext,
    Field(discriminator="agent_type"),
]

_context_adapter: TypeAdapter[TaskContext] = TypeAdapter(TaskContext)


def parse_context(agent_type: AgentType | str, data: dict[str, Any] | None) -> TaskContext:
    """按 agent_type 校验并构造上下文

    Args:
        agent_type: 任务所属智能体类型
        data: 原始上下文 dict（可不含 agent_type）

    Returns:
        对应的上下文变体实例

    Raises:
        pydantic.ValidationError: 缺少必填字段或 agent_type 未知
    """
    payload = dict(data or {})
    payload["agent_type"] = str(agent_type)
    return _context_adapter.validate_python(payload)


def context_from_json(raw: str) -> TaskContext:
    """从落库 JSON 还原上下文"""
    return _context_adapter.validate_json(raw)
