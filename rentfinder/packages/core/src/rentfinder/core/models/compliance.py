"""合规判定结果 -- 每次评估产出，不作为实体持久化"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from .enums import ActionType, MessageType


class ComplianceRule(StrEnum):
    """命中的拒绝规则"""

    DO_NOT_CONTACT = "do_not_contact"
    NO_CONSENT = "no_consent"
    OUTSIDE_CONTACT_HOURS = "outside_contact_hours"
    FREQUENCY_CAP = "frequency_cap"


class ComplianceDecision(BaseModel):
    """合规闸门判定"""

    allowed: bool
    reason: str | None = Field(default=None, description="拒绝原因（可读）")
    rule: ComplianceRule | None = Field(default=None, description="命中的规则")
    channel: ActionType
    message_type: MessageType
    consulted_at: datetime
    local_time: datetime | None = Field(default=None, description="线索本地时间")
