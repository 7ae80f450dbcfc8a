"""Lead 模型 -- 调度核心只读取，不负责维护

合规闸门依赖其中的同意记录、禁止联系标记与偏好联系时段；
人工接管标记由 Human-Override Controller 写入。
"""

from datetime import datetime

from pydantic import BaseModel, Field, model_validator


class ChannelConsent(BaseModel):
    """单渠道同意记录"""

    granted: bool = Field(default=False, description="是否授予同意")
    granted_at: datetime | None = Field(default=None, description="授予时间")
    revoked_at: datetime | None = Field(default=None, description="撤回时间")

    @property
    def is_active(self) -> bool:
        """授予且未在授予之后撤回"""
        if not self.granted:
            return False
        if self.revoked_at is None:
            return True
        if self.granted_at is None:
            return False
        return self.granted_at > self.revoked_at


class ContactWindow(BaseModel):
    """联系时段（本地小时，左闭右开；start > end 表示跨午夜）"""

    start_hour: int = Field(ge=0, le=23)
    end_hour: int = Field(ge=1, le=24)

    @model_validator(mode="after")
    def _check_not_empty(self) -> "ContactWindow":
        if self.start_hour == self.end_hour:
            raise ValueError("contact window must not be empty")
        return self

    def contains(self, hour: int) -> bool:
        if self.start_hour < self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour


class Lead(BaseModel):
    """潜在租客线索"""

    lead_id: str
    organization_id: str
    full_name: str = Field(default="")
    phone: str | None = Field(default=None)
    email: str | None = Field(default=None)
    timezone: str | None = Field(default=None, description="IANA 时区名，缺省使用组织时区")

    sms_consent: ChannelConsent = Field(default_factory=ChannelConsent)
    call_consent: ChannelConsent = Field(default_factory=ChannelConsent)
    email_consent: ChannelConsent = Field(
        default_factory=lambda: ChannelConsent(granted=True),
        description="邮件默认可发，仅在退订后撤回",
    )
    do_not_contact: bool = Field(default=False, description="全局禁止联系")
    preferred_contact_window: ContactWindow | None = Field(default=None)

    is_human_controlled: bool = Field(default=False, description="是否处于人工接管")
    human_controlled_at: datetime | None = None
    human_controlled_by: str | None = None
    human_control_reason: str | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None
