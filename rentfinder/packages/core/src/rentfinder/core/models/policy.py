"""组织级策略与渠道凭证 -- 调度核心只读取的外部配置"""

from datetime import timedelta

from pydantic import BaseModel, Field, SecretStr, model_validator

from .enums import BackoffStrategy
from .lead import ContactWindow


class OrganizationPolicy(BaseModel):
    """组织级外呼策略，缺失时使用默认值"""

    organization_id: str
    timezone: str = Field(default="America/New_York", description="组织默认时区")
    contact_window_start_hour: int = Field(default=8, ge=0, le=23)
    contact_window_end_hour: int = Field(default=21, ge=1, le=24)
    frequency_cap: int = Field(default=3, ge=1, description="时间窗内最多外呼次数")
    frequency_window_hours: int = Field(default=24, ge=1)
    max_attempts: int = Field(default=3, ge=1, le=10)
    retry_backoff_minutes: int = Field(default=15, ge=0)
    backoff_strategy: BackoffStrategy = Field(default=BackoffStrategy.LINEAR)
    max_backoff_minutes: int = Field(default=24 * 60, ge=1)
    stuck_task_grace_minutes: int = Field(default=60, ge=1, description="等待 webhook 的宽限期")
    follow_up_enabled: bool = Field(default=True, description="未接通时是否自动安排跟进")

    @model_validator(mode="after")
    def _check_contact_window(self) -> "OrganizationPolicy":
        if self.contact_window_start_hour == self.contact_window_end_hour:
            raise ValueError("contact window must not be empty")
        return self

    @property
    def contact_window(self) -> ContactWindow:
        return ContactWindow(
            start_hour=self.contact_window_start_hour,
            end_hour=self.contact_window_end_hour,
        )

    @property
    def stuck_task_grace(self) -> timedelta:
        return timedelta(minutes=self.stuck_task_grace_minutes)

    def backoff_delay(self, attempt_number: int) -> timedelta:
        """第 attempt_number 次尝试失败后，距下一次尝试的等待时间

        linear: base * attempt；fixed: base；exponential: base * 2^(attempt-1)。
        结果不超过 max_backoff_minutes。
        """
        base = self.retry_backoff_minutes
        if self.backoff_strategy == BackoffStrategy.FIXED:
            minutes = base
        elif self.backoff_strategy == BackoffStrategy.EXPONENTIAL:
            minutes = base * (2 ** max(attempt_number - 1, 0))
        else:
            minutes = base * max(attempt_number, 1)
        return timedelta(minutes=min(minutes, self.max_backoff_minutes))


class OrganizationCredentials(BaseModel):
    """组织级渠道凭证，未配置的项由进程级环境变量兜底"""

    organization_id: str
    twilio_account_sid: str | None = None
    twilio_auth_token: SecretStr | None = None
    twilio_phone_number: str | None = None
    bland_api_key: SecretStr | None = None
    resend_api_key: SecretStr | None = None
    resend_from_email: str | None = None
