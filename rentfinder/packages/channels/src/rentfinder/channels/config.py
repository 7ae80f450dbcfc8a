"""ChannelConfig -- 渠道配置加载

从环境变量加载渠道运行模式、供应商地址、进程级兜底凭证与 webhook 配置。
组织级凭证优先，未配置的项由此处的环境变量兜底。
"""

import os
from typing import Literal

import structlog
from pydantic import BaseModel, Field, SecretStr

from rentfinder.core.models.policy import OrganizationCredentials

log = structlog.get_logger()

_DISPATCH_MODES = ("live", "simulated")

# OrganizationCredentials 字段 -> 兜底环境变量
_CREDENTIAL_ENV = {
    "twilio_account_sid": "TWILIO_ACCOUNT_SID",
    "twilio_auth_token": "TWILIO_AUTH_TOKEN",
    "twilio_phone_number": "TWILIO_PHONE_NUMBER",
    "bland_api_key": "BLAND_API_KEY",
    "resend_api_key": "RESEND_API_KEY",
    "resend_from_email": "RESEND_FROM_EMAIL",
}
_SECRET_FIELDS = {"twilio_auth_token", "bland_api_key", "resend_api_key"}


class ChannelConfig(BaseModel):
    """Channel 包配置 -- 从环境变量加载

    环境变量:
        RENTFINDER_DISPATCH_MODE: 运行模式（live/simulated）
        RENTFINDER_BLAND_BASE_URL / RENTFINDER_TWILIO_BASE_URL / RENTFINDER_RESEND_BASE_URL
        RENTFINDER_WEBHOOK_BASE_URL: 对外可达的 gateway 地址，用于拼接回调 URL
        RENTFINDER_WEBHOOK_SECRET: webhook 共享密钥（X-Webhook-Secret）
        RENTFINDER_HTTP_TIMEOUT_S: 渠道 HTTP 客户端超时（秒，默认 30）
        TWILIO_* / BLAND_API_KEY / RESEND_*: 进程级兜底凭证
    """

    dispatch_mode: Literal["live", "simulated"] = Field(
        default="live",
        description="live 调用真实渠道；simulated 仅模拟发送，不计费",
    )
    bland_base_url: str = Field(default="https://api.bland.ai/v1")
    twilio_base_url: str = Field(default="https://api.twilio.com/2010-04-01")
    resend_base_url: str = Field(default="https://api.resend.com")

    webhook_base_url: str | None = Field(default=None, description="gateway 对外地址")
    webhook_secret: SecretStr | None = Field(default=None, description="webhook 共享密钥")
    http_timeout_s: float = Field(default=30.0, gt=0, description="HTTP 客户端超时（秒）")

    # 进程级兜底凭证
    twilio_account_sid: str | None = None
    twilio_auth_token: SecretStr | None = None
    twilio_phone_number: str | None = None
    bland_api_key: SecretStr | None = None
    resend_api_key: SecretStr | None = None
    resend_from_email: str | None = None

    def with_fallbacks(self, credentials: OrganizationCredentials) -> OrganizationCredentials:
        """组织凭证中未配置的项用进程级凭证补齐"""
        update = {}
        for name in _CREDENTIAL_ENV:
            if getattr(credentials, name) is None and getattr(self, name) is not None:
                update[name] = getattr(self, name)
        if not update:
            return credentials
        return credentials.model_copy(update=update)

    def voice_webhook_url(self) -> str | None:
        """语音外呼完成回调地址，未配置对外地址时返回 None"""
        if not self.webhook_base_url:
            return None
        return f"{self.webhook_base_url.rstrip('/')}/api/webhooks/bland"


def load_channel_config() -> ChannelConfig:
    """从环境变量加载 Channel 配置

    非法取值记录 warning 并使用默认值，不阻塞启动。

    Returns:
        ChannelConfig 实例
    """
    kwargs: dict = {}

    if val := os.environ.get("RENTFINDER_DISPATCH_MODE"):
        if val in _DISPATCH_MODES:
            kwargs["dispatch_mode"] = val
        else:
            log.warning(
                "invalid_dispatch_mode_config",
                env_var="RENTFINDER_DISPATCH_MODE",
                value=val,
                fallback="live",
            )

    if val := os.environ.get("RENTFINDER_BLAND_BASE_URL"):
        kwargs["bland_base_url"] = val

    if val := os.environ.get("RENTFINDER_TWILIO_BASE_URL"):
        kwargs["twilio_base_url"] = val

    if val := os.environ.get("RENTFINDER_RESEND_BASE_URL"):
        kwargs["resend_base_url"] = val

    if val := os.environ.get("RENTFINDER_WEBHOOK_BASE_URL"):
        kwargs["webhook_base_url"] = val

    if val := os.environ.get("RENTFINDER_WEBHOOK_SECRET"):
        kwargs["webhook_secret"] = SecretStr(val)

    if val := os.environ.get("RENTFINDER_HTTP_TIMEOUT_S"):
        try:
            kwargs["http_timeout_s"] = float(val)
        except ValueError:
            log.warning(
                "invalid_timeout_config",
                env_var="RENTFINDER_HTTP_TIMEOUT_S",
                value=val,
                fallback=30.0,
            )

    for field, env_var in _CREDENTIAL_ENV.items():
        if val := os.environ.get(env_var):
            kwargs[field] = SecretStr(val) if field in _SECRET_FIELDS else val

    return ChannelConfig(**kwargs)
