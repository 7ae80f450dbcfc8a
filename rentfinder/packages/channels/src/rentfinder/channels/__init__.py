"""RentFinder Channels -- 外呼渠道抽象层

packages/channels 的公开接口导出。
"""

from .base import BaseChannelAdapter, ChannelAdapter, classify_http_error

# 配置
from .config import ChannelConfig, load_channel_config
from .contact import normalize_email, normalize_phone

# 适配器
from .email import ResendEmailAdapter

# 异常
from .exceptions import (
    DispatchError,
    MissingContactInfoError,
    MissingContextFieldError,
    MissingCredentialsError,
    PermanentDispatchError,
    TransientDispatchError,
)

# 数据模型
from .models import CallStatusReport, DispatchOutcome, DispatchRequest
from .pricing import UNIT_PRICES, build_cost_record, price, voice_minutes
from .registry import AdapterRegistry, build_adapter_registry
from .simulated import SimulatedAdapter
from .sms import TwilioSmsAdapter
from .voice import BlandVoiceAdapter

__all__ = [
    "DispatchRequest",
    "DispatchOutcome",
    "CallStatusReport",
    "ChannelAdapter",
    "BaseChannelAdapter",
    "classify_http_error",
    "BlandVoiceAdapter",
    "TwilioSmsAdapter",
    "ResendEmailAdapter",
    "SimulatedAdapter",
    "AdapterRegistry",
    "build_adapter_registry",
    "ChannelConfig",
    "load_channel_config",
    "normalize_phone",
    "normalize_email",
    "UNIT_PRICES",
    "price",
    "voice_minutes",
    "build_cost_record",
    "DispatchError",
    "TransientDispatchError",
    "PermanentDispatchError",
    "MissingCredentialsError",
    "MissingContactInfoError",
    "MissingContextFieldError",
]
