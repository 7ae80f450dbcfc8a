"""AdapterRegistry -- 渠道适配器注册表

按 action_type 索引适配器。启动时根据 dispatch_mode 构建，运行期间不变。
"""

import httpx
import structlog

from rentfinder.core.models.enums import ActionType, FailureScope

from .base import ChannelAdapter
from .config import ChannelConfig
from .email import ResendEmailAdapter
from .exceptions import PermanentDispatchError
from .simulated import SimulatedAdapter
from .sms import TwilioSmsAdapter
from .voice import BlandVoiceAdapter

log = structlog.get_logger()


class AdapterRegistry:
    """action_type -> ChannelAdapter 映射"""

    def __init__(self, adapters: list[ChannelAdapter]) -> None:
        # 同一渠道重复注册时后者覆盖前者
        self._adapters: dict[ActionType, ChannelAdapter] = {}
        for adapter in adapters:
            self._adapters[adapter.action_type] = adapter

    def get(self, action_type: ActionType) -> ChannelAdapter:
        """查询渠道适配器

        Raises:
            PermanentDispatchError: 该渠道未注册（集成级故障）
        """
        adapter = self._adapters.get(action_type)
        if adapter is None:
            raise PermanentDispatchError(
                f"no adapter registered for {action_type.value}",
                scope=FailureScope.INTEGRATION,
            )
        return adapter

    def list_action_types(self) -> list[ActionType]:
        """已注册的渠道（按名称排序）"""
        return sorted(self._adapters)


def build_adapter_registry(
    config: ChannelConfig,
    http_client: httpx.AsyncClient,
) -> AdapterRegistry:
    """按运行模式构建注册表

    Args:
        config: 渠道配置
        http_client: 真实渠道共享的 HTTP 客户端

    Returns:
        AdapterRegistry 实例
    """
    if config.dispatch_mode == "simulated":
        adapters: list[ChannelAdapter] = [SimulatedAdapter(t) for t in ActionType]
    else:
        adapters = [
            BlandVoiceAdapter(http_client, config),
            TwilioSmsAdapter(http_client, config),
            ResendEmailAdapter(http_client, config),
        ]
    log.info(
        "adapter_registry_built",
        dispatch_mode=config.dispatch_mode,
        channels=[a.action_type.value for a in adapters],
    )
    return AdapterRegistry(adapters)
