"""ChannelAdapter 接口与 HTTP 调用基类

所有适配器遵循同一契约：
- dispatch(request) -> DispatchOutcome，失败抛 DispatchError 子类
- 同一任务同一次尝试使用相同的 Idempotency-Key
- 请求中携带关联 metadata，webhook 回传时可据此回查任务
"""

from typing import Any, Protocol

import httpx
import structlog

from rentfinder.core.models.enums import ActionType, FailureScope
from rentfinder.core.models.policy import OrganizationCredentials

from .config import ChannelConfig
from .exceptions import DispatchError, PermanentDispatchError, TransientDispatchError
from .models import CallStatusReport, DispatchOutcome, DispatchRequest

log = structlog.get_logger()

# 连接类异常（连接失败、超时、DNS 解析失败等），一律视为瞬时失败
_CONNECTION_ERROR_TYPES = (
    ConnectionError,
    OSError,
    TimeoutError,
    httpx.TransportError,
)

# 错误响应体截断长度，避免把整页 HTML 写进 failure_reason
_ERROR_BODY_PREVIEW = 200


def _is_connection_error(e: Exception) -> bool:
    """判断异常是否为连接类错误（渠道不可达）"""
    return isinstance(e, _CONNECTION_ERROR_TYPES)


def classify_http_error(vendor: str, status_code: int, body: str) -> DispatchError:
    """按 HTTP 状态码归类渠道错误

    - 429 / 5xx：瞬时
    - 401 / 403：凭证无效，集成级永久失败
    - 其余 4xx：永久失败
    """
    detail = body[:_ERROR_BODY_PREVIEW]
    message = f"{vendor} returned HTTP {status_code}: {detail}"
    if status_code == 429 or status_code >= 500:
        return TransientDispatchError(message, status_code=status_code)
    if status_code in (401, 403):
        return PermanentDispatchError(
            message, scope=FailureScope.INTEGRATION, status_code=status_code
        )
    return PermanentDispatchError(message, status_code=status_code)


class ChannelAdapter(Protocol):
    """渠道适配器接口"""

    action_type: ActionType
    is_async: bool

    async def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        """发起一次外呼"""
        ...

    async def fetch_status(
        self,
        external_ref: str,
        credentials: OrganizationCredentials,
    ) -> CallStatusReport | None:
        """主动查询异步调用状态，不支持时返回 None"""
        ...


class BaseChannelAdapter:
    """基于 httpx.AsyncClient 的适配器基类

    负责 HTTP 调用与错误归类，子类只关心请求体构造与响应解析。
    """

    action_type: ActionType
    is_async: bool = False
    vendor: str = ""

    def __init__(self, http_client: httpx.AsyncClient, config: ChannelConfig) -> None:
        """
        Args:
            http_client: 共享的 HTTP 客户端（由 gateway 生命周期管理）
            config: 渠道配置
        """
        self._http = http_client
        self._config = config

    async def fetch_status(
        self,
        external_ref: str,
        credentials: OrganizationCredentials,
    ) -> CallStatusReport | None:
        return None

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """发送请求并解析 JSON 响应

        Raises:
            TransientDispatchError: 连接失败 / 超时 / 429 / 5xx
            PermanentDispatchError: 其余非 2xx 响应或响应体不是 JSON 对象
        """
        try:
            response = await self._http.request(method, url, **kwargs)
        except Exception as e:
            if _is_connection_error(e):
                log.warning(
                    "channel_unreachable",
                    vendor=self.vendor,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise TransientDispatchError(
                    f"{self.vendor} unreachable: {type(e).__name__}"
                ) from e
            raise

        if response.is_error:
            error = classify_http_error(self.vendor, response.status_code, response.text)
            log.warning(
                "channel_http_error",
                vendor=self.vendor,
                status_code=response.status_code,
                transient=error.transient,
            )
            raise error

        try:
            data = response.json()
        except ValueError as e:
            raise PermanentDispatchError(f"{self.vendor} returned a non-JSON response") from e
        if not isinstance(data, dict):
            raise PermanentDispatchError(f"{self.vendor} returned an unexpected response")
        return data
