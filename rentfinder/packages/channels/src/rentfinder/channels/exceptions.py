"""Channel 异常体系

渠道调用失败统一归类为 DispatchError：
- transient=True：可重试（连接失败、超时、HTTP 429/5xx）
- transient=False：永久失败（HTTP 4xx、凭证缺失、联系方式缺失、上下文缺字段）

scope 区分"这个联系人失败"与"整个集成配置有误"，便于运营定位。
"""

from rentfinder.core.models.enums import FailureScope


class DispatchError(Exception):
    """Channel 包基础异常"""

    def __init__(
        self,
        message: str,
        transient: bool = False,
        scope: FailureScope = FailureScope.CONTACT,
        status_code: int | None = None,
    ) -> None:
        """
        Args:
            message: 错误描述（写入 task.failure_reason，面向运营）
            transient: 是否可通过重试恢复
            scope: 失败影响范围
            status_code: 渠道侧 HTTP 状态码（如有）
        """
        super().__init__(message)
        self.transient = transient
        self.scope = scope
        self.status_code = status_code


class TransientDispatchError(DispatchError):
    """瞬时失败：连接失败、超时、限流、渠道 5xx"""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, transient=True, status_code=status_code)


class PermanentDispatchError(DispatchError):
    """永久失败：重试不会改变结果"""

    def __init__(
        self,
        message: str,
        scope: FailureScope = FailureScope.CONTACT,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, transient=False, scope=scope, status_code=status_code)


class MissingCredentialsError(PermanentDispatchError):
    """组织未配置渠道凭证（集成级故障）"""

    def __init__(self, vendor: str, field: str) -> None:
        super().__init__(
            f"{vendor} credentials not configured ({field})",
            scope=FailureScope.INTEGRATION,
        )
        self.vendor = vendor
        self.field = field


class MissingContactInfoError(PermanentDispatchError):
    """线索缺少该渠道所需的联系方式"""

    def __init__(self, channel: str, field: str) -> None:
        super().__init__(f"lead has no {field} for {channel}")
        self.channel = channel
        self.field = field


class MissingContextFieldError(PermanentDispatchError):
    """任务上下文缺少渠道所需字段"""

    def __init__(self, agent_type: str, field: str) -> None:
        super().__init__(f"{agent_type} task context is missing {field}")
        self.agent_type = agent_type
        self.field = field
