"""Core 异常体系

存储层与业务服务共用的异常类型。渠道调用相关异常见 rentfinder.channels.exceptions。
"""


class RentFinderError(Exception):
    """Core 包基础异常"""


class InvalidTransitionError(RentFinderError):
    """状态机不允许的流转（包括从终态流出）"""

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(f"invalid task transition: {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class TaskNotFoundError(RentFinderError):
    """任务不存在"""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"task {task_id} does not exist")
        self.task_id = task_id


class LeadNotFoundError(RentFinderError):
    """线索不存在"""

    def __init__(self, lead_id: str) -> None:
        super().__init__(f"lead {lead_id} does not exist")
        self.lead_id = lead_id


class ComplianceDeniedError(RentFinderError):
    """合规闸门拒绝（仅用于创建任务时的预检查，调度路径不抛出）"""

    def __init__(self, decision) -> None:
        super().__init__(decision.reason or "denied by compliance policy")
        self.decision = decision


class InvalidPolicyError(RentFinderError):
    """组织策略配置无法解析（如联系时段为空）"""

    def __init__(self, organization_id: str, detail: str) -> None:
        super().__init__(f"invalid policy for organization {organization_id}: {detail}")
        self.organization_id = organization_id
        self.detail = detail
