"""Store Protocol 接口定义

定义 TaskStore、CostLedger、ActivityLog 等的抽象接口，
使用 Python Protocol 实现结构化子类型（duck typing），便于在测试中替换。
"""

from datetime import datetime
from typing import Any, Protocol

from ..models.activity import Activity
from ..models.enums import ActivityType, FailureScope, TaskStatus
from ..models.lead import Lead
from ..models.ledger import Communication, CostRecord, ExternalReference
from ..models.policy import OrganizationCredentials, OrganizationPolicy
from ..models.task import Task


class TaskStore(Protocol):
    """Task 存储接口"""

    async def create_task(self, task: Task) -> None:
        """创建任务记录"""
        ...

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        ...

    async def get_task_by_idempotency_key(self, key: str) -> Task | None:
        """根据创建幂等键查询任务"""
        ...

    async def list_tasks(
        self,
        status: str | None = None,
        lead_id: str | None = None,
        organization_id: str | None = None,
        failure_scope: FailureScope | str | None = None,
        limit: int = 200,
    ) -> list[Task]:
        """查询任务列表"""
        ...

    async def claim_due_tasks(
        self,
        now: datetime,
        limit: int,
        claim_token: str,
    ) -> list[Task]:
        """原子认领到期任务"""
        ...

    async def update_status(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        updated_at: datetime,
        **fields: Any,
    ) -> bool:
        """compare-and-swap 状态更新，状态不匹配返回 False"""
        ...

    async def cancel_open_tasks_for_lead(
        self,
        lead_id: str,
        reason: str,
        now: datetime,
    ) -> list[str]:
        """取消线索下 pending/claimed 任务"""
        ...

    async def list_in_progress(
        self,
        executed_before: datetime,
        limit: int = 100,
        after: tuple[datetime, str] | None = None,
    ) -> list[Task]:
        """查询等待完成回调的任务"""
        ...

    async def list_stale_claims(
        self,
        claimed_before: datetime,
        limit: int = 100,
    ) -> list[Task]:
        """查询认领后未推进的任务"""
        ...

    async def count_recent_contacts(self, lead_id: str, since: datetime) -> int:
        """统计时间窗内的外呼次数"""
        ...


class LeadStore(Protocol):
    """Lead 存储接口"""

    async def get_lead(self, lead_id: str) -> Lead | None:
        """根据 lead_id 查询线索"""
        ...

    async def set_human_control(
        self,
        lead_id: str,
        controlled: bool,
        now: datetime,
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> bool:
        """设置/清除人工接管标记"""
        ...


class PolicyStore(Protocol):
    """组织策略 / 凭证读取接口"""

    async def get_policy(self, organization_id: str) -> OrganizationPolicy:
        """查询组织策略（缺省返回默认策略）"""
        ...

    async def get_credentials(self, organization_id: str) -> OrganizationCredentials:
        """查询组织渠道凭证"""
        ...


class CostLedger(Protocol):
    """Cost Ledger 接口 -- append-only，按 (task_id, billable_event) 幂等"""

    async def record(self, cost: CostRecord) -> bool:
        """写入成本记录，重复时返回 False"""
        ...

    async def list_for_task(self, task_id: str) -> list[CostRecord]:
        """查询任务的成本记录"""
        ...


class CommunicationStore(Protocol):
    """通讯记录接口"""

    async def create(self, communication: Communication) -> None:
        """写入通讯记录"""
        ...

    async def list_for_task(self, task_id: str) -> list[Communication]:
        """查询任务的通讯记录"""
        ...

    async def get_by_external_id(self, task_id: str, external_id: str) -> Communication | None:
        """按渠道侧 ID 查询任务的通讯记录"""
        ...


class ExternalReferenceStore(Protocol):
    """外部引用接口"""

    async def put(self, ref: ExternalReference) -> bool:
        """写入外部引用"""
        ...

    async def get_by_vendor_call_id(
        self,
        vendor: str,
        vendor_call_id: str,
    ) -> ExternalReference | None:
        """按渠道调用 ID 回查"""
        ...


class ActivityLog(Protocol):
    """活动日志接口 -- append-only"""

    async def append(self, activity: Activity) -> None:
        """追加活动日志"""
        ...

    async def list_for_task(self, task_id: str) -> list[Activity]:
        """查询任务的活动日志"""
        ...

    async def list_by_type(self, activity_type: ActivityType, limit: int = 100) -> list[Activity]:
        """按类型查询活动日志"""
        ...
