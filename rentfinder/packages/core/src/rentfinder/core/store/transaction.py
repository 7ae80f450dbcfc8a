"""原子事务封装

需要一起落盘的写操作（状态 CAS + 通讯记录 + 外部引用 + 成本 + 活动日志）
在同一 SQLite 事务内提交，失败时整体回滚。
所有函数通过 StoreGroup.transaction() 获取写锁，同一连接上的并发协程不会交错提交。
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any

from ..models.activity import Activity
from ..models.enums import TaskStatus
from ..models.lead import Lead
from ..models.ledger import Communication, CostRecord, ExternalReference
from ..models.task import Task

if TYPE_CHECKING:
    from . import StoreGroup


async def claim_due_tasks(
    store_group: "StoreGroup",
    now: datetime,
    limit: int,
    claim_token: str,
) -> list[Task]:
    """认领到期任务并提交

    Returns:
        本次认领成功的任务（status=claimed）
    """
    async with store_group.transaction():
        return await store_group.task_store.claim_due_tasks(now, limit, claim_token)


async def create_task(
    store_group: "StoreGroup",
    task: Task,
    *activities: Activity,
) -> None:
    """单事务写入任务与初始活动日志（TASK_CREATED 等）

    Raises:
        aiosqlite.IntegrityError: idempotency_key 冲突或线索不存在
    """
    async with store_group.transaction():
        await store_group.task_store.create_task(task)
        for activity in activities:
            await store_group.activity_log.append(activity)


async def transition_task(
    store_group: "StoreGroup",
    task_id: str,
    from_status: TaskStatus,
    to_status: TaskStatus,
    now: datetime,
    activity: Activity | None = None,
    **fields: Any,
) -> bool:
    """CAS 状态流转 + 活动日志

    活动日志仅在 CAS 成功时写入。

    Returns:
        True 如果流转成功
    """
    async with store_group.transaction():
        ok = await store_group.task_store.update_status(
            task_id, from_status, to_status, now, **fields
        )
        if ok and activity is not None:
            await store_group.activity_log.append(activity)
    return ok


async def complete_sync_dispatch(
    store_group: "StoreGroup",
    task: Task,
    now: datetime,
    communication: Communication,
    external_ref: ExternalReference,
    cost: CostRecord | None,
    activity: Activity,
) -> tuple[bool, bool]:
    """同步渠道调用成功：claimed -> completed，同时写通讯记录、外部引用与成本

    渠道侧副作用已经发生，即使 CAS 失败（如人工接管并发取消），
    通讯记录与成本仍然落盘，保留证据。

    Returns:
        (transitioned, cost_recorded)
    """
    async with store_group.transaction():
        ok = await store_group.task_store.update_status(
            task.task_id,
            TaskStatus.CLAIMED,
            TaskStatus.COMPLETED,
            now,
            executed_at=now,
            completed_at=now,
            external_ref=external_ref.vendor_call_id,
            result_communication_id=communication.communication_id,
            failure_reason=None,
            failure_kind=None,
            failure_scope=None,
        )
        await store_group.communication_store.create(communication)
        await store_group.external_ref_store.put(external_ref)
        cost_recorded = False
        if cost is not None:
            cost_recorded = await store_group.cost_ledger.record(cost)
        await store_group.activity_log.append(activity)
    return ok, cost_recorded


async def mark_dispatched_async(
    store_group: "StoreGroup",
    task: Task,
    now: datetime,
    external_ref: ExternalReference,
    activity: Activity,
) -> bool:
    """异步渠道已受理：claimed -> in_progress，写外部引用，不记成本

    外部引用无论 CAS 是否成功都写入，迟到的 webhook 仍能关联到任务。

    Returns:
        True 如果流转成功
    """
    async with store_group.transaction():
        ok = await store_group.task_store.update_status(
            task.task_id,
            TaskStatus.CLAIMED,
            TaskStatus.IN_PROGRESS,
            now,
            executed_at=now,
            external_ref=external_ref.vendor_call_id,
            failure_reason=None,
            failure_kind=None,
            failure_scope=None,
        )
        await store_group.external_ref_store.put(external_ref)
        await store_group.activity_log.append(activity)
    return ok


async def finalize_call(
    store_group: "StoreGroup",
    task: Task,
    to_status: TaskStatus,
    now: datetime,
    communication: Communication,
    cost: CostRecord | None,
    activity: Activity,
    **fields: Any,
) -> tuple[bool, bool]:
    """异步外呼完成：in_progress -> completed|failed + 通话记录 + 成本

    CAS 失败（重复投递、已被超时回收）时不写入任何内容。

    Returns:
        (transitioned, cost_recorded)
    """
    async with store_group.transaction():
        ok = await store_group.task_store.update_status(
            task.task_id,
            TaskStatus.IN_PROGRESS,
            to_status,
            now,
            completed_at=now,
            result_communication_id=communication.communication_id,
            **fields,
        )
        if not ok:
            return False, False
        await store_group.communication_store.create(communication)
        cost_recorded = False
        if cost is not None:
            cost_recorded = await store_group.cost_ledger.record(cost)
        await store_group.activity_log.append(activity)
    return True, cost_recorded


async def record_call_evidence(
    store_group: "StoreGroup",
    communication: Communication,
    cost: CostRecord | None,
    activity: Activity,
) -> tuple[bool, bool]:
    """已取消任务上实际发生的外呼：只写通话记录与成本，不改任务状态

    同一渠道调用 ID 的通话记录已存在时不写入任何内容。

    Returns:
        (recorded, cost_recorded)
    """
    async with store_group.transaction():
        if communication.external_id is not None:
            existing = await store_group.communication_store.get_by_external_id(
                communication.task_id, communication.external_id
            )
            if existing is not None:
                return False, False
        await store_group.communication_store.create(communication)
        cost_recorded = False
        if cost is not None:
            cost_recorded = await store_group.cost_ledger.record(cost)
        await store_group.activity_log.append(activity)
    return True, cost_recorded


async def pause_lead(
    store_group: "StoreGroup",
    lead: Lead,
    reason: str,
    actor_id: str,
    now: datetime,
    activities_for: Any,
) -> list[str]:
    """人工接管：标记线索 + 取消 pending/claimed 任务 + 审计日志

    Args:
        activities_for: 回调，接收被取消的 task_id 列表，返回要写入的活动日志列表

    Returns:
        被取消的 task_id 列表
    """
    async with store_group.transaction():
        await store_group.lead_store.set_human_control(
            lead.lead_id, True, now, actor_id=actor_id, reason=reason
        )
        cancelled = await store_group.task_store.cancel_open_tasks_for_lead(
            lead.lead_id, reason, now
        )
        for activity in activities_for(cancelled):
            await store_group.activity_log.append(activity)
    return cancelled


async def resume_lead(
    store_group: "StoreGroup",
    lead: Lead,
    now: datetime,
    activity: Activity,
) -> bool:
    """解除人工接管（不恢复已取消的任务）"""
    async with store_group.transaction():
        ok = await store_group.lead_store.set_human_control(lead.lead_id, False, now)
        if ok:
            await store_group.activity_log.append(activity)
    return ok


async def append_activity(store_group: "StoreGroup", activity: Activity) -> None:
    """仅写入一条活动日志"""
    async with store_group.transaction():
        await store_group.activity_log.append(activity)
