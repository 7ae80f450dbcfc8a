"""FollowUpPlanner -- 外呼未接通后自动安排跟进

召回与爽约跟进两类智能体的语音外呼未接通（无人接听/忙线/语音信箱/失败）时，
为同一线索创建下一次尝试：第一次跟进间隔 1 天，之后间隔 3 天，直到 max_attempts。
尽力而为：调用方捕获所有异常，不影响 webhook 响应。
"""

from datetime import datetime, timedelta

import aiosqlite
import structlog
from rentfinder.core.models import (
    ActivityType,
    AgentType,
    FollowUpScheduledPayload,
    Task,
    TaskCreatedPayload,
    TaskStatus,
    new_activity,
)
from rentfinder.core.store import StoreGroup
from rentfinder.core.store.transaction import create_task
from ulid import ULID

log = structlog.get_logger()

FOLLOW_UP_AGENT_TYPES = {AgentType.RECAPTURE, AgentType.NO_SHOW_FOLLOW_UP}

# 视为"未接通"的通话状态
NON_CONNECTED_CALL_STATUSES = {"no_answer", "busy", "voicemail", "failed"}

FIRST_FOLLOW_UP_DELAY = timedelta(days=1)
LATER_FOLLOW_UP_DELAY = timedelta(days=3)


def follow_up_key(task_id: str) -> str:
    """跟进任务的创建幂等键，同一任务最多派生一个跟进"""
    return f"follow-up:{task_id}"


class FollowUpPlanner:
    """未接通跟进规划"""

    def __init__(self, store_group: StoreGroup) -> None:
        self._stores = store_group

    async def plan_after_call(
        self,
        task: Task,
        call_status: str,
        now: datetime,
    ) -> Task | None:
        """根据通话结果决定是否创建跟进任务

        Args:
            task: 已进入终态的语音任务
            call_status: 规范化后的通话状态
            now: 当前时间

        Returns:
            新建（或已存在）的跟进任务；不需要跟进时返回 None
        """
        if task.agent_type not in FOLLOW_UP_AGENT_TYPES:
            return None
        if call_status not in NON_CONNECTED_CALL_STATUSES:
            return None
        if task.attempt_number >= task.max_attempts:
            log.info(
                "follow_up_attempts_exhausted",
                task_id=task.task_id,
                attempt_number=task.attempt_number,
            )
            return None

        policy = await self._stores.policy_store.get_policy(task.organization_id)
        if not policy.follow_up_enabled:
            return None

        key = follow_up_key(task.task_id)
        existing = await self._stores.task_store.get_task_by_idempotency_key(key)
        if existing is not None:
            return existing

        delay = FIRST_FOLLOW_UP_DELAY if task.attempt_number == 1 else LATER_FOLLOW_UP_DELAY
        follow_up = Task(
            task_id=str(ULID()),
            organization_id=task.organization_id,
            lead_id=task.lead_id,
            agent_type=task.agent_type,
            action_type=task.action_type,
            status=TaskStatus.PENDING,
            scheduled_for=now + delay,
            created_at=now,
            updated_at=now,
            attempt_number=task.attempt_number + 1,
            max_attempts=task.max_attempts,
            context=task.context.model_copy(update={"trigger": "follow_up"}),
            idempotency_key=key,
        )
        created = new_activity(
            ActivityType.TASK_CREATED,
            task=follow_up,
            message=f"follow-up {follow_up.attempt_number}/{follow_up.max_attempts} created",
            payload=TaskCreatedPayload(
                agent_type=follow_up.agent_type,
                action_type=follow_up.action_type,
                scheduled_for=follow_up.scheduled_for,
                attempt_number=follow_up.attempt_number,
                max_attempts=follow_up.max_attempts,
                source="follow_up",
            ),
            ts=now,
        )
        scheduled = new_activity(
            ActivityType.FOLLOW_UP_SCHEDULED,
            task=task,
            message=f"call {call_status}, follow-up scheduled",
            payload=FollowUpScheduledPayload(
                follow_up_task_id=follow_up.task_id,
                attempt_number=follow_up.attempt_number,
                scheduled_for=follow_up.scheduled_for,
                previous_call_status=call_status,
            ),
            ts=now,
        )
        try:
            await create_task(self._stores, follow_up, created, scheduled)
        except aiosqlite.IntegrityError:
            # 并发回调同时规划：以先写入者为准
            existing = await self._stores.task_store.get_task_by_idempotency_key(key)
            if existing is not None:
                return existing
            raise

        await log.ainfo(
            "follow_up_scheduled",
            task_id=task.task_id,
            follow_up_task_id=follow_up.task_id,
            attempt_number=follow_up.attempt_number,
            scheduled_for=follow_up.scheduled_for.isoformat(),
        )
        return follow_up
