"""HumanOverrideController -- 人工接管

运营人员接管线索后，自动化不再联系该线索：
- 单事务：标记线索人工接管 + 取消所有 pending/claimed 任务 + 审计日志（原因必填）
- in_progress 的任务已产生外部副作用，不取消，等待完成回调正常结束
- 解除接管不恢复已取消的任务
"""

from datetime import datetime

import structlog
from pydantic import BaseModel, Field
from rentfinder.core.exceptions import LeadNotFoundError
from rentfinder.core.models import (
    Activity,
    ActivityType,
    ActorType,
    Lead,
    LeadControlPayload,
    new_activity,
)
from rentfinder.core.store import StoreGroup
from rentfinder.core.store.transaction import pause_lead, resume_lead
from rentfinder.core.timeutil import utcnow

log = structlog.get_logger()


class PauseResult(BaseModel):
    """接管结果"""

    lead_id: str
    paused_at: datetime
    cancelled_task_ids: list[str] = Field(default_factory=list)


class HumanOverrideController:
    """人工接管控制"""

    def __init__(self, store_group: StoreGroup) -> None:
        self._stores = store_group

    async def pause_lead(
        self,
        lead_id: str,
        reason: str,
        actor_id: str,
        now: datetime | None = None,
    ) -> PauseResult:
        """接管线索

        Args:
            lead_id: 线索 ID
            reason: 接管原因（必填，写入审计日志）
            actor_id: 操作人
            now: 当前时间

        Raises:
            ValueError: reason 为空
            LeadNotFoundError: 线索不存在
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValueError("takeover reason is required")
        lead = await self._get_lead(lead_id)
        now = now or utcnow()

        def activities_for(cancelled: list[str]) -> list[Activity]:
            items = [
                new_activity(
                    ActivityType.LEAD_PAUSED,
                    actor=ActorType.OPERATOR,
                    organization_id=lead.organization_id,
                    lead_id=lead.lead_id,
                    message=reason,
                    payload=LeadControlPayload(
                        actor_id=actor_id,
                        reason=reason,
                        cancelled_task_ids=cancelled,
                    ),
                    ts=now,
                )
            ]
            for task_id in cancelled:
                items.append(
                    new_activity(
                        ActivityType.TASK_CANCELLED,
                        actor=ActorType.OPERATOR,
                        organization_id=lead.organization_id,
                        lead_id=lead.lead_id,
                        task_id=task_id,
                        message=reason,
                        payload=LeadControlPayload(actor_id=actor_id, reason=reason),
                        ts=now,
                    )
                )
            return items

        cancelled = await pause_lead(self._stores, lead, reason, actor_id, now, activities_for)
        await log.ainfo(
            "lead_paused",
            lead_id=lead_id,
            actor_id=actor_id,
            cancelled_count=len(cancelled),
        )
        return PauseResult(lead_id=lead_id, paused_at=now, cancelled_task_ids=cancelled)

    async def resume_lead(
        self,
        lead_id: str,
        actor_id: str,
        now: datetime | None = None,
    ) -> Lead:
        """解除接管，返回更新后的线索

        Raises:
            LeadNotFoundError: 线索不存在
        """
        lead = await self._get_lead(lead_id)
        now = now or utcnow()
        await resume_lead(
            self._stores,
            lead,
            now,
            new_activity(
                ActivityType.LEAD_RESUMED,
                actor=ActorType.OPERATOR,
                organization_id=lead.organization_id,
                lead_id=lead.lead_id,
                message=f"released by {actor_id}",
                payload=LeadControlPayload(actor_id=actor_id),
                ts=now,
            ),
        )
        await log.ainfo("lead_resumed", lead_id=lead_id, actor_id=actor_id)
        return await self._get_lead(lead_id)

    async def _get_lead(self, lead_id: str) -> Lead:
        lead = await self._stores.lead_store.get_lead(lead_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        return lead
