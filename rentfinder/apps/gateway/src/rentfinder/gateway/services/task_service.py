"""TaskService -- 任务创建/查询业务逻辑

任务创建是上游自动化（看房预约、营销活动、线索导入等）与调度核心之间的接缝：
1. 检查 idempotency_key 去重
2. 校验线索归属与按 agent_type 区分的上下文
3. 按组织策略补齐 max_attempts
4. 可选合规预检（人工"预约看房"流程在创建前即时判定）
5. 单事务写入任务 + TASK_CREATED 活动日志
"""

from datetime import datetime
from typing import Any

import aiosqlite
import structlog
from pydantic import BaseModel, Field
from rentfinder.core.compliance import ComplianceGate
from rentfinder.core.exceptions import ComplianceDeniedError, LeadNotFoundError
from rentfinder.core.models import (
    ActionType,
    ActivityType,
    AgentType,
    FailureScope,
    Task,
    TaskCreatedPayload,
    TaskStatus,
    message_type_for,
    new_activity,
    parse_context,
)
from rentfinder.core.store import StoreGroup
from rentfinder.core.store.transaction import create_task
from rentfinder.core.timeutil import ensure_utc, utcnow
from ulid import ULID

log = structlog.get_logger()


class CreateTaskRequest(BaseModel):
    """任务创建请求"""

    organization_id: str = Field(description="所属组织 ID")
    lead_id: str = Field(description="目标线索 ID")
    agent_type: AgentType = Field(description="拥有该任务的智能体")
    action_type: ActionType = Field(description="外呼渠道")
    scheduled_for: datetime | None = Field(default=None, description="最早执行时间，默认立即")
    context: dict[str, Any] = Field(default_factory=dict, description="智能体上下文")
    max_attempts: int | None = Field(default=None, ge=1, le=10, description="默认取组织策略")
    idempotency_key: str | None = Field(default=None, description="创建幂等键")
    compliance_precheck: bool = Field(default=False, description="创建前先做合规判定")


class TaskService:
    """任务业务服务"""

    def __init__(
        self,
        store_group: StoreGroup,
        compliance_gate: ComplianceGate | None = None,
    ) -> None:
        self._stores = store_group
        self._gate = compliance_gate

    async def create_task(
        self,
        request: CreateTaskRequest,
        now: datetime | None = None,
    ) -> tuple[Task, bool]:
        """创建任务

        Args:
            request: 创建请求
            now: 当前时间

        Returns:
            (task, created) -- created=False 表示 idempotency_key 命中已有任务

        Raises:
            LeadNotFoundError: 线索不存在
            ValueError: 线索不属于该组织
            pydantic.ValidationError: 上下文缺少必填字段
            ComplianceDeniedError: 合规预检拒绝
            InvalidPolicyError: 组织策略配置无效
        """
        if request.idempotency_key:
            existing = await self._stores.task_store.get_task_by_idempotency_key(
                request.idempotency_key
            )
            if existing is not None:
                return existing, False

        lead = await self._stores.lead_store.get_lead(request.lead_id)
        if lead is None:
            raise LeadNotFoundError(request.lead_id)
        if lead.organization_id != request.organization_id:
            raise ValueError(
                f"lead {request.lead_id} does not belong to organization {request.organization_id}"
            )

        context = parse_context(request.agent_type, request.context)
        now = now or utcnow()
        policy = await self._stores.policy_store.get_policy(request.organization_id)

        if request.compliance_precheck:
            if self._gate is None:
                raise RuntimeError("compliance precheck requested without a compliance gate")
            decision = await self._gate.check(
                lead,
                request.action_type,
                message_type_for(request.agent_type),
                now=now,
                policy=policy,
            )
            if not decision.allowed:
                raise ComplianceDeniedError(decision)

        task = Task(
            task_id=str(ULID()),
            organization_id=request.organization_id,
            lead_id=request.lead_id,
            agent_type=request.agent_type,
            action_type=request.action_type,
            status=TaskStatus.PENDING,
            scheduled_for=ensure_utc(request.scheduled_for) if request.scheduled_for else now,
            created_at=now,
            updated_at=now,
            max_attempts=request.max_attempts or policy.max_attempts,
            context=context,
            idempotency_key=request.idempotency_key,
        )
        activity = new_activity(
            ActivityType.TASK_CREATED,
            task=task,
            message=f"{task.agent_type} {task.action_type} scheduled",
            payload=TaskCreatedPayload(
                agent_type=task.agent_type,
                action_type=task.action_type,
                scheduled_for=task.scheduled_for,
                attempt_number=task.attempt_number,
                max_attempts=task.max_attempts,
                source=context.source,
            ),
            ts=now,
        )

        try:
            await create_task(self._stores, task, activity)
        except aiosqlite.IntegrityError as e:
            if request.idempotency_key and self._is_idempotency_conflict(e):
                # 并发重复请求：回查幂等键并返回已存在任务，避免 500
                existing = await self._stores.task_store.get_task_by_idempotency_key(
                    request.idempotency_key
                )
                if existing is not None:
                    return existing, False
            raise

        await log.ainfo(
            "task_created",
            task_id=task.task_id,
            lead_id=task.lead_id,
            agent_type=task.agent_type,
            action_type=task.action_type,
            scheduled_for=task.scheduled_for.isoformat(),
        )
        return task, True

    async def get_task(self, task_id: str) -> Task | None:
        """查询任务"""
        return await self._stores.task_store.get_task(task_id)

    async def list_tasks(
        self,
        status: str | None = None,
        lead_id: str | None = None,
        organization_id: str | None = None,
        failure_scope: FailureScope | str | None = None,
        limit: int = 200,
    ) -> list[Task]:
        """查询任务列表"""
        return await self._stores.task_store.list_tasks(
            status=status,
            lead_id=lead_id,
            organization_id=organization_id,
            failure_scope=failure_scope,
            limit=limit,
        )

    async def get_task_detail(self, task_id: str) -> dict[str, Any] | None:
        """任务详情：任务 + 活动日志 + 通讯记录 + 成本 + 外部引用"""
        task = await self._stores.task_store.get_task(task_id)
        if task is None:
            return None
        activities = await self._stores.activity_log.list_for_task(task_id)
        communications = await self._stores.communication_store.list_for_task(task_id)
        costs = await self._stores.cost_ledger.list_for_task(task_id)
        refs = await self._stores.external_ref_store.list_for_task(task_id)
        return {
            "task": task.model_dump(mode="json"),
            "activities": [a.model_dump(mode="json") for a in activities],
            "communications": [c.model_dump(mode="json") for c in communications],
            "costs": [c.model_dump(mode="json") for c in costs],
            "external_references": [r.model_dump(mode="json") for r in refs],
        }

    async def lead_timeline(self, lead_id: str) -> dict[str, Any]:
        """线索时间线：线索状态 + 任务 + 活动日志 + 通讯记录

        Raises:
            LeadNotFoundError: 线索不存在
        """
        lead = await self._stores.lead_store.get_lead(lead_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        tasks = await self._stores.task_store.list_tasks(lead_id=lead_id)
        activities = await self._stores.activity_log.list_for_lead(lead_id)
        communications = await self._stores.communication_store.list_for_lead(lead_id)
        return {
            "lead": lead.model_dump(mode="json"),
            "tasks": [t.model_dump(mode="json") for t in tasks],
            "activities": [a.model_dump(mode="json") for a in activities],
            "communications": [c.model_dump(mode="json") for c in communications],
        }

    @staticmethod
    def _is_idempotency_conflict(error: Exception) -> bool:
        if not isinstance(error, aiosqlite.IntegrityError):
            return False
        return "tasks.idempotency_key" in str(error)
