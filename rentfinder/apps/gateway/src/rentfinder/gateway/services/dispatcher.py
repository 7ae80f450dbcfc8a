"""Dispatcher -- 调度周期：认领 -> 合规 -> 渠道调用 -> 记账

每个周期原子认领一批到期任务，逐个隔离处理（有界并发，单个任务的异常不影响其他任务）：
1. 复核认领仍有效、线索存在且未被人工接管
2. 合规闸门；拒绝 -> failed(compliance)，不消耗尝试次数，不记成本
3. 渠道调用（带超时）
   - 瞬时失败且仍有尝试次数 -> 退回 pending，attempt+1，按退避策略延后
   - 瞬时失败且尝试次数用尽 -> failed("max attempts exceeded")
   - 永久失败 -> failed，区分联系人级 / 集成级
   - 同步受理 -> 单事务：completed + 通讯记录 + 外部引用 + 一条成本
   - 异步受理 -> 单事务：in_progress + 外部引用，成本等完成回调
4. 每个任务一行结构化日志 + 一条活动日志，周期结束写 BATCH_COMPLETED 汇总
"""

import asyncio
import time
from collections import Counter
from collections.abc import Callable
from datetime import datetime
from enum import StrEnum

import structlog
from pydantic import BaseModel, Field
from rentfinder.channels import (
    AdapterRegistry,
    ChannelConfig,
    DispatchError,
    DispatchOutcome,
    DispatchRequest,
    build_cost_record,
)
from rentfinder.core.compliance import ComplianceGate
from rentfinder.core.config import (
    get_channel_timeout_s,
    get_dispatch_batch_size,
    get_dispatch_concurrency,
)
from rentfinder.core.exceptions import InvalidPolicyError
from rentfinder.core.models import (
    ActionType,
    ActivityType,
    ActorType,
    BatchCompletedPayload,
    Communication,
    ComplianceDeniedPayload,
    DispatchAcceptedPayload,
    DispatchFailedPayload,
    ExternalReference,
    FailureKind,
    FailureScope,
    OrganizationPolicy,
    RetryScheduledPayload,
    StateTransitionPayload,
    Task,
    TaskStatus,
    new_activity,
)
from rentfinder.core.store import StoreGroup
from rentfinder.core.store.transaction import (
    append_activity,
    claim_due_tasks,
    complete_sync_dispatch,
    mark_dispatched_async,
    transition_task,
)
from rentfinder.core.timeutil import utcnow
from ulid import ULID

log = structlog.get_logger()

MAX_ATTEMPTS_REASON = "max attempts exceeded"
HUMAN_CONTROL_REASON = "lead under human control"
LEAD_NOT_FOUND_REASON = "lead not found"


class TaskOutcome(StrEnum):
    """单个任务在本周期的处理结果"""

    COMPLETED = "completed"
    IN_PROGRESS = "in_progress"
    RETRIED = "retried"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    ERROR = "error"


class DispatchCycleReport(BaseModel):
    """调度周期汇总"""

    cycle_id: str
    started_at: datetime
    finished_at: datetime
    claimed: int = 0
    completed: int = 0
    in_progress: int = 0
    retried: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: int = 0
    errors: int = 0
    outcomes: dict[str, TaskOutcome] = Field(default_factory=dict, description="task_id -> 结果")

    @property
    def dispatched(self) -> int:
        """渠道已受理的任务数"""
        return self.completed + self.in_progress


class Dispatcher:
    """调度器"""

    def __init__(
        self,
        store_group: StoreGroup,
        registry: AdapterRegistry,
        compliance_gate: ComplianceGate,
        channel_config: ChannelConfig,
        batch_size: int | None = None,
        concurrency: int | None = None,
        timeout_for: Callable[[str], float] = get_channel_timeout_s,
    ) -> None:
        """
        Args:
            store_group: Store 实例组
            registry: 渠道适配器注册表
            compliance_gate: 合规闸门
            channel_config: 渠道配置（兜底凭证、回调地址）
            batch_size: 单周期认领上限，None 时读取配置
            concurrency: 单周期并发上限，None 时读取配置
            timeout_for: action_type -> 渠道调用超时（秒）
        """
        self._stores = store_group
        self._registry = registry
        self._gate = compliance_gate
        self._config = channel_config
        self._batch_size = batch_size or get_dispatch_batch_size()
        self._concurrency = max(concurrency or get_dispatch_concurrency(), 1)
        self._timeout_for = timeout_for

    async def run_dispatch_cycle(self, now: datetime | None = None) -> DispatchCycleReport:
        """执行一个调度周期

        Args:
            now: 周期时间基准，默认 UTC now（测试可注入固定时间）

        Returns:
            DispatchCycleReport
        """
        now = now or utcnow()
        cycle_id = str(ULID())
        tasks = await claim_due_tasks(self._stores, now, self._batch_size, cycle_id)
        await log.ainfo("dispatch_cycle_started", cycle_id=cycle_id, claimed=len(tasks))

        semaphore = asyncio.Semaphore(self._concurrency)

        async def run_one(task: Task) -> TaskOutcome:
            async with semaphore:
                with structlog.contextvars.bound_contextvars(
                    task_id=task.task_id, lead_id=task.lead_id, cycle_id=cycle_id
                ):
                    try:
                        return await self.dispatch_task(task, now)
                    except Exception:
                        # 任务保持 claimed，由 sweep 在认领超时后退回 pending
                        log.exception("dispatch_task_crashed")
                        return TaskOutcome.ERROR

        results = await asyncio.gather(*(run_one(t) for t in tasks))
        outcomes = {task.task_id: result for task, result in zip(tasks, results, strict=True)}
        counts = Counter(outcomes.values())
        report = DispatchCycleReport(
            cycle_id=cycle_id,
            started_at=now,
            finished_at=utcnow(),
            claimed=len(tasks),
            completed=counts[TaskOutcome.COMPLETED],
            in_progress=counts[TaskOutcome.IN_PROGRESS],
            retried=counts[TaskOutcome.RETRIED],
            failed=counts[TaskOutcome.FAILED],
            cancelled=counts[TaskOutcome.CANCELLED],
            skipped=counts[TaskOutcome.SKIPPED],
            errors=counts[TaskOutcome.ERROR],
            outcomes=outcomes,
        )

        if tasks:
            await append_activity(
                self._stores,
                new_activity(
                    ActivityType.BATCH_COMPLETED,
                    actor=ActorType.SCHEDULER,
                    message=f"{len(tasks)} tasks processed",
                    payload=BatchCompletedPayload(
                        cycle_id=cycle_id,
                        claimed=report.claimed,
                        completed=report.completed,
                        in_progress=report.in_progress,
                        retried=report.retried,
                        failed=report.failed,
                        cancelled=report.cancelled,
                        skipped=report.skipped,
                        errors=report.errors,
                    ),
                    ts=now,
                ),
            )
        await log.ainfo(
            "dispatch_cycle_completed",
            cycle_id=cycle_id,
            claimed=report.claimed,
            dispatched=report.dispatched,
            retried=report.retried,
            failed=report.failed,
            cancelled=report.cancelled,
            errors=report.errors,
        )
        return report

    async def dispatch_task(self, task: Task, now: datetime) -> TaskOutcome:
        """处理一个已认领的任务"""
        # 复核认领：认领后到此刻之间可能已被人工接管取消
        current = await self._stores.task_store.get_task(task.task_id)
        if (
            current is None
            or current.status != TaskStatus.CLAIMED
            or current.claim_token != task.claim_token
        ):
            await log.ainfo(
                "claim_no_longer_held",
                status=current.status if current else None,
            )
            return TaskOutcome.SKIPPED
        task = current

        lead = await self._stores.lead_store.get_lead(task.lead_id)
        if lead is None:
            return await self._fail(
                task, now, LEAD_NOT_FOUND_REASON, FailureKind.PERMANENT, FailureScope.CONTACT
            )
        if lead.is_human_controlled:
            return await self._cancel(task, now, HUMAN_CONTROL_REASON)

        try:
            policy = await self._stores.policy_store.get_policy(task.organization_id)
        except InvalidPolicyError as e:
            return await self._fail(
                task,
                now,
                str(e),
                FailureKind.PERMANENT,
                FailureScope.INTEGRATION,
                error_type=type(e).__name__,
            )

        # 合规闸门
        decision = await self._gate.check(
            lead, task.action_type, task.message_type, now=now, policy=policy
        )
        if not decision.allowed:
            ok = await transition_task(
                self._stores,
                task.task_id,
                TaskStatus.CLAIMED,
                TaskStatus.FAILED,
                now,
                activity=new_activity(
                    ActivityType.COMPLIANCE_DENIED,
                    actor=ActorType.SCHEDULER,
                    task=task,
                    status="failure",
                    message=decision.reason or "",
                    payload=ComplianceDeniedPayload(
                        rule=decision.rule or "",
                        reason=decision.reason or "",
                        channel=decision.channel,
                        message_type=decision.message_type,
                        local_time=decision.local_time,
                    ),
                    ts=now,
                ),
                completed_at=now,
                failure_reason=decision.reason,
                failure_kind=FailureKind.COMPLIANCE,
                failure_scope=FailureScope.CONTACT,
            )
            await log.ainfo("task_compliance_denied", rule=decision.rule, reason=decision.reason)
            return TaskOutcome.FAILED if ok else TaskOutcome.SKIPPED

        try:
            adapter = self._registry.get(task.action_type)
        except DispatchError as e:
            return await self._handle_dispatch_error(task, policy, now, e, None)

        # 崩溃重放保护：已有外部引用说明渠道此前已受理，不再重复调用
        existing_refs = await self._stores.external_ref_store.list_for_task(task.task_id)
        if existing_refs:
            return await self._recover_accepted(task, now, existing_refs[0], adapter.is_async)

        credentials = self._config.with_fallbacks(
            await self._stores.policy_store.get_credentials(task.organization_id)
        )
        request = DispatchRequest(
            task=task,
            lead=lead,
            credentials=credentials,
            webhook_url=(
                self._config.voice_webhook_url() if task.action_type == ActionType.CALL else None
            ),
        )
        timeout_s = self._timeout_for(task.action_type.value)
        started = time.monotonic()
        try:
            outcome = await asyncio.wait_for(adapter.dispatch(request), timeout=timeout_s)
        except TimeoutError as e:
            error = DispatchError(
                f"{task.action_type.value} dispatch timed out after {timeout_s:g}s",
                transient=True,
            )
            return await self._handle_dispatch_error(
                task, policy, now, error, FailureKind.TIMEOUT, e
            )
        except DispatchError as e:
            return await self._handle_dispatch_error(task, policy, now, e, None)
        except Exception as e:
            # 适配器内部未归类的异常按瞬时失败处理，消耗一次尝试
            log.exception("adapter_unexpected_error", action_type=task.action_type.value)
            error = DispatchError(f"unexpected {type(e).__name__}", transient=True)
            return await self._handle_dispatch_error(task, policy, now, error, None, e)
        execution_ms = int((time.monotonic() - started) * 1000)

        if outcome.is_async:
            return await self._record_async(task, now, outcome, execution_ms)
        return await self._record_sync(task, now, outcome, execution_ms)

    async def _record_sync(
        self,
        task: Task,
        now: datetime,
        outcome: DispatchOutcome,
        execution_ms: int,
    ) -> TaskOutcome:
        """同步渠道受理：completed + 通讯记录 + 外部引用 + 成本"""
        communication = Communication(
            communication_id=str(ULID()),
            organization_id=task.organization_id,
            lead_id=task.lead_id,
            task_id=task.task_id,
            channel=task.action_type,
            recipient=outcome.recipient,
            status=outcome.status,
            external_id=outcome.external_ref,
            body=outcome.body,
            started_at=now,
            ended_at=now,
            created_at=now,
        )
        external_ref = ExternalReference(
            task_id=task.task_id,
            vendor=outcome.vendor,
            vendor_call_id=outcome.external_ref,
            created_at=now,
        )
        cost = None
        if outcome.service is not None:
            cost = build_cost_record(
                task,
                outcome.service,
                outcome.usage_quantity,
                billable_event=f"{task.action_type.value}:{outcome.external_ref}",
                recorded_at=now,
                communication_id=communication.communication_id,
            )
        activity = self._accepted_activity(task, now, outcome, execution_ms)
        ok, cost_recorded = await complete_sync_dispatch(
            self._stores, task, now, communication, external_ref, cost, activity
        )
        if not ok:
            await log.awarning(
                "dispatch_raced_with_takeover",
                vendor=outcome.vendor,
                external_ref=outcome.external_ref,
                cost_recorded=cost_recorded,
            )
            return TaskOutcome.SKIPPED
        await log.ainfo(
            "task_dispatched",
            outcome=TaskOutcome.COMPLETED,
            vendor=outcome.vendor,
            external_ref=outcome.external_ref,
            cost_recorded=cost_recorded,
            execution_ms=execution_ms,
        )
        return TaskOutcome.COMPLETED

    async def _record_async(
        self,
        task: Task,
        now: datetime,
        outcome: DispatchOutcome,
        execution_ms: int,
    ) -> TaskOutcome:
        """异步渠道受理：in_progress + 外部引用"""
        external_ref = ExternalReference(
            task_id=task.task_id,
            vendor=outcome.vendor,
            vendor_call_id=outcome.external_ref,
            created_at=now,
        )
        activity = self._accepted_activity(task, now, outcome, execution_ms)
        ok = await mark_dispatched_async(self._stores, task, now, external_ref, activity)
        if not ok:
            await log.awarning(
                "dispatch_raced_with_takeover",
                vendor=outcome.vendor,
                external_ref=outcome.external_ref,
            )
            return TaskOutcome.SKIPPED
        await log.ainfo(
            "task_dispatched",
            outcome=TaskOutcome.IN_PROGRESS,
            vendor=outcome.vendor,
            external_ref=outcome.external_ref,
            execution_ms=execution_ms,
        )
        return TaskOutcome.IN_PROGRESS

    async def _recover_accepted(
        self,
        task: Task,
        now: datetime,
        ref: ExternalReference,
        is_async: bool,
    ) -> TaskOutcome:
        """任务已有外部引用：直接推进状态，不再调用渠道"""
        to_status = TaskStatus.IN_PROGRESS if is_async else TaskStatus.COMPLETED
        fields = {"executed_at": task.executed_at or now, "external_ref": ref.vendor_call_id}
        if to_status == TaskStatus.COMPLETED:
            fields["completed_at"] = now
        ok = await transition_task(
            self._stores,
            task.task_id,
            TaskStatus.CLAIMED,
            to_status,
            now,
            activity=new_activity(
                ActivityType.DISPATCH_ACCEPTED,
                actor=ActorType.SCHEDULER,
                task=task,
                message=f"{ref.vendor} had already accepted this task",
                payload=DispatchAcceptedPayload(
                    vendor=ref.vendor,
                    external_ref=ref.vendor_call_id,
                    is_async=is_async,
                    attempt_number=task.attempt_number,
                ),
                ts=now,
            ),
            **fields,
        )
        await log.awarning("dispatch_already_accepted", external_ref=ref.vendor_call_id)
        if not ok:
            return TaskOutcome.SKIPPED
        return TaskOutcome.IN_PROGRESS if is_async else TaskOutcome.COMPLETED

    async def _handle_dispatch_error(
        self,
        task: Task,
        policy: OrganizationPolicy,
        now: datetime,
        error: DispatchError,
        kind: FailureKind | None,
        cause: Exception | None = None,
    ) -> TaskOutcome:
        """渠道失败分类处理：重试 / 尝试次数用尽 / 永久失败"""
        message = str(error)
        error_type = type(cause or error).__name__
        await log.awarning(
            "dispatch_failed",
            error_type=error_type,
            error=message,
            transient=error.transient,
            failure_scope=error.scope,
            attempt_number=task.attempt_number,
            max_attempts=task.max_attempts,
        )

        if not error.transient:
            return await self._fail(
                task,
                now,
                message,
                kind or FailureKind.PERMANENT,
                error.scope,
                error_type=error_type,
            )

        kind = kind or FailureKind.TRANSIENT
        if not task.has_attempts_left:
            return await self._fail(
                task,
                now,
                MAX_ATTEMPTS_REASON,
                kind,
                error.scope,
                error_type=error_type,
                last_error=message,
            )

        next_attempt = task.attempt_number + 1
        next_at = now + policy.backoff_delay(task.attempt_number)
        ok = await transition_task(
            self._stores,
            task.task_id,
            TaskStatus.CLAIMED,
            TaskStatus.PENDING,
            now,
            activity=new_activity(
                ActivityType.RETRY_SCHEDULED,
                actor=ActorType.SCHEDULER,
                task=task,
                status="failure",
                message=message,
                payload=RetryScheduledPayload(
                    attempt_number=next_attempt,
                    next_scheduled_for=next_at,
                    last_error=message,
                ),
                ts=now,
            ),
            attempt_number=next_attempt,
            scheduled_for=next_at,
            claimed_at=None,
            claim_token=None,
            failure_reason=message,
            failure_kind=kind,
            failure_scope=error.scope,
        )
        if not ok:
            await log.awarning("retry_raced_with_takeover")
            return TaskOutcome.SKIPPED
        await log.ainfo(
            "retry_scheduled",
            attempt_number=next_attempt,
            next_scheduled_for=next_at.isoformat(),
        )
        return TaskOutcome.RETRIED

    async def _fail(
        self,
        task: Task,
        now: datetime,
        reason: str,
        kind: FailureKind,
        scope: FailureScope,
        error_type: str | None = None,
        last_error: str | None = None,
    ) -> TaskOutcome:
        """claimed -> failed"""
        ok = await transition_task(
            self._stores,
            task.task_id,
            TaskStatus.CLAIMED,
            TaskStatus.FAILED,
            now,
            activity=new_activity(
                ActivityType.TASK_FAILED,
                actor=ActorType.SCHEDULER,
                task=task,
                status="failure",
                message=reason if last_error is None else f"{reason}: {last_error}",
                payload=DispatchFailedPayload(
                    error_type=error_type or kind.value,
                    error_message=last_error or reason,
                    transient=kind in (FailureKind.TRANSIENT, FailureKind.TIMEOUT),
                    failure_scope=scope,
                    attempt_number=task.attempt_number,
                ),
                ts=now,
            ),
            completed_at=now,
            failure_reason=reason,
            failure_kind=kind,
            failure_scope=scope,
        )
        if not ok:
            await log.awarning("fail_raced_with_takeover", reason=reason)
            return TaskOutcome.SKIPPED
        await log.ainfo("task_failed", reason=reason, failure_kind=kind, failure_scope=scope)
        return TaskOutcome.FAILED

    async def _cancel(self, task: Task, now: datetime, reason: str) -> TaskOutcome:
        """claimed -> cancelled"""
        ok = await transition_task(
            self._stores,
            task.task_id,
            TaskStatus.CLAIMED,
            TaskStatus.CANCELLED,
            now,
            activity=new_activity(
                ActivityType.TASK_CANCELLED,
                actor=ActorType.SCHEDULER,
                task=task,
                status="skipped",
                message=reason,
                payload=StateTransitionPayload(
                    from_status=TaskStatus.CLAIMED,
                    to_status=TaskStatus.CANCELLED,
                    reason=reason,
                ),
                ts=now,
            ),
            completed_at=now,
            cancel_reason=reason,
        )
        await log.ainfo("task_cancelled", reason=reason, transitioned=ok)
        return TaskOutcome.CANCELLED if ok else TaskOutcome.SKIPPED

    @staticmethod
    def _accepted_activity(
        task: Task,
        now: datetime,
        outcome: DispatchOutcome,
        execution_ms: int,
    ):
        return new_activity(
            ActivityType.DISPATCH_ACCEPTED,
            actor=ActorType.SCHEDULER,
            task=task,
            message=f"{outcome.vendor} accepted {task.action_type.value}",
            payload=DispatchAcceptedPayload(
                vendor=outcome.vendor,
                external_ref=outcome.external_ref,
                is_async=outcome.is_async,
                attempt_number=task.attempt_number,
            ),
            execution_ms=execution_ms,
            ts=now,
        )
