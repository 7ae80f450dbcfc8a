"""Reconciler -- 卡单回收

两类遗留任务：
1. in_progress 超过组织宽限期仍未收到完成回调：
   适配器支持查询时主动轮询渠道，拿到最终状态则走与 webhook 相同的完成路径；
   无法查询、查询失败或超过 2 倍宽限期仍未结束 -> failed("no completion webhook within grace period")
2. claimed 超过认领超时（调度进程中途崩溃）：退回 pending，不增加尝试次数，
   重放时沿用同一个幂等键
"""

import asyncio
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel
from rentfinder.channels import AdapterRegistry, CallStatusReport, ChannelConfig, DispatchError
from rentfinder.core.config import get_channel_timeout_s, get_claim_timeout_s
from rentfinder.core.exceptions import InvalidPolicyError
from rentfinder.core.models import (
    ActivityType,
    DispatchFailedPayload,
    FailureKind,
    FailureScope,
    OrganizationPolicy,
    StateTransitionPayload,
    Task,
    TaskStatus,
    new_activity,
)
from rentfinder.core.store import StoreGroup
from rentfinder.core.store.transaction import transition_task
from rentfinder.core.timeutil import ensure_utc, utcnow

from .webhook_service import WebhookCompletionHandler

log = structlog.get_logger()

STUCK_TASK_REASON = "no completion webhook within grace period"
SWEEP_BATCH_SIZE = 100


class SweepReport(BaseModel):
    """单次回收汇总"""

    examined: int = 0
    polled: int = 0
    finalized: int = 0
    timed_out: int = 0
    still_running: int = 0
    requeued: int = 0
    errors: int = 0


class Reconciler:
    """卡单回收器"""

    def __init__(
        self,
        store_group: StoreGroup,
        registry: AdapterRegistry,
        completion_handler: WebhookCompletionHandler,
        channel_config: ChannelConfig,
        claim_timeout_s: int | None = None,
    ) -> None:
        self._stores = store_group
        self._registry = registry
        self._completion = completion_handler
        self._config = channel_config
        self._claim_timeout = timedelta(seconds=claim_timeout_s or get_claim_timeout_s())

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        """执行一次回收

        Args:
            now: 时间基准，默认 UTC now

        Returns:
            SweepReport
        """
        now = now or utcnow()
        report = SweepReport()
        policies: dict[str, OrganizationPolicy] = {}

        # 逐页扫描全部 in_progress 任务，宽限期按组织在 Python 侧判断
        after: tuple[datetime, str] | None = None
        while True:
            page = await self._stores.task_store.list_in_progress(now, SWEEP_BATCH_SIZE, after)
            for task in page:
                with structlog.contextvars.bound_contextvars(
                    task_id=task.task_id, lead_id=task.lead_id
                ):
                    try:
                        policy = await self._policy_for(task.organization_id, policies)
                        await self._reconcile_in_progress(task, policy, now, report)
                    except Exception:
                        report.errors += 1
                        log.exception("reconcile_task_failed")
            if len(page) < SWEEP_BATCH_SIZE:
                break
            last = page[-1]
            after = (last.executed_at, last.task_id)

        stale_before = now - self._claim_timeout
        for task in await self._stores.task_store.list_stale_claims(stale_before, SWEEP_BATCH_SIZE):
            with structlog.contextvars.bound_contextvars(
                task_id=task.task_id, lead_id=task.lead_id
            ):
                try:
                    if await self._requeue_stale_claim(task, now):
                        report.requeued += 1
                except Exception:
                    report.errors += 1
                    log.exception("requeue_stale_claim_failed")

        await log.ainfo("sweep_completed", **report.model_dump())
        return report

    async def _policy_for(
        self,
        organization_id: str,
        cache: dict[str, OrganizationPolicy],
    ) -> OrganizationPolicy:
        """组织策略（单次回收内缓存）；策略无效时按默认宽限期处理"""
        policy = cache.get(organization_id)
        if policy is None:
            try:
                policy = await self._stores.policy_store.get_policy(organization_id)
            except InvalidPolicyError as e:
                await log.awarning(
                    "invalid_policy_default_grace", organization_id=organization_id, error=str(e)
                )
                policy = OrganizationPolicy(organization_id=organization_id)
            cache[organization_id] = policy
        return policy

    async def _reconcile_in_progress(
        self,
        task: Task,
        policy: OrganizationPolicy,
        now: datetime,
        report: SweepReport,
    ) -> None:
        if task.executed_at is None:
            return
        age = now - ensure_utc(task.executed_at)
        grace = policy.stuck_task_grace
        if age < grace:
            return
        report.examined += 1

        status = await self._poll(task)
        if status is not None:
            report.polled += 1
            if status.final:
                ok, _ = await self._completion.finalize_voice_task(
                    task,
                    call_status=status.status,
                    now=now,
                    vendor_call_id=status.external_ref,
                    duration_seconds=status.duration_seconds,
                    transcript=status.transcript,
                    summary=status.summary,
                    recording_url=status.recording_url,
                    source="poll",
                )
                if ok:
                    report.finalized += 1
                return
            if age < grace * 2:
                report.still_running += 1
                await log.ainfo("stuck_task_still_running", age_s=int(age.total_seconds()))
                return

        ok = await transition_task(
            self._stores,
            task.task_id,
            TaskStatus.IN_PROGRESS,
            TaskStatus.FAILED,
            now,
            activity=new_activity(
                ActivityType.TASK_FAILED,
                task=task,
                status="failure",
                message=STUCK_TASK_REASON,
                payload=DispatchFailedPayload(
                    error_type="CompletionTimeout",
                    error_message=STUCK_TASK_REASON,
                    transient=False,
                    failure_scope=FailureScope.CONTACT,
                    attempt_number=task.attempt_number,
                ),
                ts=now,
            ),
            completed_at=now,
            failure_reason=STUCK_TASK_REASON,
            failure_kind=FailureKind.TIMEOUT,
            failure_scope=FailureScope.CONTACT,
        )
        if ok:
            report.timed_out += 1
            await log.awarning("stuck_task_timed_out", age_s=int(age.total_seconds()))

    async def _poll(self, task: Task) -> CallStatusReport | None:
        """主动查询渠道，无法查询或查询失败时返回 None"""
        if not task.external_ref:
            return None
        try:
            adapter = self._registry.get(task.action_type)
        except DispatchError:
            return None
        credentials = self._config.with_fallbacks(
            await self._stores.policy_store.get_credentials(task.organization_id)
        )
        try:
            return await asyncio.wait_for(
                adapter.fetch_status(task.external_ref, credentials),
                timeout=get_channel_timeout_s(task.action_type.value),
            )
        except (DispatchError, TimeoutError) as e:
            await log.awarning(
                "status_poll_failed",
                external_ref=task.external_ref,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

    async def _requeue_stale_claim(self, task: Task, now: datetime) -> bool:
        """claimed -> pending，attempt_number 不变"""
        reason = "claim expired"
        ok = await transition_task(
            self._stores,
            task.task_id,
            TaskStatus.CLAIMED,
            TaskStatus.PENDING,
            now,
            activity=new_activity(
                ActivityType.TASK_REQUEUED,
                task=task,
                message=reason,
                payload=StateTransitionPayload(
                    from_status=TaskStatus.CLAIMED,
                    to_status=TaskStatus.PENDING,
                    reason=reason,
                ),
                ts=now,
            ),
            claimed_at=None,
            claim_token=None,
        )
        if ok:
            await log.ainfo("stale_claim_requeued", claimed_at=str(task.claimed_at))
        return ok
