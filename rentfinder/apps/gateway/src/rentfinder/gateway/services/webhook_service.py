"""WebhookCompletionHandler -- 语音外呼完成回调

回调可能重复投递、乱序到达、关联信息缺失。处理流程：
1. 关联：先按 (vendor, call_id) 查外部引用，查不到再用 metadata.task_id 兜底
2. 外呼在途时任务被接管取消：补记通话记录与成本，任务保持 cancelled
3. 任务已在其他终态：记一条 WEBHOOK_DUPLICATE，不做任何修改
4. 否则单事务：CAS in_progress -> completed|failed + 通话记录 + 一条成本记录
5. 尽力安排未接通跟进，失败只记日志

HTTP 层始终返回 200，供应商不会因为我们的内部错误反复重投。
"""

from datetime import datetime
from typing import Any

import structlog
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidatorFunctionWrapHandler,
    field_validator,
)
from rentfinder.channels.contact import normalize_phone
from rentfinder.channels.pricing import build_cost_record, voice_minutes
from rentfinder.core.config import WEBHOOK_PREVIEW_LENGTH
from rentfinder.core.models import (
    TERMINAL_STATES,
    ActionType,
    ActivityType,
    ActorType,
    CallCompletedPayload,
    Communication,
    CostRecord,
    CostService,
    FailureKind,
    FailureScope,
    Task,
    TaskStatus,
    WebhookUnmatchedPayload,
    new_activity,
)
from rentfinder.core.store import StoreGroup
from rentfinder.core.store.transaction import (
    append_activity,
    finalize_call,
    record_call_evidence,
)
from rentfinder.core.timeutil import utcnow
from ulid import ULID

from .followups import FollowUpPlanner

log = structlog.get_logger()

VOICE_VENDOR = "bland"

# 通话状态 -> 任务终态
_COMPLETED_CALL_STATUSES = {"completed", "answered", "voicemail"}
_FAILED_CALL_STATUSES = {"no_answer", "busy", "failed", "canceled", "cancelled"}


def normalize_call_status(status: str | None) -> str:
    """统一通话状态写法：小写，空格与连字符替换为下划线"""
    if not status:
        return "unknown"
    return status.strip().lower().replace("-", "_").replace(" ", "_")


def call_outcome(call_status: str) -> tuple[TaskStatus, str | None]:
    """通话状态映射为 (任务终态, 失败原因)

    未知状态按已完成处理：通话已经发生，不应触发重试。
    """
    if call_status in _FAILED_CALL_STATUSES:
        return TaskStatus.FAILED, f"call {call_status}"
    return TaskStatus.COMPLETED, None


class VoiceCallback(BaseModel):
    """Bland.ai 通话完成回调体（只取用到的字段，其余原样忽略）"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    call_id: str | None = None
    status: str | None = None
    duration: float | None = Field(default=None, description="通话时长（秒）")
    call_length: float | None = Field(default=None, description="通话时长（分钟）")
    transcript: str | None = None
    concatenated_transcript: str | None = None
    transcripts: list[dict[str, Any]] | None = None
    summary: str | None = None
    recording_url: str | None = None
    answered_by: str | None = None
    to: str | None = None
    from_: str | None = Field(default=None, alias="from")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("call_id", mode="before")
    @classmethod
    def _coerce_call_id(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return None
        if isinstance(value, int | float):
            return str(value)
        return value if isinstance(value, str) else None

    @field_validator("metadata", mode="before")
    @classmethod
    def _coerce_metadata(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @field_validator(
        "status",
        "duration",
        "call_length",
        "transcript",
        "concatenated_transcript",
        "transcripts",
        "summary",
        "recording_url",
        "answered_by",
        "to",
        "from_",
        mode="wrap",
    )
    @classmethod
    def _drop_invalid(cls, value: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        # 可选字段格式异常时置空，不影响关联
        try:
            return handler(value)
        except ValidationError:
            return None

    @property
    def call_status(self) -> str:
        status = normalize_call_status(self.status)
        if status in ("completed", "unknown") and self.answered_by == "voicemail":
            return "voicemail"
        return status

    @property
    def duration_seconds(self) -> int:
        if self.duration is not None:
            return max(int(round(self.duration)), 0)
        if self.call_length is not None:
            return max(int(round(self.call_length * 60)), 0)
        return 0

    @property
    def transcript_text(self) -> str | None:
        if self.concatenated_transcript:
            return self.concatenated_transcript
        if self.transcript:
            return self.transcript
        if self.transcripts:
            lines = [
                f"{item.get('user') or item.get('speaker') or 'unknown'}: {item.get('text', '')}"
                for item in self.transcripts
            ]
            return "\n".join(lines)
        return None


class WebhookResult(BaseModel):
    """回调处理结果（HTTP 层据此返回 200 响应体）"""

    success: bool = True
    matched: bool = True
    duplicate: bool = False
    task_id: str | None = None
    task_status: str | None = None
    cost_recorded: bool = False
    follow_up_task_id: str | None = None
    message: str = ""


class WebhookCompletionHandler:
    """语音外呼完成处理

    finalize_voice_task 同时供卡单回收在主动轮询拿到最终状态时复用，
    两条路径走同一个 CAS，重复到达只有一方生效。
    """

    def __init__(self, store_group: StoreGroup, planner: FollowUpPlanner | None = None) -> None:
        self._stores = store_group
        self._planner = planner

    async def handle_voice_callback(
        self,
        payload: dict[str, Any],
        now: datetime | None = None,
    ) -> WebhookResult:
        """处理一次语音回调

        Args:
            payload: 回调原始 JSON
            now: 当前时间，默认 UTC now

        Returns:
            WebhookResult
        """
        now = now or utcnow()
        try:
            callback = VoiceCallback.model_validate(payload)
        except ValidationError as e:
            reason = f"malformed payload: {e.error_count()} errors"
            return await self._unmatched(payload, None, None, reason, now)

        call_id = callback.call_id
        claimed_task_id = callback.metadata.get("task_id")
        if claimed_task_id is not None:
            claimed_task_id = str(claimed_task_id)

        # 1. 关联任务
        task_id: str | None = None
        ref = None
        if call_id:
            ref = await self._stores.external_ref_store.get_by_vendor_call_id(
                VOICE_VENDOR, call_id
            )
            if ref is not None:
                task_id = ref.task_id
        if task_id is None:
            task_id = claimed_task_id
        if task_id is None:
            return await self._unmatched(payload, call_id, None, "no task correlation", now)

        task = await self._stores.task_store.get_task(task_id)
        if task is None:
            return await self._unmatched(payload, call_id, claimed_task_id, "task not found", now)
        if call_id and task.external_ref and task.external_ref != call_id:
            return await self._unmatched(
                payload, call_id, claimed_task_id, "call id does not match task", now
            )

        # 2. 接管取消时外呼已在途：通话确已发生，补记证据
        if task.status == TaskStatus.CANCELLED and ref is not None and call_id:
            return await self.record_cancelled_call(task, callback, call_id, now)

        # 3. 终态任务：重复投递
        if task.status in TERMINAL_STATES:
            await append_activity(
                self._stores,
                new_activity(
                    ActivityType.WEBHOOK_DUPLICATE,
                    actor=ActorType.WEBHOOK,
                    task=task,
                    status="skipped",
                    message=f"callback for {task.status} task ignored",
                    ts=now,
                ),
            )
            await log.ainfo("webhook_duplicate", task_id=task.task_id, status=task.status)
            return WebhookResult(
                duplicate=True,
                task_id=task.task_id,
                task_status=task.status,
                message="already finalized",
            )

        # 尚未进入 in_progress（调度器还未落盘受理结果）：不做修改，由卡单回收兜底
        if task.status != TaskStatus.IN_PROGRESS:
            await log.awarning(
                "webhook_before_dispatch_recorded",
                task_id=task.task_id,
                status=task.status,
                call_id=call_id,
            )
            return WebhookResult(
                task_id=task.task_id,
                task_status=task.status,
                message="task not in progress yet",
            )

        # 4. 完成
        ok, cost_recorded = await self.finalize_voice_task(
            task,
            call_status=callback.call_status,
            now=now,
            vendor_call_id=call_id,
            duration_seconds=callback.duration_seconds,
            transcript=callback.transcript_text,
            summary=callback.summary,
            recording_url=callback.recording_url,
            recipient=callback.to,
            source="webhook",
        )
        if not ok:
            await log.ainfo("webhook_lost_race", task_id=task.task_id)
            return WebhookResult(
                duplicate=True,
                task_id=task.task_id,
                message="already finalized",
            )

        refreshed = await self._stores.task_store.get_task(task.task_id)
        result = WebhookResult(
            task_id=task.task_id,
            task_status=refreshed.status if refreshed else None,
            cost_recorded=cost_recorded,
            message="finalized",
        )

        # 5. 跟进（尽力而为）
        follow_up = await self._plan_follow_up(task, callback.call_status, now)
        if follow_up is not None:
            result.follow_up_task_id = follow_up.task_id
        return result

    async def finalize_voice_task(
        self,
        task: Task,
        call_status: str,
        now: datetime,
        vendor_call_id: str | None = None,
        duration_seconds: int = 0,
        transcript: str | None = None,
        summary: str | None = None,
        recording_url: str | None = None,
        recipient: str | None = None,
        source: str = "webhook",
    ) -> tuple[bool, bool]:
        """in_progress 语音任务进入终态，单事务写入通话记录与成本

        Returns:
            (transitioned, cost_recorded)；transitioned=False 表示已被其他路径完成
        """
        to_status, failure_reason = call_outcome(call_status)
        communication, cost = await self._call_evidence(
            task,
            call_status,
            now,
            vendor_call_id,
            duration_seconds,
            transcript,
            summary,
            recording_url,
            recipient,
        )

        fields: dict[str, Any] = {}
        if to_status == TaskStatus.FAILED:
            fields.update(
                failure_reason=failure_reason,
                failure_kind=FailureKind.PERMANENT,
                failure_scope=FailureScope.CONTACT,
            )
        completed = to_status == TaskStatus.COMPLETED
        activity = new_activity(
            ActivityType.TASK_COMPLETED if completed else ActivityType.TASK_FAILED,
            actor=ActorType.WEBHOOK if source == "webhook" else ActorType.SYSTEM,
            task=task,
            status="success" if completed else "failure",
            message=failure_reason or f"call {call_status}",
            payload=CallCompletedPayload(
                vendor_call_id=vendor_call_id or task.external_ref,
                call_status=call_status,
                duration_seconds=duration_seconds,
                cost_recorded=cost is not None,
                source=source,
            ),
            ts=now,
        )
        ok, cost_recorded = await finalize_call(
            self._stores, task, to_status, now, communication, cost, activity, **fields
        )
        if ok:
            await log.ainfo(
                "voice_task_finalized",
                task_id=task.task_id,
                status=to_status,
                call_status=call_status,
                duration_seconds=duration_seconds,
                cost_recorded=cost_recorded,
                source=source,
            )
        return ok, cost_recorded

    async def record_cancelled_call(
        self,
        task: Task,
        callback: VoiceCallback,
        call_id: str,
        now: datetime,
    ) -> WebhookResult:
        """外呼在途时任务被人工接管取消：通话已发生，补记通话记录与成本，任务保持 cancelled"""
        communication, cost = await self._call_evidence(
            task,
            callback.call_status,
            now,
            call_id,
            callback.duration_seconds,
            callback.transcript_text,
            callback.summary,
            callback.recording_url,
            callback.to,
        )
        activity = new_activity(
            ActivityType.WEBHOOK_RECEIVED,
            actor=ActorType.WEBHOOK,
            task=task,
            status="success",
            message=f"call {callback.call_status} recorded on cancelled task",
            payload=CallCompletedPayload(
                vendor_call_id=call_id,
                call_status=callback.call_status,
                duration_seconds=callback.duration_seconds,
                cost_recorded=cost is not None,
            ),
            ts=now,
        )
        recorded, cost_recorded = await record_call_evidence(
            self._stores, communication, cost, activity
        )
        if not recorded:
            await append_activity(
                self._stores,
                new_activity(
                    ActivityType.WEBHOOK_DUPLICATE,
                    actor=ActorType.WEBHOOK,
                    task=task,
                    status="skipped",
                    message=f"call {call_id} already recorded",
                    ts=now,
                ),
            )
            await log.ainfo("webhook_duplicate", task_id=task.task_id, status=task.status)
            return WebhookResult(
                duplicate=True,
                task_id=task.task_id,
                task_status=task.status,
                message="already finalized",
            )
        await log.awarning(
            "call_recorded_on_cancelled_task",
            task_id=task.task_id,
            call_id=call_id,
            duration_seconds=callback.duration_seconds,
            cost_recorded=cost_recorded,
        )
        return WebhookResult(
            task_id=task.task_id,
            task_status=task.status,
            cost_recorded=cost_recorded,
            message="recorded on cancelled task",
        )

    async def _call_evidence(
        self,
        task: Task,
        call_status: str,
        now: datetime,
        vendor_call_id: str | None,
        duration_seconds: int,
        transcript: str | None,
        summary: str | None,
        recording_url: str | None,
        recipient: str | None,
    ) -> tuple[Communication, CostRecord | None]:
        """构造通话记录与按分钟计费的成本记录（时长为 0 时不计费）"""
        call_ref = vendor_call_id or task.external_ref or task.task_id
        if recipient is None:
            lead = await self._stores.lead_store.get_lead(task.lead_id)
            recipient = (normalize_phone(lead.phone) if lead is not None else None) or ""

        communication = Communication(
            communication_id=str(ULID()),
            organization_id=task.organization_id,
            lead_id=task.lead_id,
            task_id=task.task_id,
            channel=ActionType.CALL,
            recipient=recipient,
            status=call_status,
            external_id=vendor_call_id or task.external_ref,
            duration_seconds=duration_seconds,
            transcript=transcript,
            summary=summary,
            recording_url=recording_url,
            started_at=task.executed_at,
            ended_at=now,
            created_at=now,
        )
        cost = None
        if duration_seconds > 0:
            cost = build_cost_record(
                task,
                CostService.BLAND_AI,
                voice_minutes(duration_seconds),
                billable_event=f"voice_call:{call_ref}",
                recorded_at=now,
                communication_id=communication.communication_id,
            )

        return communication, cost

    async def _plan_follow_up(self, task: Task, call_status: str, now: datetime) -> Task | None:
        if self._planner is None:
            return None
        try:
            return await self._planner.plan_after_call(task, call_status, now)
        except Exception:
            log.exception("follow_up_planning_failed", task_id=task.task_id)
            return None

    async def _unmatched(
        self,
        payload: dict[str, Any],
        call_id: str | None,
        claimed_task_id: str | None,
        reason: str,
        now: datetime,
    ) -> WebhookResult:
        """记录无法关联的回调，不修改任何任务"""
        preview = str(payload)[:WEBHOOK_PREVIEW_LENGTH]
        await log.awarning(
            "webhook_unmatched",
            vendor=VOICE_VENDOR,
            call_id=call_id,
            claimed_task_id=claimed_task_id,
            reason=reason,
        )
        await append_activity(
            self._stores,
            new_activity(
                ActivityType.WEBHOOK_UNMATCHED,
                actor=ActorType.WEBHOOK,
                status="skipped",
                message=reason,
                payload=WebhookUnmatchedPayload(
                    vendor=VOICE_VENDOR,
                    vendor_call_id=call_id,
                    claimed_task_id=claimed_task_id,
                    reason=reason,
                    payload_preview=preview,
                ),
                ts=now,
            ),
        )
        return WebhookResult(matched=False, message=reason)
