"""Compliance Gate -- 外呼前的合规判定

evaluate_compliance 是纯函数：(组织策略, 线索, 渠道, 消息性质, 当前时间, 近期外呼次数) -> 判定。
规则按顺序匹配，首个命中即拒绝：
1. 全局禁止联系
2. 渠道未授予同意（短信/电话/邮件各自独立）
3. 线索本地时间不在联系时段内（事务类消息豁免）
4. 时间窗内外呼次数达到组织上限
5. 放行

ComplianceGate 是共享服务：调度器与"人工预约看房"等上游流程都通过它做判定。
"""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from .exceptions import LeadNotFoundError
from .models.compliance import ComplianceDecision, ComplianceRule
from .models.enums import ActionType, MessageType
from .models.lead import ChannelConsent, Lead
from .models.policy import OrganizationPolicy
from .store.protocols import LeadStore, PolicyStore, TaskStore
from .timeutil import ensure_utc, utcnow

log = structlog.get_logger()

REASON_DO_NOT_CONTACT = "do not contact"
REASON_NO_CONSENT = "no consent for channel"
REASON_OUTSIDE_HOURS = "outside contact hours"
REASON_FREQUENCY_CAP = "frequency cap"


def resolve_timezone(lead: Lead, policy: OrganizationPolicy) -> ZoneInfo:
    """线索时区优先，其次组织时区；非法时区名回退到组织时区 / UTC"""
    for name in (lead.timezone, policy.timezone):
        if not name:
            continue
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            log.warning("invalid_timezone", timezone=name, lead_id=lead.lead_id)
    return ZoneInfo("UTC")


def _consent_for(lead: Lead, channel: ActionType) -> ChannelConsent:
    if channel == ActionType.SMS:
        return lead.sms_consent
    if channel == ActionType.CALL:
        return lead.call_consent
    return lead.email_consent


def evaluate_compliance(
    policy: OrganizationPolicy,
    lead: Lead,
    channel: ActionType,
    message_type: MessageType,
    now: datetime,
    recent_contacts: int,
) -> ComplianceDecision:
    """按规则顺序评估一次外呼是否合规

    Args:
        policy: 组织策略
        lead: 目标线索
        channel: 外呼渠道
        message_type: 营销类 / 事务类
        now: 当前时间（任意时区，内部换算到线索本地时间）
        recent_contacts: 线索在 policy.frequency_window_hours 内已发起的外呼次数

    Returns:
        ComplianceDecision
    """
    now = ensure_utc(now)
    local_now = now.astimezone(resolve_timezone(lead, policy))

    def deny(rule: ComplianceRule, reason: str) -> ComplianceDecision:
        return ComplianceDecision(
            allowed=False,
            reason=reason,
            rule=rule,
            channel=channel,
            message_type=message_type,
            consulted_at=now,
            local_time=local_now,
        )

    # 1. 全局禁止联系
    if lead.do_not_contact:
        return deny(ComplianceRule.DO_NOT_CONTACT, REASON_DO_NOT_CONTACT)

    # 2. 渠道同意
    if not _consent_for(lead, channel).is_active:
        return deny(ComplianceRule.NO_CONSENT, f"{REASON_NO_CONSENT} {channel.value}")

    # 3. 联系时段（组织时段与线索偏好时段取交集），事务类豁免
    if message_type != MessageType.TRANSACTIONAL:
        hour = local_now.hour
        in_window = policy.contact_window.contains(hour)
        if in_window and lead.preferred_contact_window is not None:
            in_window = lead.preferred_contact_window.contains(hour)
        if not in_window:
            return deny(
                ComplianceRule.OUTSIDE_CONTACT_HOURS,
                f"{REASON_OUTSIDE_HOURS} ({local_now.strftime('%H:%M %Z')})",
            )

    # 4. 频次上限
    if recent_contacts >= policy.frequency_cap:
        return deny(
            ComplianceRule.FREQUENCY_CAP,
            f"{REASON_FREQUENCY_CAP} ({recent_contacts} contacts in "
            f"{policy.frequency_window_hours}h, cap {policy.frequency_cap})",
        )

    # 5. 放行
    return ComplianceDecision(
        allowed=True,
        channel=channel,
        message_type=message_type,
        consulted_at=now,
        local_time=local_now,
    )


class ComplianceGate:
    """合规闸门服务 -- 从存储加载策略与近期外呼次数后调用 evaluate_compliance"""

    def __init__(
        self,
        task_store: TaskStore,
        lead_store: LeadStore,
        policy_store: PolicyStore,
    ) -> None:
        self._task_store = task_store
        self._lead_store = lead_store
        self._policy_store = policy_store

    async def check(
        self,
        lead: Lead,
        channel: ActionType,
        message_type: MessageType,
        now: datetime | None = None,
        policy: OrganizationPolicy | None = None,
    ) -> ComplianceDecision:
        """评估对线索的一次外呼

        Args:
            lead: 目标线索
            channel: 外呼渠道
            message_type: 消息性质
            now: 当前时间，默认 UTC now
            policy: 已加载的组织策略，None 时从存储读取
        """
        now = now or utcnow()
        if policy is None:
            policy = await self._policy_store.get_policy(lead.organization_id)
        since = now - timedelta(hours=policy.frequency_window_hours)
        recent = await self._task_store.count_recent_contacts(lead.lead_id, since)
        decision = evaluate_compliance(policy, lead, channel, message_type, now, recent)
        if not decision.allowed:
            log.info(
                "compliance_denied",
                lead_id=lead.lead_id,
                channel=channel.value,
                rule=decision.rule,
                reason=decision.reason,
            )
        return decision

    async def check_lead(
        self,
        lead_id: str,
        channel: ActionType,
        message_type: MessageType,
        now: datetime | None = None,
    ) -> ComplianceDecision:
        """按 lead_id 评估（供 HTTP 接口与任务创建预检使用）

        Raises:
            LeadNotFoundError: 线索不存在
        """
        lead = await self._lead_store.get_lead(lead_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        return await self.check(lead, channel, message_type, now)
