"""Compliance Gate 测试

测试内容：
1. 规则顺序：禁止联系 > 渠道同意 > 联系时段 > 频次上限
2. 事务类消息豁免联系时段，但不豁免同意与频次
3. 组织时段与线索偏好时段取交集
4. 非法时区回退
5. ComplianceGate 从存储统计近期外呼次数
"""

from datetime import UTC, datetime, timedelta

import pytest
from rentfinder.core.compliance import ComplianceGate, evaluate_compliance, resolve_timezone
from rentfinder.core.exceptions import LeadNotFoundError
from rentfinder.core.models import (
    ActionType,
    ChannelConsent,
    ComplianceRule,
    ContactWindow,
    MessageType,
    OrganizationPolicy,
    TaskStatus,
)

POLICY = OrganizationPolicy(organization_id="org-001")
# 纽约时间 23:00
LATE_NIGHT = datetime(2026, 3, 11, 3, 0, tzinfo=UTC)


def _gate(store_group) -> ComplianceGate:
    return ComplianceGate(
        store_group.task_store,
        store_group.lead_store,
        store_group.policy_store,
    )


class TestEvaluateCompliance:
    """纯函数判定"""

    def test_allows_when_all_rules_pass(self, lead_factory, now):
        decision = evaluate_compliance(
            POLICY, lead_factory(), ActionType.SMS, MessageType.MARKETING, now, 0
        )
        assert decision.allowed
        assert decision.reason is None
        assert decision.local_time.hour == 11

    def test_do_not_contact_checked_first(self, lead_factory):
        lead = lead_factory(do_not_contact=True, sms_consent=ChannelConsent())
        decision = evaluate_compliance(
            POLICY, lead, ActionType.SMS, MessageType.MARKETING, LATE_NIGHT, 99
        )
        assert not decision.allowed
        assert decision.rule == ComplianceRule.DO_NOT_CONTACT
        assert decision.reason == "do not contact"

    def test_consent_is_per_channel(self, lead_factory, now):
        lead = lead_factory(call_consent=ChannelConsent())
        call = evaluate_compliance(POLICY, lead, ActionType.CALL, MessageType.MARKETING, now, 0)
        sms = evaluate_compliance(POLICY, lead, ActionType.SMS, MessageType.MARKETING, now, 0)

        assert not call.allowed
        assert call.rule == ComplianceRule.NO_CONSENT
        assert call.reason == "no consent for channel call"
        assert sms.allowed

    def test_revoked_consent_denies(self, lead_factory, now):
        lead = lead_factory(
            sms_consent=ChannelConsent(
                granted=True,
                granted_at=now - timedelta(days=10),
                revoked_at=now - timedelta(days=1),
            )
        )
        decision = evaluate_compliance(POLICY, lead, ActionType.SMS, MessageType.MARKETING, now, 0)
        assert decision.rule == ComplianceRule.NO_CONSENT

    def test_email_consent_defaults_to_granted(self, lead_factory, now):
        lead = lead_factory(email_consent=ChannelConsent(granted=True))
        decision = evaluate_compliance(
            POLICY, lead, ActionType.EMAIL, MessageType.MARKETING, now, 0
        )
        assert decision.allowed

    def test_outside_contact_hours(self, lead_factory):
        decision = evaluate_compliance(
            POLICY, lead_factory(), ActionType.CALL, MessageType.MARKETING, LATE_NIGHT, 0
        )
        assert not decision.allowed
        assert decision.rule == ComplianceRule.OUTSIDE_CONTACT_HOURS
        assert decision.reason.startswith("outside contact hours (23:00")

    def test_transactional_exempt_from_hours(self, lead_factory):
        decision = evaluate_compliance(
            POLICY, lead_factory(), ActionType.SMS, MessageType.TRANSACTIONAL, LATE_NIGHT, 0
        )
        assert decision.allowed

    def test_transactional_not_exempt_from_consent(self, lead_factory):
        lead = lead_factory(sms_consent=ChannelConsent())
        decision = evaluate_compliance(
            POLICY, lead, ActionType.SMS, MessageType.TRANSACTIONAL, LATE_NIGHT, 0
        )
        assert decision.rule == ComplianceRule.NO_CONSENT

    def test_preferred_window_intersects_policy(self, lead_factory, now):
        lead = lead_factory(preferred_contact_window=ContactWindow(start_hour=12, end_hour=17))
        decision = evaluate_compliance(POLICY, lead, ActionType.SMS, MessageType.MARKETING, now, 0)
        assert decision.rule == ComplianceRule.OUTSIDE_CONTACT_HOURS

    def test_lead_timezone_overrides_org(self, lead_factory, now):
        # 15:00 UTC = 洛杉矶 08:00（夏令时），仍在时段内；东京 00:00 不在
        la = evaluate_compliance(
            POLICY,
            lead_factory(timezone="America/Los_Angeles"),
            ActionType.SMS,
            MessageType.MARKETING,
            now,
            0,
        )
        tokyo = evaluate_compliance(
            POLICY,
            lead_factory(timezone="Asia/Tokyo"),
            ActionType.SMS,
            MessageType.MARKETING,
            now,
            0,
        )
        assert la.allowed
        assert tokyo.rule == ComplianceRule.OUTSIDE_CONTACT_HOURS

    def test_frequency_cap(self, lead_factory, now):
        decision = evaluate_compliance(
            POLICY, lead_factory(), ActionType.SMS, MessageType.TRANSACTIONAL, now, 3
        )
        assert decision.rule == ComplianceRule.FREQUENCY_CAP
        assert decision.reason == "frequency cap (3 contacts in 24h, cap 3)"

    def test_invalid_timezone_falls_back_to_org(self, lead_factory):
        tz = resolve_timezone(lead_factory(timezone="Mars/Olympus"), POLICY)
        assert str(tz) == "America/New_York"

    def test_invalid_org_timezone_falls_back_to_utc(self, lead_factory):
        policy = OrganizationPolicy(organization_id="org-001", timezone="Nowhere/City")
        tz = resolve_timezone(lead_factory(timezone=None), policy)
        assert str(tz) == "UTC"


class TestComplianceGate:
    """ComplianceGate 服务"""

    async def test_counts_recent_contacts_from_store(
        self, store_group, seed_lead, seed_task, seed_policy, now
    ):
        lead = await seed_lead()
        await seed_policy(frequency_cap=2)
        for hours in (1, 3):
            await seed_task(status=TaskStatus.COMPLETED, executed_at=now - timedelta(hours=hours))

        decision = await _gate(store_group).check(
            lead, ActionType.SMS, MessageType.MARKETING, now=now
        )

        assert not decision.allowed
        assert decision.rule == ComplianceRule.FREQUENCY_CAP

    async def test_contacts_outside_window_not_counted(
        self, store_group, seed_lead, seed_task, now
    ):
        lead = await seed_lead()
        for hours in (25, 30, 48):
            await seed_task(status=TaskStatus.COMPLETED, executed_at=now - timedelta(hours=hours))

        decision = await _gate(store_group).check(
            lead, ActionType.SMS, MessageType.MARKETING, now=now
        )

        assert decision.allowed

    async def test_check_lead_unknown(self, store_group, now):
        with pytest.raises(LeadNotFoundError):
            await _gate(store_group).check_lead(
                "missing", ActionType.SMS, MessageType.MARKETING, now=now
            )
