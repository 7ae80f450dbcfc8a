"""全局 pytest 配置 -- 临时 SQLite StoreGroup + 线索/任务构造 fixture"""

import json
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from rentfinder.core.models import (
    ActionType,
    AgentType,
    ChannelConsent,
    Lead,
    OrganizationCredentials,
    OrganizationPolicy,
    Task,
    TaskStatus,
    parse_context,
)
from rentfinder.core.store import StoreGroup, create_store_group
from ulid import ULID

# 2026-03-10 15:00 UTC = 纽约时间 11:00（联系时段内）
NOW = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)

ORG_ID = "org-001"
LEAD_ID = "lead-001"

_DEFAULT_CONTEXTS = {
    AgentType.SHOWING_CONFIRMATION: {
        "showing_id": "showing-001",
        "property_id": "prop-001",
        "property_address": "12 Elm St",
    },
    AgentType.NO_SHOW_FOLLOW_UP: {"showing_id": "showing-001", "property_id": "prop-001"},
    AgentType.POST_SHOWING: {"showing_id": "showing-001", "property_id": "prop-001"},
    AgentType.RECAPTURE: {"property_id": "prop-001"},
    AgentType.CAMPAIGN: {
        "campaign_id": "camp-001",
        "campaign_recipient_id": "recip-001",
        "message_body": "Spring special: first month free.",
        "voice_script": "Tell the lead about the spring special.",
    },
    AgentType.WELCOME_SEQUENCE: {"property_id": "prop-001"},
}


@pytest.fixture
def now() -> datetime:
    """测试统一时间基准"""
    return NOW


@pytest.fixture
def lead_factory():
    """构造 Lead：默认三个渠道都已授予同意"""

    def _make(**overrides) -> Lead:
        granted = ChannelConsent(granted=True, granted_at=NOW - timedelta(days=30))
        data = {
            "lead_id": LEAD_ID,
            "organization_id": ORG_ID,
            "full_name": "Jamie Rivera",
            "phone": "(555) 010-0001",
            "email": "Jamie@Example.com",
            "timezone": "America/New_York",
            "sms_consent": granted,
            "call_consent": granted,
            "email_consent": granted,
        }
        data.update(overrides)
        return Lead(**data)

    return _make


@pytest.fixture
def task_factory():
    """构造 Task：默认召回短信，已到期"""

    def _make(**overrides) -> Task:
        agent_type = overrides.pop("agent_type", AgentType.RECAPTURE)
        context = overrides.pop("context", None)
        if context is None or isinstance(context, dict):
            context = parse_context(agent_type, context or _DEFAULT_CONTEXTS[agent_type])
        data = {
            "task_id": str(ULID()),
            "organization_id": ORG_ID,
            "lead_id": LEAD_ID,
            "agent_type": agent_type,
            "action_type": ActionType.SMS,
            "status": TaskStatus.PENDING,
            "scheduled_for": NOW - timedelta(minutes=1),
            "created_at": NOW - timedelta(hours=1),
            "updated_at": NOW - timedelta(hours=1),
            "max_attempts": 3,
            "context": context,
        }
        data.update(overrides)
        return Task(**data)

    return _make


@pytest_asyncio.fixture
async def store_group(tmp_path: Path) -> AsyncGenerator[StoreGroup, None]:
    """已初始化的临时 StoreGroup"""
    sg = await create_store_group(str(tmp_path / "sqlite" / "test.db"))
    yield sg
    await sg.conn.close()


@pytest_asyncio.fixture
async def seed_lead(store_group: StoreGroup, lead_factory):
    """写入线索并返回"""

    async def _seed(lead: Lead | None = None, **overrides) -> Lead:
        lead = lead or lead_factory(**overrides)
        async with store_group.transaction():
            await store_group.lead_store.upsert_lead(lead)
        return lead

    return _seed


@pytest_asyncio.fixture
async def seed_task(store_group: StoreGroup, task_factory):
    """写入任务（任意状态）并返回"""

    async def _seed(task: Task | None = None, **overrides) -> Task:
        task = task or task_factory(**overrides)
        async with store_group.transaction():
            await store_group.task_store.create_task(task)
        return task

    return _seed


@pytest_asyncio.fixture
async def seed_policy(store_group: StoreGroup):
    """写入组织策略并返回"""

    async def _seed(**overrides) -> OrganizationPolicy:
        policy = OrganizationPolicy(
            organization_id=overrides.pop("organization_id", ORG_ID), **overrides
        )
        async with store_group.transaction():
            await store_group.policy_store.put_policy(policy)
        return policy

    return _seed


@pytest_asyncio.fixture
async def seed_credentials(store_group: StoreGroup):
    """写入组织渠道凭证并返回"""

    async def _seed(**overrides) -> OrganizationCredentials:
        credentials = OrganizationCredentials(
            organization_id=overrides.pop("organization_id", ORG_ID), **overrides
        )
        async with store_group.transaction():
            await store_group.policy_store.put_credentials(credentials)
        return credentials

    return _seed


@pytest_asyncio.fixture
async def seed_raw_policy(store_group: StoreGroup):
    """绕过模型校验直接写入策略 JSON（模拟上游同步写入的无效配置）"""

    async def _seed(organization_id: str = ORG_ID, **fields) -> None:
        async with store_group.transaction():
            await store_group.conn.execute(
                "INSERT OR REPLACE INTO organization_policies "
                "(organization_id, policy, updated_at) VALUES (?, ?, ?)",
                (
                    organization_id,
                    json.dumps({"organization_id": organization_id, **fields}),
                    NOW.isoformat(),
                ),
            )

    return _seed
