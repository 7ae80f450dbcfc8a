"""原子事务与账本测试

测试内容：
1. transaction() 异常时整体回滚
2. 成本账本按 (task_id, billable_event) 幂等
3. 同步渠道受理：CAS 失败时通讯记录与成本仍然落盘
4. 异步完成：CAS 失败时不写入任何内容
5. 人工接管单事务写入
"""

from datetime import timedelta

import pytest
from rentfinder.core.models import (
    ActionType,
    ActivityType,
    Communication,
    CostRecord,
    CostService,
    ExternalReference,
    TaskStatus,
    new_activity,
)
from rentfinder.core.store.transaction import (
    complete_sync_dispatch,
    create_task,
    finalize_call,
    pause_lead,
    transition_task,
)
from ulid import ULID


def _communication(task, now, channel=ActionType.SMS) -> Communication:
    return Communication(
        communication_id=str(ULID()),
        organization_id=task.organization_id,
        lead_id=task.lead_id,
        task_id=task.task_id,
        channel=channel,
        recipient="+15550100001",
        status="sent",
        created_at=now,
    )


def _cost(task, now, event="sms:SM1", total=0.0079) -> CostRecord:
    return CostRecord(
        cost_id=str(ULID()),
        organization_id=task.organization_id,
        service=CostService.TWILIO_SMS,
        usage_quantity=1,
        usage_unit="messages",
        unit_cost=0.0079,
        total_cost=total,
        task_id=task.task_id,
        lead_id=task.lead_id,
        billable_event=event,
        recorded_at=now,
    )


class TestTransaction:
    """StoreGroup.transaction()"""

    async def test_rollback_on_exception(self, store_group, seed_lead, task_factory):
        await seed_lead()
        task = task_factory()

        with pytest.raises(RuntimeError):
            async with store_group.transaction():
                await store_group.task_store.create_task(task)
                raise RuntimeError("boom")

        assert await store_group.task_store.get_task(task.task_id) is None

    async def test_create_task_with_activities(self, store_group, seed_lead, task_factory, now):
        await seed_lead()
        task = task_factory()

        await create_task(
            store_group, task, new_activity(ActivityType.TASK_CREATED, task=task, ts=now)
        )

        activities = await store_group.activity_log.list_for_task(task.task_id)
        assert [a.type for a in activities] == [ActivityType.TASK_CREATED]

    async def test_transition_activity_only_on_success(
        self, store_group, seed_lead, seed_task, now
    ):
        await seed_lead()
        task = await seed_task(status=TaskStatus.CANCELLED)

        ok = await transition_task(
            store_group,
            task.task_id,
            TaskStatus.CLAIMED,
            TaskStatus.FAILED,
            now,
            activity=new_activity(ActivityType.TASK_FAILED, task=task, ts=now),
        )

        assert not ok
        assert await store_group.activity_log.list_for_task(task.task_id) == []


class TestCostLedger:
    """成本账本幂等"""

    async def test_duplicate_billable_event_ignored(self, store_group, seed_lead, seed_task, now):
        await seed_lead()
        task = await seed_task()

        async with store_group.transaction():
            first = await store_group.cost_ledger.record(_cost(task, now))
            second = await store_group.cost_ledger.record(_cost(task, now))

        assert first is True
        assert second is False
        assert len(await store_group.cost_ledger.list_for_task(task.task_id)) == 1

    async def test_total_for_organization(self, store_group, seed_lead, seed_task, now):
        await seed_lead()
        task = await seed_task()

        async with store_group.transaction():
            await store_group.cost_ledger.record(_cost(task, now, "sms:SM1", 0.5))
            await store_group.cost_ledger.record(_cost(task, now, "sms:SM2", 0.25))

        assert await store_group.cost_ledger.total_for_organization("org-001") == pytest.approx(
            0.75
        )


class TestDispatchTransactions:
    """调度结果落盘"""

    async def test_sync_dispatch_persists_evidence_when_cas_lost(
        self, store_group, seed_lead, seed_task, now
    ):
        """任务已被取消：状态不变，但渠道副作用的证据保留"""
        await seed_lead()
        task = await seed_task(status=TaskStatus.CANCELLED, cancel_reason="paused")
        communication = _communication(task, now)

        ok, cost_recorded = await complete_sync_dispatch(
            store_group,
            task,
            now,
            communication,
            ExternalReference(
                task_id=task.task_id, vendor="twilio", vendor_call_id="SM1", created_at=now
            ),
            _cost(task, now),
            new_activity(ActivityType.DISPATCH_ACCEPTED, task=task, ts=now),
        )

        assert not ok
        assert cost_recorded
        stored = await store_group.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.CANCELLED
        assert len(await store_group.communication_store.list_for_task(task.task_id)) == 1

    async def test_finalize_call_writes_nothing_when_cas_lost(
        self, store_group, seed_lead, seed_task, now
    ):
        await seed_lead()
        task = await seed_task(
            action_type=ActionType.CALL,
            status=TaskStatus.COMPLETED,
            executed_at=now - timedelta(minutes=5),
        )

        ok, cost_recorded = await finalize_call(
            store_group,
            task,
            TaskStatus.COMPLETED,
            now,
            _communication(task, now, ActionType.CALL),
            _cost(task, now, "voice_call:c-1"),
            new_activity(ActivityType.TASK_COMPLETED, task=task, ts=now),
        )

        assert (ok, cost_recorded) == (False, False)
        assert await store_group.communication_store.list_for_task(task.task_id) == []
        assert await store_group.cost_ledger.list_for_task(task.task_id) == []
        assert await store_group.activity_log.list_for_task(task.task_id) == []

    async def test_pause_lead_single_transaction(self, store_group, seed_lead, seed_task, now):
        lead = await seed_lead()
        pending = await seed_task()

        cancelled = await pause_lead(
            store_group,
            lead,
            "angry caller",
            "agent-7",
            now,
            lambda ids: [
                new_activity(
                    ActivityType.LEAD_PAUSED,
                    organization_id=lead.organization_id,
                    lead_id=lead.lead_id,
                    payload={"cancelled": ids},
                    ts=now,
                )
            ],
        )

        assert cancelled == [pending.task_id]
        stored = await store_group.lead_store.get_lead(lead.lead_id)
        assert stored.is_human_controlled
        assert stored.human_controlled_by == "agent-7"
        assert stored.human_control_reason == "angry caller"
        paused = await store_group.activity_log.list_by_type(ActivityType.LEAD_PAUSED)
        assert paused[0].payload == {"cancelled": [pending.task_id]}
