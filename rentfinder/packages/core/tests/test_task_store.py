"""TaskStore 测试

测试内容：
1. claim_due_tasks 只认领到期、未被人工接管的 pending 任务
2. 重复认领拿不到同一任务
3. update_status compare-and-swap 语义与非法流转
4. 人工接管批量取消不影响 in_progress
5. idempotency_key 唯一约束
6. 近期外呼计数 / 卡单查询
"""

from datetime import timedelta

import aiosqlite
import pytest
from rentfinder.core.exceptions import InvalidTransitionError
from rentfinder.core.models import FailureKind, FailureScope, TaskStatus


async def _claim(store_group, now, limit=10, token="cycle-1"):
    async with store_group.transaction():
        return await store_group.task_store.claim_due_tasks(now, limit, token)


class TestClaimDueTasks:
    """原子认领"""

    async def test_claims_only_due_pending(self, store_group, seed_lead, seed_task, now):
        await seed_lead()
        due = await seed_task(scheduled_for=now - timedelta(minutes=5))
        await seed_task(scheduled_for=now + timedelta(minutes=5))
        await seed_task(status=TaskStatus.COMPLETED, completed_at=now)

        claimed = await _claim(store_group, now)

        assert [t.task_id for t in claimed] == [due.task_id]
        assert claimed[0].status == TaskStatus.CLAIMED
        assert claimed[0].claim_token == "cycle-1"
        assert claimed[0].claimed_at == now

    async def test_skips_human_controlled_leads(self, store_group, seed_lead, seed_task, now):
        await seed_lead(is_human_controlled=True)
        await seed_task()

        assert await _claim(store_group, now) == []

    async def test_claims_oldest_first_up_to_limit(self, store_group, seed_lead, seed_task, now):
        await seed_lead()
        tasks = [await seed_task(scheduled_for=now - timedelta(minutes=m)) for m in (1, 30, 10)]

        claimed = await _claim(store_group, now, limit=2)

        assert [t.task_id for t in claimed] == [tasks[1].task_id, tasks[2].task_id]

    async def test_second_claim_gets_nothing(self, store_group, seed_lead, seed_task, now):
        """同一任务只能被认领一次"""
        await seed_lead()
        await seed_task()

        first = await _claim(store_group, now, token="cycle-1")
        second = await _claim(store_group, now, token="cycle-2")

        assert len(first) == 1
        assert second == []


class TestUpdateStatus:
    """compare-and-swap 状态更新"""

    async def test_cas_success(self, store_group, seed_lead, seed_task, now):
        await seed_lead()
        task = await seed_task(status=TaskStatus.CLAIMED, claimed_at=now)

        async with store_group.transaction():
            ok = await store_group.task_store.update_status(
                task.task_id,
                TaskStatus.CLAIMED,
                TaskStatus.FAILED,
                now,
                failure_reason="boom",
                failure_kind=FailureKind.PERMANENT,
                failure_scope=FailureScope.INTEGRATION,
            )

        assert ok
        stored = await store_group.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.FAILED
        assert stored.failure_kind == FailureKind.PERMANENT
        assert stored.failure_scope == FailureScope.INTEGRATION

    async def test_cas_mismatch_returns_false(self, store_group, seed_lead, seed_task, now):
        await seed_lead()
        task = await seed_task(status=TaskStatus.CANCELLED, cancel_reason="paused")

        async with store_group.transaction():
            ok = await store_group.task_store.update_status(
                task.task_id, TaskStatus.CLAIMED, TaskStatus.COMPLETED, now
            )

        assert not ok
        stored = await store_group.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.CANCELLED

    async def test_transition_out_of_terminal_rejected(
        self, store_group, seed_lead, seed_task, now
    ):
        await seed_lead()
        task = await seed_task(status=TaskStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError):
            await store_group.task_store.update_status(
                task.task_id, TaskStatus.COMPLETED, TaskStatus.PENDING, now
            )

    async def test_unknown_field_rejected(self, store_group, seed_lead, seed_task, now):
        await seed_lead()
        task = await seed_task(status=TaskStatus.CLAIMED)

        with pytest.raises(ValueError, match="not updatable"):
            await store_group.task_store.update_status(
                task.task_id, TaskStatus.CLAIMED, TaskStatus.PENDING, now, lead_id="other"
            )

    async def test_none_clears_column(self, store_group, seed_lead, seed_task, now):
        await seed_lead()
        task = await seed_task(status=TaskStatus.CLAIMED, claimed_at=now, claim_token="c-1")

        async with store_group.transaction():
            await store_group.task_store.update_status(
                task.task_id,
                TaskStatus.CLAIMED,
                TaskStatus.PENDING,
                now,
                claimed_at=None,
                claim_token=None,
            )

        stored = await store_group.task_store.get_task(task.task_id)
        assert stored.claimed_at is None
        assert stored.claim_token is None


class TestCancelForLead:
    """人工接管批量取消"""

    async def test_cancels_pending_and_claimed_only(self, store_group, seed_lead, seed_task, now):
        await seed_lead()
        pending = await seed_task()
        claimed = await seed_task(status=TaskStatus.CLAIMED, claimed_at=now)
        running = await seed_task(status=TaskStatus.IN_PROGRESS, executed_at=now)

        async with store_group.transaction():
            cancelled = await store_group.task_store.cancel_open_tasks_for_lead(
                "lead-001", "operator takeover", now
            )

        assert cancelled == sorted([pending.task_id, claimed.task_id])
        stored = await store_group.task_store.get_task(running.task_id)
        assert stored.status == TaskStatus.IN_PROGRESS
        stored = await store_group.task_store.get_task(pending.task_id)
        assert stored.cancel_reason == "operator takeover"


class TestIdempotencyKey:
    """创建幂等键唯一约束"""

    async def test_duplicate_key_raises(self, store_group, seed_lead, seed_task):
        await seed_lead()
        await seed_task(idempotency_key="showing-001:confirm")

        with pytest.raises(aiosqlite.IntegrityError, match="tasks.idempotency_key"):
            await seed_task(idempotency_key="showing-001:confirm")

    async def test_lookup_by_key(self, store_group, seed_lead, seed_task):
        await seed_lead()
        task = await seed_task(idempotency_key="k-1")

        found = await store_group.task_store.get_task_by_idempotency_key("k-1")

        assert found.task_id == task.task_id
        assert await store_group.task_store.get_task_by_idempotency_key("k-2") is None

    async def test_null_keys_do_not_conflict(self, store_group, seed_lead, seed_task):
        await seed_lead()
        await seed_task()
        await seed_task()

        assert len(await store_group.task_store.list_tasks()) == 2


class TestQueries:
    """计数与卡单查询"""

    async def test_count_recent_contacts(self, store_group, seed_lead, seed_task, now):
        await seed_lead()
        await seed_task(status=TaskStatus.COMPLETED, executed_at=now - timedelta(hours=2))
        await seed_task(status=TaskStatus.IN_PROGRESS, executed_at=now - timedelta(hours=1))
        await seed_task(status=TaskStatus.COMPLETED, executed_at=now - timedelta(hours=30))
        await seed_task(status=TaskStatus.FAILED, executed_at=now - timedelta(hours=1))

        count = await store_group.task_store.count_recent_contacts(
            "lead-001", now - timedelta(hours=24)
        )

        assert count == 2

    async def test_list_in_progress_and_stale_claims(self, store_group, seed_lead, seed_task, now):
        await seed_lead()
        old_call = await seed_task(
            status=TaskStatus.IN_PROGRESS, executed_at=now - timedelta(hours=2)
        )
        await seed_task(status=TaskStatus.IN_PROGRESS, executed_at=now + timedelta(minutes=1))
        stale = await seed_task(status=TaskStatus.CLAIMED, claimed_at=now - timedelta(hours=1))
        await seed_task(status=TaskStatus.CLAIMED, claimed_at=now)

        in_progress = await store_group.task_store.list_in_progress(now)
        stale_claims = await store_group.task_store.list_stale_claims(
            now - timedelta(minutes=10)
        )

        assert [t.task_id for t in in_progress] == [old_call.task_id]
        assert [t.task_id for t in stale_claims] == [stale.task_id]

    async def test_list_in_progress_pages_by_cursor(self, store_group, seed_lead, seed_task, now):
        """按 (executed_at, task_id) 游标分页，同一时刻的多条任务不会漏读或重读"""
        await seed_lead()
        same_time = now - timedelta(hours=3)
        expected = []
        for _ in range(3):
            expected.append(
                (await seed_task(status=TaskStatus.IN_PROGRESS, executed_at=same_time)).task_id
            )
        later = await seed_task(
            status=TaskStatus.IN_PROGRESS, executed_at=now - timedelta(hours=1)
        )
        expected = sorted(expected) + [later.task_id]

        seen = []
        after = None
        while True:
            page = await store_group.task_store.list_in_progress(now, 2, after)
            seen.extend(t.task_id for t in page)
            if len(page) < 2:
                break
            after = (page[-1].executed_at, page[-1].task_id)

        assert seen == expected

    async def test_list_tasks_filters(self, store_group, seed_lead, seed_task, now):
        await seed_lead()
        await seed_lead(lead_id="lead-002")
        failed = await seed_task(
            status=TaskStatus.FAILED,
            failure_kind=FailureKind.PERMANENT,
            failure_scope=FailureScope.INTEGRATION,
        )
        await seed_task(lead_id="lead-002")

        by_scope = await store_group.task_store.list_tasks(failure_scope=FailureScope.INTEGRATION)
        by_lead = await store_group.task_store.list_tasks(lead_id="lead-002")

        assert [t.task_id for t in by_scope] == [failed.task_id]
        assert len(by_lead) == 1
