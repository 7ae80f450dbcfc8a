"""TaskStore SQLite 实现

所有写方法不自动提交事务，由调用方（store/transaction.py）管理事务。
并发安全依赖两条 SQL 语义：
- claim_due_tasks 是单条条件 UPDATE（非先读后写），保证一条 pending 任务只被一个调度实例认领；
- update_status 是 compare-and-swap，当前状态不匹配时不修改并返回 False。
"""

from datetime import datetime
from enum import Enum
from typing import Any

import aiosqlite

from ..exceptions import InvalidTransitionError
from ..models.context import context_from_json
from ..models.enums import (
    CANCELLABLE_ON_TAKEOVER,
    FailureScope,
    TaskStatus,
    validate_transition,
)
from ..models.task import Task
from ..timeutil import from_db, to_db

_TASK_COLUMNS = (
    "task_id, organization_id, lead_id, agent_type, action_type, status, "
    "scheduled_for, created_at, updated_at, claimed_at, executed_at, completed_at, "
    "attempt_number, max_attempts, context, external_ref, claim_token, "
    "idempotency_key, result_communication_id, failure_reason, failure_kind, "
    "failure_scope, cancel_reason"
)

# update_status 允许随状态一起更新的列
_UPDATABLE_FIELDS = frozenset(
    {
        "scheduled_for",
        "claimed_at",
        "executed_at",
        "completed_at",
        "attempt_number",
        "external_ref",
        "claim_token",
        "result_communication_id",
        "failure_reason",
        "failure_kind",
        "failure_scope",
        "cancel_reason",
    }
)


def _to_db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db(value)
    if isinstance(value, Enum):
        return value.value
    return value


class SqliteTaskStore:
    """TaskStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_task(self, task: Task) -> None:
        """创建任务记录"""
        await self._conn.execute(
            f"""
            INSERT INTO tasks ({_TASK_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.task_id,
                task.organization_id,
                task.lead_id,
                task.agent_type.value,
                task.action_type.value,
                task.status.value,
                to_db(task.scheduled_for),
                to_db(task.created_at),
                to_db(task.updated_at),
                to_db(task.claimed_at),
                to_db(task.executed_at),
                to_db(task.completed_at),
                task.attempt_number,
                task.max_attempts,
                task.context.model_dump_json(),
                task.external_ref,
                task.claim_token,
                task.idempotency_key,
                task.result_communication_id,
                task.failure_reason,
                _to_db_value(task.failure_kind),
                _to_db_value(task.failure_scope),
                task.cancel_reason,
            ),
        )

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        cursor = await self._conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def get_task_by_idempotency_key(self, key: str) -> Task | None:
        """根据创建幂等键查询任务"""
        cursor = await self._conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE idempotency_key = ?",
            (key,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def list_tasks(
        self,
        status: str | None = None,
        lead_id: str | None = None,
        organization_id: str | None = None,
        failure_scope: FailureScope | str | None = None,
        limit: int = 200,
    ) -> list[Task]:
        """查询任务列表，支持多条件筛选，按 scheduled_for 倒序"""
        clauses: list[str] = []
        params: list[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(str(status))
        if lead_id:
            clauses.append("lead_id = ?")
            params.append(lead_id)
        if organization_id:
            clauses.append("organization_id = ?")
            params.append(organization_id)
        if failure_scope:
            clauses.append("failure_scope = ?")
            params.append(str(failure_scope))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        cursor = await self._conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks {where} "
            "ORDER BY scheduled_for DESC, task_id DESC LIMIT ?",
            params,
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def claim_due_tasks(
        self,
        now: datetime,
        limit: int,
        claim_token: str,
    ) -> list[Task]:
        """原子认领到期任务：pending 且 scheduled_for <= now 且线索未被人工接管

        单条条件 UPDATE + RETURNING，WHERE 中重复 status = 'pending'，
        并发的另一个调度实例拿到写锁后只会看到已被认领的行。

        注意：此方法不自动提交事务，需由调用方管理事务。
        """
        now_s = to_db(now)
        cursor = await self._conn.execute(
            f"""
            UPDATE tasks
            SET status = 'claimed', claimed_at = ?, claim_token = ?, updated_at = ?
            WHERE status = 'pending'
              AND task_id IN (
                SELECT t.task_id FROM tasks t
                WHERE t.status = 'pending'
                  AND t.scheduled_for <= ?
                  AND NOT EXISTS (
                    SELECT 1 FROM leads l
                    WHERE l.lead_id = t.lead_id AND l.is_human_controlled = 1
                  )
                ORDER BY t.scheduled_for ASC, t.task_id ASC
                LIMIT ?
              )
            RETURNING {_TASK_COLUMNS}
            """,
            (now_s, claim_token, now_s, now_s, limit),
        )
        rows = await cursor.fetchall()
        tasks = [self._row_to_task(row) for row in rows]
        tasks.sort(key=lambda t: (t.scheduled_for, t.task_id))
        return tasks

    async def update_status(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        updated_at: datetime,
        **fields: Any,
    ) -> bool:
        """compare-and-swap 状态更新

        Args:
            task_id: 任务 ID
            from_status: 期望的当前状态
            to_status: 目标状态
            updated_at: 更新时间
            **fields: 随状态一起更新的列（白名单见 _UPDATABLE_FIELDS）

        Returns:
            True 如果更新成功；当前状态与 from_status 不一致时返回 False

        Raises:
            InvalidTransitionError: 状态机不允许该流转
            ValueError: fields 中含有不可更新的列
        """
        if not validate_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")

        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [to_status.value, to_db(updated_at)]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(_to_db_value(value))
        params.extend([task_id, from_status.value])

        cursor = await self._conn.execute(
            f"UPDATE tasks SET {', '.join(assignments)} WHERE task_id = ? AND status = ?",
            params,
        )
        return cursor.rowcount == 1

    async def cancel_open_tasks_for_lead(
        self,
        lead_id: str,
        reason: str,
        now: datetime,
    ) -> list[str]:
        """取消线索下所有 pending/claimed 任务，in_progress 不受影响

        Returns:
            被取消的 task_id 列表
        """
        statuses = sorted(s.value for s in CANCELLABLE_ON_TAKEOVER)
        now_s = to_db(now)
        cursor = await self._conn.execute(
            f"""
            UPDATE tasks
            SET status = 'cancelled', cancel_reason = ?, completed_at = ?, updated_at = ?
            WHERE lead_id = ? AND status IN ({", ".join("?" for _ in statuses)})
            RETURNING task_id
            """,
            (reason, now_s, now_s, lead_id, *statuses),
        )
        rows = await cursor.fetchall()
        return sorted(row[0] for row in rows)

    async def list_in_progress(
        self,
        executed_before: datetime,
        limit: int = 100,
        after: tuple[datetime, str] | None = None,
    ) -> list[Task]:
        """查询 executed_at 早于指定时间仍处于 in_progress 的任务

        按 (executed_at, task_id) 升序分页，after 为上一页最后一条的 (executed_at, task_id)。
        """
        clauses = ["status = 'in_progress'", "executed_at <= ?"]
        params: list[Any] = [to_db(executed_before)]
        if after is not None:
            clauses.append("(executed_at > ? OR (executed_at = ? AND task_id > ?))")
            params.extend([to_db(after[0]), to_db(after[0]), after[1]])
        params.append(limit)
        cursor = await self._conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE {' AND '.join(clauses)} "
            "ORDER BY executed_at ASC, task_id ASC LIMIT ?",
            params,
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_stale_claims(
        self,
        claimed_before: datetime,
        limit: int = 100,
    ) -> list[Task]:
        """查询认领后长时间未推进的任务（调度进程中途崩溃遗留）"""
        cursor = await self._conn.execute(
            f"""
            SELECT {_TASK_COLUMNS} FROM tasks
            WHERE status = 'claimed' AND claimed_at <= ?
            ORDER BY claimed_at ASC LIMIT ?
            """,
            (to_db(claimed_before), limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def count_recent_contacts(self, lead_id: str, since: datetime) -> int:
        """统计线索在 since 之后已发起的外呼次数（in_progress + completed）"""
        cursor = await self._conn.execute(
            """
            SELECT COUNT(*) FROM tasks
            WHERE lead_id = ?
              AND status IN ('in_progress', 'completed')
              AND executed_at >= ?
            """,
            (lead_id, to_db(since)),
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> Task:
        """将数据库行转换为 Task 模型"""
        return Task(
            task_id=row[0],
            organization_id=row[1],
            lead_id=row[2],
            agent_type=row[3],
            action_type=row[4],
            status=row[5],
            scheduled_for=from_db(row[6]),
            created_at=from_db(row[7]),
            updated_at=from_db(row[8]),
            claimed_at=from_db(row[9]),
            executed_at=from_db(row[10]),
            completed_at=from_db(row[11]),
            attempt_number=row[12],
            max_attempts=row[13],
            context=context_from_json(row[14]),  # context 列
            external_ref=row[15],
            claim_token=row[16],
            idempotency_key=row[17],
            result_communication_id=row[18],
            failure_reason=row[19],
            failure_kind=row[20],
            failure_scope=row[21],
            cancel_reason=row[22],
        )
