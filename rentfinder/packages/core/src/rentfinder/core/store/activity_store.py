"""ActivityLog SQLite 实现

活动日志表 append-only：只允许插入，不允许更新或删除。
"""

import json

import aiosqlite

from ..models.activity import Activity
from ..models.enums import ActivityType, ActorType
from ..timeutil import from_db, to_db

_ACTIVITY_COLUMNS = (
    "activity_id, ts, type, actor, organization_id, lead_id, task_id, "
    "status, message, payload, execution_ms"
)


class SqliteActivityLog:
    """ActivityLog 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def append(self, activity: Activity) -> None:
        """追加活动日志（append-only）

        注意：此方法不自动提交事务，需由调用方管理事务。
        """
        await self._conn.execute(
            f"""
            INSERT INTO activity_log ({_ACTIVITY_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                activity.activity_id,
                to_db(activity.ts),
                activity.type.value,
                activity.actor.value,
                activity.organization_id,
                activity.lead_id,
                activity.task_id,
                activity.status,
                activity.message,
                json.dumps(activity.payload, ensure_ascii=False, default=str),
                activity.execution_ms,
            ),
        )

    async def list_for_task(self, task_id: str) -> list[Activity]:
        """查询任务的活动日志，按时间正序"""
        cursor = await self._conn.execute(
            f"SELECT {_ACTIVITY_COLUMNS} FROM activity_log "
            "WHERE task_id = ? ORDER BY ts ASC, activity_id ASC",
            (task_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_activity(row) for row in rows]

    async def list_for_lead(self, lead_id: str, limit: int = 200) -> list[Activity]:
        """查询线索的活动日志（时间线），按时间正序"""
        cursor = await self._conn.execute(
            f"SELECT {_ACTIVITY_COLUMNS} FROM activity_log "
            "WHERE lead_id = ? ORDER BY ts ASC, activity_id ASC LIMIT ?",
            (lead_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_activity(row) for row in rows]

    async def list_by_type(self, activity_type: ActivityType, limit: int = 100) -> list[Activity]:
        """按类型查询最近的活动日志，按时间倒序"""
        cursor = await self._conn.execute(
            f"SELECT {_ACTIVITY_COLUMNS} FROM activity_log "
            "WHERE type = ? ORDER BY ts DESC, activity_id DESC LIMIT ?",
            (activity_type.value, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_activity(row) for row in rows]

    @staticmethod
    def _row_to_activity(row: aiosqlite.Row) -> Activity:
        """将数据库行转换为 Activity 模型"""
        payload = json.loads(row[9]) if row[9] else {}
        return Activity(
            activity_id=row[0],
            ts=from_db(row[1]),
            type=ActivityType(row[2]),
            actor=ActorType(row[3]),
            organization_id=row[4],
            lead_id=row[5],
            task_id=row[6],
            status=row[7],
            message=row[8],
            payload=payload,
            execution_ms=row[10],
        )
