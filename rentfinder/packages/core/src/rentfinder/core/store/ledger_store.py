"""Cost Ledger / 通讯记录 / 外部引用的 SQLite 实现

cost_records 与 communications 均为 append-only。
成本记录以 (task_id, billable_event) 唯一索引保证幂等：重复写入被忽略并返回 False。
"""

import aiosqlite

from ..models.enums import CostService
from ..models.ledger import Communication, CostRecord, ExternalReference
from ..timeutil import from_db, to_db

_COST_COLUMNS = (
    "cost_id, organization_id, service, usage_quantity, usage_unit, unit_cost, "
    "total_cost, task_id, lead_id, communication_id, billable_event, recorded_at"
)

_COMMUNICATION_COLUMNS = (
    "communication_id, organization_id, lead_id, task_id, channel, direction, "
    "recipient, status, external_id, body, duration_seconds, transcript, summary, "
    "recording_url, started_at, ended_at, created_at"
)


class SqliteCostLedger:
    """Cost Ledger 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def record(self, cost: CostRecord) -> bool:
        """幂等写入成本记录

        注意：此方法不自动提交事务，需由调用方管理事务。

        Returns:
            True 如果写入了新记录；同一 (task_id, billable_event) 已存在时返回 False
        """
        cursor = await self._conn.execute(
            f"""
            INSERT OR IGNORE INTO cost_records ({_COST_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                cost.cost_id,
                cost.organization_id,
                cost.service.value,
                cost.usage_quantity,
                cost.usage_unit,
                cost.unit_cost,
                cost.total_cost,
                cost.task_id,
                cost.lead_id,
                cost.communication_id,
                cost.billable_event,
                to_db(cost.recorded_at),
            ),
        )
        return cursor.rowcount == 1

    async def list_for_task(self, task_id: str) -> list[CostRecord]:
        """查询任务的成本记录"""
        cursor = await self._conn.execute(
            f"SELECT {_COST_COLUMNS} FROM cost_records WHERE task_id = ? ORDER BY recorded_at",
            (task_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_cost(row) for row in rows]

    async def list_for_organization(self, organization_id: str) -> list[CostRecord]:
        """查询组织的成本记录"""
        cursor = await self._conn.execute(
            f"SELECT {_COST_COLUMNS} FROM cost_records "
            "WHERE organization_id = ? ORDER BY recorded_at",
            (organization_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_cost(row) for row in rows]

    async def total_for_organization(self, organization_id: str) -> float:
        """组织累计成本（USD）"""
        cursor = await self._conn.execute(
            "SELECT COALESCE(SUM(total_cost), 0) FROM cost_records WHERE organization_id = ?",
            (organization_id,),
        )
        row = await cursor.fetchone()
        return float(row[0]) if row else 0.0

    @staticmethod
    def _row_to_cost(row: aiosqlite.Row) -> CostRecord:
        return CostRecord(
            cost_id=row[0],
            organization_id=row[1],
            service=CostService(row[2]),
            usage_quantity=row[3],
            usage_unit=row[4],
            unit_cost=row[5],
            total_cost=row[6],
            task_id=row[7],
            lead_id=row[8],
            communication_id=row[9],
            billable_event=row[10],
            recorded_at=from_db(row[11]),
        )


class SqliteCommunicationStore:
    """通讯记录的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create(self, communication: Communication) -> None:
        """写入通讯记录

        注意：此方法不自动提交事务，需由调用方管理事务。
        """
        c = communication
        await self._conn.execute(
            f"""
            INSERT INTO communications ({_COMMUNICATION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                c.communication_id,
                c.organization_id,
                c.lead_id,
                c.task_id,
                c.channel.value,
                c.direction,
                c.recipient,
                c.status,
                c.external_id,
                c.body,
                c.duration_seconds,
                c.transcript,
                c.summary,
                c.recording_url,
                to_db(c.started_at),
                to_db(c.ended_at),
                to_db(c.created_at),
            ),
        )

    async def list_for_task(self, task_id: str) -> list[Communication]:
        """查询任务的通讯记录"""
        cursor = await self._conn.execute(
            f"SELECT {_COMMUNICATION_COLUMNS} FROM communications "
            "WHERE task_id = ? ORDER BY created_at",
            (task_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_communication(row) for row in rows]

    async def list_for_lead(self, lead_id: str) -> list[Communication]:
        """查询线索的通讯记录"""
        cursor = await self._conn.execute(
            f"SELECT {_COMMUNICATION_COLUMNS} FROM communications "
            "WHERE lead_id = ? ORDER BY created_at",
            (lead_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_communication(row) for row in rows]

    async def get_by_external_id(self, task_id: str, external_id: str) -> Communication | None:
        """按渠道侧 ID 查询任务的通讯记录"""
        cursor = await self._conn.execute(
            f"SELECT {_COMMUNICATION_COLUMNS} FROM communications "
            "WHERE task_id = ? AND external_id = ? LIMIT 1",
            (task_id, external_id),
        )
        row = await cursor.fetchone()
        return self._row_to_communication(row) if row else None

    @staticmethod
    def _row_to_communication(row: aiosqlite.Row) -> Communication:
        return Communication(
            communication_id=row[0],
            organization_id=row[1],
            lead_id=row[2],
            task_id=row[3],
            channel=row[4],
            direction=row[5],
            recipient=row[6],
            status=row[7],
            external_id=row[8],
            body=row[9],
            duration_seconds=row[10],
            transcript=row[11],
            summary=row[12],
            recording_url=row[13],
            started_at=from_db(row[14]),
            ended_at=from_db(row[15]),
            created_at=from_db(row[16]),
        )


class SqliteExternalRefStore:
    """任务外部引用的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def put(self, ref: ExternalReference) -> bool:
        """写入外部引用（同一 vendor 调用 ID 重复写入被忽略）

        注意：此方法不自动提交事务，需由调用方管理事务。
        """
        cursor = await self._conn.execute(
            """
            INSERT OR IGNORE INTO external_references (vendor, vendor_call_id, task_id, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (ref.vendor, ref.vendor_call_id, ref.task_id, to_db(ref.created_at)),
        )
        return cursor.rowcount == 1

    async def get_by_vendor_call_id(
        self,
        vendor: str,
        vendor_call_id: str,
    ) -> ExternalReference | None:
        """按渠道调用 ID 回查"""
        cursor = await self._conn.execute(
            """
            SELECT task_id, vendor, vendor_call_id, created_at FROM external_references
            WHERE vendor = ? AND vendor_call_id = ?
            """,
            (vendor, vendor_call_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return ExternalReference(
            task_id=row[0],
            vendor=row[1],
            vendor_call_id=row[2],
            created_at=from_db(row[3]),
        )

    async def list_for_task(self, task_id: str) -> list[ExternalReference]:
        """查询任务的所有外部引用"""
        cursor = await self._conn.execute(
            """
            SELECT task_id, vendor, vendor_call_id, created_at FROM external_references
            WHERE task_id = ? ORDER BY created_at
            """,
            (task_id,),
        )
        rows = await cursor.fetchall()
        return [
            ExternalReference(
                task_id=row[0],
                vendor=row[1],
                vendor_call_id=row[2],
                created_at=from_db(row[3]),
            )
            for row in rows
        ]
