"""LeadStore SQLite 实现

线索数据由上游业务维护，调度核心只读取；
唯一的写操作是人工接管标记（set_human_control）。
"""

import json
from datetime import datetime

import aiosqlite

from ..models.lead import ChannelConsent, ContactWindow, Lead
from ..timeutil import from_db, to_db, utcnow

_LEAD_COLUMNS = (
    "lead_id, organization_id, full_name, phone, email, timezone, consents, "
    "do_not_contact, preferred_contact_window, is_human_controlled, "
    "human_controlled_at, human_controlled_by, human_control_reason, "
    "created_at, updated_at"
)


class SqliteLeadStore:
    """LeadStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def upsert_lead(self, lead: Lead) -> None:
        """写入或覆盖线索（上游同步入口，测试与导入使用）"""
        now = utcnow()
        consents = {
            "sms": lead.sms_consent.model_dump(mode="json"),
            "call": lead.call_consent.model_dump(mode="json"),
            "email": lead.email_consent.model_dump(mode="json"),
        }
        window = (
            lead.preferred_contact_window.model_dump_json()
            if lead.preferred_contact_window
            else None
        )
        await self._conn.execute(
            f"""
            INSERT INTO leads ({_LEAD_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(lead_id) DO UPDATE SET
                organization_id = excluded.organization_id,
                full_name = excluded.full_name,
                phone = excluded.phone,
                email = excluded.email,
                timezone = excluded.timezone,
                consents = excluded.consents,
                do_not_contact = excluded.do_not_contact,
                preferred_contact_window = excluded.preferred_contact_window,
                is_human_controlled = excluded.is_human_controlled,
                human_controlled_at = excluded.human_controlled_at,
                human_controlled_by = excluded.human_controlled_by,
                human_control_reason = excluded.human_control_reason,
                updated_at = excluded.updated_at
            """,
            (
                lead.lead_id,
                lead.organization_id,
                lead.full_name,
                lead.phone,
                lead.email,
                lead.timezone,
                json.dumps(consents),
                int(lead.do_not_contact),
                window,
                int(lead.is_human_controlled),
                to_db(lead.human_controlled_at),
                lead.human_controlled_by,
                lead.human_control_reason,
                to_db(lead.created_at or now),
                to_db(lead.updated_at or now),
            ),
        )

    async def get_lead(self, lead_id: str) -> Lead | None:
        """根据 lead_id 查询线索"""
        cursor = await self._conn.execute(
            f"SELECT {_LEAD_COLUMNS} FROM leads WHERE lead_id = ?",
            (lead_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_lead(row)

    async def set_human_control(
        self,
        lead_id: str,
        controlled: bool,
        now: datetime,
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> bool:
        """设置/清除人工接管标记

        注意：此方法不自动提交事务，需由调用方管理事务。

        Returns:
            True 如果线索存在并已更新
        """
        if controlled:
            cursor = await self._conn.execute(
                """
                UPDATE leads
                SET is_human_controlled = 1, human_controlled_at = ?,
                    human_controlled_by = ?, human_control_reason = ?, updated_at = ?
                WHERE lead_id = ?
                """,
                (to_db(now), actor_id, reason, to_db(now), lead_id),
            )
        else:
            cursor = await self._conn.execute(
                """
                UPDATE leads
                SET is_human_controlled = 0, human_controlled_at = NULL,
                    human_controlled_by = NULL, human_control_reason = NULL, updated_at = ?
                WHERE lead_id = ?
                """,
                (to_db(now), lead_id),
            )
        return cursor.rowcount == 1

    @staticmethod
    def _row_to_lead(row: aiosqlite.Row) -> Lead:
        """将数据库行转换为 Lead 模型"""
        consents = json.loads(row[6]) if row[6] else {}
        window = ContactWindow.model_validate_json(row[8]) if row[8] else None
        return Lead(
            lead_id=row[0],
            organization_id=row[1],
            full_name=row[2],
            phone=row[3],
            email=row[4],
            timezone=row[5],
            sms_consent=ChannelConsent(**consents.get("sms", {})),
            call_consent=ChannelConsent(**consents.get("call", {})),
            email_consent=ChannelConsent(**consents.get("email", {"granted": True})),
            do_not_contact=bool(row[7]),
            preferred_contact_window=window,
            is_human_controlled=bool(row[9]),
            human_controlled_at=from_db(row[10]),
            human_controlled_by=row[11],
            human_control_reason=row[12],
            created_at=from_db(row[13]),
            updated_at=from_db(row[14]),
        )
