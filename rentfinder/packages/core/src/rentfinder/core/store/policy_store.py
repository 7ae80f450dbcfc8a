"""组织策略与凭证的 SQLite 实现

两者都是外部输入，调度核心只读；put_* 方法供上游同步与测试使用。
"""

import aiosqlite
from pydantic import SecretStr, ValidationError

from ..exceptions import InvalidPolicyError
from ..models.policy import OrganizationCredentials, OrganizationPolicy
from ..timeutil import to_db, utcnow


def _secret(value: SecretStr | None) -> str | None:
    return value.get_secret_value() if value is not None else None


class SqlitePolicyStore:
    """组织策略 / 凭证存储"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def put_policy(self, policy: OrganizationPolicy) -> None:
        """写入或覆盖组织策略"""
        await self._conn.execute(
            """
            INSERT OR REPLACE INTO organization_policies (organization_id, policy, updated_at)
            VALUES (?, ?, ?)
            """,
            (policy.organization_id, policy.model_dump_json(), to_db(utcnow())),
        )

    async def get_policy(self, organization_id: str) -> OrganizationPolicy:
        """查询组织策略，未配置时返回默认策略

        Raises:
            InvalidPolicyError: 已存储的策略无法通过校验
        """
        cursor = await self._conn.execute(
            "SELECT policy FROM organization_policies WHERE organization_id = ?",
            (organization_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return OrganizationPolicy(organization_id=organization_id)
        try:
            return OrganizationPolicy.model_validate_json(row[0])
        except ValidationError as e:
            raise InvalidPolicyError(organization_id, e.errors()[0]["msg"]) from e

    async def put_credentials(self, credentials: OrganizationCredentials) -> None:
        """写入或覆盖组织渠道凭证"""
        await self._conn.execute(
            """
            INSERT OR REPLACE INTO organization_credentials (
                organization_id, twilio_account_sid, twilio_auth_token,
                twilio_phone_number, bland_api_key, resend_api_key,
                resend_from_email, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                credentials.organization_id,
                credentials.twilio_account_sid,
                _secret(credentials.twilio_auth_token),
                credentials.twilio_phone_number,
                _secret(credentials.bland_api_key),
                _secret(credentials.resend_api_key),
                credentials.resend_from_email,
                to_db(utcnow()),
            ),
        )

    async def get_credentials(self, organization_id: str) -> OrganizationCredentials:
        """查询组织渠道凭证，未配置时返回空凭证（由环境变量兜底）"""
        cursor = await self._conn.execute(
            """
            SELECT organization_id, twilio_account_sid, twilio_auth_token,
                   twilio_phone_number, bland_api_key, resend_api_key, resend_from_email
            FROM organization_credentials WHERE organization_id = ?
            """,
            (organization_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return OrganizationCredentials(organization_id=organization_id)
        return OrganizationCredentials(
            organization_id=row[0],
            twilio_account_sid=row[1],
            twilio_auth_token=SecretStr(row[2]) if row[2] else None,
            twilio_phone_number=row[3],
            bland_api_key=SecretStr(row[4]) if row[4] else None,
            resend_api_key=SecretStr(row[5]) if row[5] else None,
            resend_from_email=row[6],
        )
