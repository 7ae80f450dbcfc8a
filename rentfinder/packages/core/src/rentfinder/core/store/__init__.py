"""RentFinder Core Store -- SQLite 持久化实现

提供工厂函数创建共享数据库连接的 Store 实例组。
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from .activity_store import SqliteActivityLog
from .ledger_store import SqliteCommunicationStore, SqliteCostLedger, SqliteExternalRefStore
from .lead_store import SqliteLeadStore
from .policy_store import SqlitePolicyStore
from .sqlite_init import init_db
from .task_store import SqliteTaskStore


class StoreGroup:
    """Store 实例组 -- 共享同一个数据库连接

    同一连接上的事务通过 write_lock 串行化：一个协程的 commit
    不会把另一个协程尚未完成的写入一并提交。
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn
        self.write_lock = asyncio.Lock()
        self.task_store = SqliteTaskStore(conn)
        self.lead_store = SqliteLeadStore(conn)
        self.policy_store = SqlitePolicyStore(conn)
        self.cost_ledger = SqliteCostLedger(conn)
        self.communication_store = SqliteCommunicationStore(conn)
        self.external_ref_store = SqliteExternalRefStore(conn)
        self.activity_log = SqliteActivityLog(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator["StoreGroup", None]:
        """写事务：持有 write_lock，正常退出时提交，异常时回滚并重新抛出"""
        async with self.write_lock:
            try:
                yield self
                await self.conn.commit()
            except Exception:
                await self.conn.rollback()
                raise


async def create_store_group(db_path: str) -> StoreGroup:
    """创建 Store 实例组

    Args:
        db_path: SQLite 数据库文件路径

    Returns:
        StoreGroup 实例
    """
    # 确保数据库目录存在
    db_dir = Path(db_path).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row
    await init_db(conn)

    return StoreGroup(conn=conn)


__all__ = [
    "StoreGroup",
    "create_store_group",
    "SqliteTaskStore",
    "SqliteLeadStore",
    "SqlitePolicyStore",
    "SqliteCostLedger",
    "SqliteCommunicationStore",
    "SqliteExternalRefStore",
    "SqliteActivityLog",
    "init_db",
]
