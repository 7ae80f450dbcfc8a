"""SQLite 数据库初始化

PRAGMA 配置 + 表 DDL + 索引创建。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# organization_policies / organization_credentials 表 DDL（外部配置，核心只读）
_POLICIES_DDL = """
CREATE TABLE IF NOT EXISTS organization_policies (
    organization_id  TEXT PRIMARY KEY,
    policy           TEXT NOT NULL DEFAULT '{}',
    updated_at       TEXT NOT NULL
);
"""

_CREDENTIALS_DDL = """
CREATE TABLE IF NOT EXISTS organization_credentials (
    organization_id      TEXT PRIMARY KEY,
    twilio_account_sid   TEXT,
    twilio_auth_token    TEXT,
    twilio_phone_number  TEXT,
    bland_api_key        TEXT,
    resend_api_key       TEXT,
    resend_from_email    TEXT,
    updated_at           TEXT NOT NULL
);
"""

# leads 表 DDL
_LEADS_DDL = """
CREATE TABLE IF NOT EXISTS leads (
    lead_id                  TEXT PRIMARY KEY,
    organization_id          TEXT NOT NULL,
    full_name                TEXT NOT NULL DEFAULT '',
    phone                    TEXT,
    email                    TEXT,
    timezone                 TEXT,
    consents                 TEXT NOT NULL DEFAULT '{}',
    do_not_contact           INTEGER NOT NULL DEFAULT 0,
    preferred_contact_window TEXT,
    is_human_controlled      INTEGER NOT NULL DEFAULT 0,
    human_controlled_at      TEXT,
    human_controlled_by      TEXT,
    human_control_reason     TEXT,
    created_at               TEXT NOT NULL,
    updated_at               TEXT NOT NULL
);
"""

_LEADS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_leads_org ON leads(organization_id);",
]

# tasks 表 DDL
_TASKS_DDL = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id                  TEXT PRIMARY KEY,
    organization_id          TEXT NOT NULL,
    lead_id                  TEXT NOT NULL,
    agent_type               TEXT NOT NULL,
    action_type              TEXT NOT NULL,
    status                   TEXT NOT NULL DEFAULT 'pending',
    scheduled_for            TEXT NOT NULL,
    created_at               TEXT NOT NULL,
    updated_at               TEXT NOT NULL,
    claimed_at               TEXT,
    executed_at              TEXT,
    completed_at             TEXT,
    attempt_number           INTEGER NOT NULL DEFAULT 1,
    max_attempts             INTEGER NOT NULL DEFAULT 3,
    context                  TEXT NOT NULL DEFAULT '{}',
    external_ref             TEXT,
    claim_token              TEXT,
    idempotency_key          TEXT,
    result_communication_id  TEXT,
    failure_reason           TEXT,
    failure_kind             TEXT,
    failure_scope            TEXT,
    cancel_reason            TEXT,

    CHECK (status IN ('pending', 'claimed', 'in_progress', 'completed', 'failed', 'cancelled')),
    CHECK (attempt_number >= 1 AND attempt_number <= max_attempts),
    FOREIGN KEY (lead_id) REFERENCES leads(lead_id)
);
"""

_TASKS_INDEXES = [
    # 认领查询：status + scheduled_for
    "CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks(status, scheduled_for);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_lead ON tasks(lead_id, status);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_executed_at ON tasks(status, executed_at);",
    # 幂等键唯一约束（仅对非 NULL 值生效）
    (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_idempotency_key "
        "ON tasks(idempotency_key) WHERE idempotency_key IS NOT NULL;"
    ),
]

# external_references 表 DDL
_EXTERNAL_REFS_DDL = """
CREATE TABLE IF NOT EXISTS external_references (
    vendor          TEXT NOT NULL,
    vendor_call_id  TEXT NOT NULL,
    task_id         TEXT NOT NULL,
    created_at      TEXT NOT NULL,

    PRIMARY KEY (vendor, vendor_call_id),
    FOREIGN KEY (task_id) REFERENCES tasks(task_id)
);
"""

_EXTERNAL_REFS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_external_refs_task ON external_references(task_id);",
]

# communications 表 DDL
_COMMUNICATIONS_DDL = """
CREATE TABLE IF NOT EXISTS communications (
    communication_id  TEXT PRIMARY KEY,
    organization_id   TEXT NOT NULL,
    lead_id           TEXT NOT NULL,
    task_id           TEXT NOT NULL,
    channel           TEXT NOT NULL,
    direction         TEXT NOT NULL DEFAULT 'outbound',
    recipient         TEXT NOT NULL DEFAULT '',
    status            TEXT NOT NULL,
    external_id       TEXT,
    body              TEXT,
    duration_seconds  INTEGER NOT NULL DEFAULT 0,
    transcript        TEXT,
    summary           TEXT,
    recording_url     TEXT,
    started_at        TEXT,
    ended_at          TEXT,
    created_at        TEXT NOT NULL,

    FOREIGN KEY (task_id) REFERENCES tasks(task_id)
);
"""

_COMMUNICATIONS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_communications_task ON communications(task_id);",
    "CREATE INDEX IF NOT EXISTS idx_communications_lead ON communications(lead_id, created_at);",
]

# cost_records 表 DDL（append-only）
_COST_RECORDS_DDL = """
CREATE TABLE IF NOT EXISTS cost_records (
    cost_id           TEXT PRIMARY KEY,
    organization_id   TEXT NOT NULL,
    service           TEXT NOT NULL,
    usage_quantity    REAL NOT NULL,
    usage_unit        TEXT NOT NULL,
    unit_cost         REAL NOT NULL,
    total_cost        REAL NOT NULL,
    task_id           TEXT NOT NULL,
    lead_id           TEXT,
    communication_id  TEXT,
    billable_event    TEXT NOT NULL,
    recorded_at       TEXT NOT NULL,

    FOREIGN KEY (task_id) REFERENCES tasks(task_id)
);
"""

_COST_RECORDS_INDEXES = [
    # 同一任务的同一计费事件至多一条
    (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_cost_records_task_event "
        "ON cost_records(task_id, billable_event);"
    ),
    (
        "CREATE INDEX IF NOT EXISTS idx_cost_records_org "
        "ON cost_records(organization_id, recorded_at);"
    ),
]

# activity_log 表 DDL（append-only）
_ACTIVITY_DDL = """
CREATE TABLE IF NOT EXISTS activity_log (
    activity_id      TEXT PRIMARY KEY,
    ts               TEXT NOT NULL,
    type             TEXT NOT NULL,
    actor            TEXT NOT NULL,
    organization_id  TEXT,
    lead_id          TEXT,
    task_id          TEXT,
    status           TEXT NOT NULL DEFAULT 'success',
    message          TEXT NOT NULL DEFAULT '',
    payload          TEXT NOT NULL DEFAULT '{}',
    execution_ms     INTEGER
);
"""

_ACTIVITY_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_activity_task ON activity_log(task_id, ts);",
    "CREATE INDEX IF NOT EXISTS idx_activity_lead ON activity_log(lead_id, ts);",
    "CREATE INDEX IF NOT EXISTS idx_activity_type ON activity_log(type, ts);",
]


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    # 设置 PRAGMA
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA foreign_keys = ON;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    # 创建表
    for ddl in (
        _POLICIES_DDL,
        _CREDENTIALS_DDL,
        _LEADS_DDL,
        _TASKS_DDL,
        _EXTERNAL_REFS_DDL,
        _COMMUNICATIONS_DDL,
        _COST_RECORDS_DDL,
        _ACTIVITY_DDL,
    ):
        await conn.execute(ddl)

    # 创建索引
    for idx_sql in (
        _LEADS_INDEXES
        + _TASKS_INDEXES
        + _EXTERNAL_REFS_INDEXES
        + _COMMUNICATIONS_INDEXES
        + _COST_RECORDS_INDEXES
        + _ACTIVITY_INDEXES
    ):
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效

    Returns:
        True 如果 WAL 模式已启用
    """
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
