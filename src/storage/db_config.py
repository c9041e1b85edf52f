import aiosqlite
import os


conn: aiosqlite.Connection | None = None


_SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS users (
    user_id INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_user_id INTEGER UNIQUE,
    user_name TEXT,
    timezone TEXT NOT NULL,
    window_start_minute INTEGER NOT NULL,
    window_end_minute INTEGER NOT NULL,
    notifications_per_day INTEGER NOT NULL,
    notifications_enabled INTEGER NOT NULL DEFAULT 1,
    escalation_policy_json TEXT,
    next_due_at_utc TEXT,
    is_escalating INTEGER NOT NULL DEFAULT 0,
    escalation_level INTEGER NOT NULL DEFAULT 0,
    missed_count INTEGER NOT NULL DEFAULT 0,
    escalation_started_at_utc TEXT,
    last_escalation_sent_at_utc TEXT,
    next_escalation_at_utc TEXT,
    last_response_at_utc TEXT,
    escalation_version INTEGER NOT NULL DEFAULT 0,
    created_at_utc TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at_utc TEXT
);

CREATE INDEX IF NOT EXISTS idx_users_next_due ON users (notifications_enabled, next_due_at_utc);
CREATE INDEX IF NOT EXISTS idx_users_escalation ON users (is_escalating, next_escalation_at_utc);

CREATE TABLE IF NOT EXISTS prompts (
    prompt_id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users (user_id),
    sent_at_utc TEXT NOT NULL,
    started_at_utc TEXT,
    completed_at_utc TEXT,
    missed_reason TEXT,
    is_escalation INTEGER NOT NULL DEFAULT 0,
    escalation_level INTEGER NOT NULL DEFAULT 0,
    created_at_utc TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_prompts_user_sent ON prompts (user_id, sent_at_utc);
CREATE INDEX IF NOT EXISTS idx_prompts_unanswered ON prompts (started_at_utc, missed_reason, sent_at_utc);
"""


async def init_db(db_path: str) -> None:
    db_dir = os.path.dirname(db_path)
    if db_dir and not os.path.exists(db_dir):
        os.makedirs(db_dir, exist_ok=True)
    global conn
    conn = await aiosqlite.connect(db_path)

    async with conn.execute("PRAGMA user_version") as cursor:
        row = await cursor.fetchone()
        user_version = row[0]

    if user_version < 1:
        await conn.executescript(_SCHEMA_V1)
        await conn.execute("PRAGMA user_version = 1")

    if user_version < 2:
        # 常规 prompt 记录 claim 到的计划时刻，用于判断当天已占用的分段
        await conn.execute("ALTER TABLE prompts ADD COLUMN scheduled_for_utc TEXT")
        await conn.execute("PRAGMA user_version = 2")

    # 数据库升级逻辑可以在这里继续添加
    await conn.commit()


async def close_db() -> None:
    global conn
    if conn is not None:
        await conn.close()
        conn = None

__all__ = ["conn", "init_db", "close_db"]
