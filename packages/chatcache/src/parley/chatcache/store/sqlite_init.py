"""SQLite 数据库初始化

PRAGMA 配置 + 两张表 DDL + 索引 + FTS5 虚表与同步触发器。
schema 版本记录在 PRAGMA user_version 中：
  v1: cached_messages + channel_sync_meta
  v2: 新增 messages_fts 全文索引（升级时从现有消息回填）
使用 aiosqlite 异步操作。
"""

import aiosqlite
import structlog

from ..config import SCHEMA_VERSION

log = structlog.get_logger(component="sqlite_init")

# cached_messages 表 DDL
# 时间列存储定宽 ISO-8601 UTC 字符串，字典序即时间序
_MESSAGES_DDL = """
CREATE TABLE IF NOT EXISTS cached_messages (
    id                  TEXT PRIMARY KEY,
    channel_id          TEXT NOT NULL,
    sender_id           TEXT NOT NULL,
    sender_name         TEXT NOT NULL,
    sender_avatar       TEXT,
    content             TEXT NOT NULL,
    attachments_json    TEXT NOT NULL DEFAULT '[]',
    sent_at             TEXT NOT NULL,
    edited_at           TEXT,
    deleted_at          TEXT,
    is_deleted          INTEGER NOT NULL DEFAULT 0,
    is_encrypted        INTEGER,
    encryption_version  INTEGER,
    sender_public_key   TEXT,
    nonce               TEXT,
    cached_at           TEXT NOT NULL
);
"""

_MESSAGES_INDEXES = [
    # 频道内分页查询（最常用）
    (
        "CREATE INDEX IF NOT EXISTS idx_messages_channel_sent "
        "ON cached_messages(channel_id, sent_at DESC);"
    ),
    "CREATE INDEX IF NOT EXISTS idx_messages_sender ON cached_messages(sender_id);",
    # 仅未删除消息的部分索引
    (
        "CREATE INDEX IF NOT EXISTS idx_messages_channel_active "
        "ON cached_messages(channel_id, sent_at DESC) WHERE is_deleted = 0;"
    ),
    "CREATE INDEX IF NOT EXISTS idx_messages_cached_at ON cached_messages(cached_at);",
    # 按发送时间清理
    "CREATE INDEX IF NOT EXISTS idx_messages_sent_at ON cached_messages(sent_at);",
    (
        "CREATE INDEX IF NOT EXISTS idx_messages_edited "
        "ON cached_messages(channel_id, edited_at DESC) WHERE edited_at IS NOT NULL;"
    ),
    # 修复流程清理软删除消息
    (
        "CREATE INDEX IF NOT EXISTS idx_messages_deleted_cleanup "
        "ON cached_messages(deleted_at) WHERE is_deleted = 1;"
    ),
]

# channel_sync_meta 表 DDL
_SYNC_META_DDL = """
CREATE TABLE IF NOT EXISTS channel_sync_meta (
    channel_id      TEXT PRIMARY KEY,
    last_synced_at  TEXT NOT NULL,
    has_more        INTEGER NOT NULL DEFAULT 1,
    message_count   INTEGER NOT NULL DEFAULT 0
);
"""

# messages_fts 全文索引（派生数据，非权威）
_FTS_DDL = """
CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
    id UNINDEXED,
    channel_id UNINDEXED,
    sender_name,
    content,
    tokenize='porter unicode61 remove_diacritics 1'
);
"""

# 触发器保证消息变更与索引变更在同一语句内生效
# 只为未删除的消息建立索引行
_FTS_TRIGGERS = [
    """
    CREATE TRIGGER IF NOT EXISTS messages_fts_insert
    AFTER INSERT ON cached_messages
    BEGIN
        INSERT INTO messages_fts(id, channel_id, sender_name, content)
        SELECT NEW.id, NEW.channel_id, NEW.sender_name, NEW.content
        WHERE NEW.is_deleted = 0;
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS messages_fts_update
    AFTER UPDATE ON cached_messages
    BEGIN
        DELETE FROM messages_fts WHERE id = OLD.id;
        INSERT INTO messages_fts(id, channel_id, sender_name, content)
        SELECT NEW.id, NEW.channel_id, NEW.sender_name, NEW.content
        WHERE NEW.is_deleted = 0;
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS messages_fts_delete
    AFTER DELETE ON cached_messages
    BEGIN
        DELETE FROM messages_fts WHERE id = OLD.id;
    END;
    """,
]

# 从权威表重建索引
REBUILD_FTS_SQL = [
    "DELETE FROM messages_fts;",
    """
    INSERT INTO messages_fts(id, channel_id, sender_name, content)
    SELECT id, channel_id, sender_name, content
    FROM cached_messages
    WHERE is_deleted = 0;
    """,
]


async def get_schema_version(conn: aiosqlite.Connection) -> int:
    """读取 PRAGMA user_version"""
    cursor = await conn.execute("PRAGMA user_version;")
    row = await cursor.fetchone()
    return row[0] if row else 0


async def _create_search_index(conn: aiosqlite.Connection) -> None:
    """创建 FTS5 虚表和同步触发器"""
    await conn.execute(_FTS_DDL)
    for trigger_sql in _FTS_TRIGGERS:
        await conn.execute(trigger_sql)


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 / 索引 / FTS5 + schema 升级

    Args:
        conn: aiosqlite 数据库连接
    """
    # 设置 PRAGMA
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA synchronous = NORMAL;")
    await conn.execute("PRAGMA cache_size = -8000;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    from_version = await get_schema_version(conn)

    # 创建表
    await conn.execute(_MESSAGES_DDL)
    await conn.execute(_SYNC_META_DDL)

    # 创建索引
    for idx_sql in _MESSAGES_INDEXES:
        await conn.execute(idx_sql)

    await _create_search_index(conn)

    if from_version == 1:
        # v1 -> v2：为已有消息回填全文索引
        for sql in REBUILD_FTS_SQL:
            await conn.execute(sql)
        await log.ainfo("schema_migrated", from_version=from_version, to_version=SCHEMA_VERSION)

    if from_version < SCHEMA_VERSION:
        await conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION};")

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效

    Returns:
        True 如果 WAL 模式已启用
    """
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
