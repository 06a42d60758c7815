"""SearchIndex SQLite FTS5 实现

messages_fts 是 cached_messages 的派生投影，由触发器维护。
检索降级链: FTS5 排序检索 -> LIKE 子串检索 -> 空结果。
只有 search() 做降级；search_fts() 等底层方法失败时抛出 SearchError。
"""

import asyncio

import aiosqlite
import structlog

from ..exceptions import SearchError
from ..models.message import CachedMessage
from .message_store import row_to_message
from .sqlite_init import REBUILD_FTS_SQL
from .transaction import fetch_count, write_transaction

log = structlog.get_logger(component="search_index")

# FTS5 查询语法中的特殊字符
_FTS_SPECIAL_CHARS = str.maketrans("", "", '"()*:-^')

_SELECT_MESSAGES = "SELECT m.* FROM cached_messages m JOIN messages_fts ON messages_fts.id = m.id"


def escape_fts_token(token: str) -> str:
    """去掉单个检索词中的 FTS5 特殊字符"""
    return token.translate(_FTS_SPECIAL_CHARS)


def prepare_fts_query(query: str) -> str:
    """把用户输入转换为 FTS5 MATCH 表达式

    - 含双引号：视为用户手写的短语查询，原样透传
    - 否则按空白切词、逐词去特殊字符，以短语形式 AND 连接
    - 全部词被清空时返回空串
    """
    query = query.strip()
    if '"' in query:
        return query
    tokens = [escape_fts_token(t) for t in query.split()]
    tokens = [t for t in tokens if t]
    return " AND ".join(f'"{t}"' for t in tokens)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqliteSearchIndex:
    """基于 FTS5 的消息全文检索"""

    def __init__(self, conn: aiosqlite.Connection, lock: asyncio.Lock) -> None:
        self._conn = conn
        self._lock = lock

    def rebind(self, conn: aiosqlite.Connection) -> None:
        """切换到新的数据库连接（紧急恢复后使用）"""
        self._conn = conn

    async def _match(self, sql: str, params: tuple, operation: str) -> list[CachedMessage]:
        try:
            async with self._lock:
                cursor = await self._conn.execute(sql, params)
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise SearchError(f"FTS {operation} failed: {e}") from e
        return [row_to_message(row) for row in rows]

    async def search(
        self,
        query: str,
        channel_id: str | None = None,
        limit: int = 50,
    ) -> list[CachedMessage]:
        """带降级的检索入口

        先走 FTS5 排序检索；任何异常降级为 LIKE 子串检索；
        子串检索也失败时返回空列表。从不抛异常。
        """
        query = query.strip()
        if not query:
            return []

        try:
            return await self.search_fts(query, channel_id=channel_id, limit=limit)
        except Exception as e:
            log.warning("fts_search_failed_attempting_fallback", error=str(e))

        try:
            return await self.search_legacy(query, channel_id=channel_id, limit=limit)
        except Exception as fallback_error:
            log.error("both_fts_and_legacy_search_failed", error=str(fallback_error))
            return []

    async def search_fts(
        self,
        query: str,
        channel_id: str | None = None,
        limit: int = 100,
    ) -> list[CachedMessage]:
        """FTS5 排序检索：bm25 相关度优先，其次 sent_at 倒序

        Raises:
            SearchError: 查询语法错误或索引不可用
        """
        fts_query = prepare_fts_query(query)
        if not fts_query:
            return []

        if channel_id is not None:
            sql = (
                f"{_SELECT_MESSAGES} WHERE messages_fts MATCH ? AND m.channel_id = ? "
                "ORDER BY bm25(messages_fts), m.sent_at DESC LIMIT ?"
            )
            params: tuple = (fts_query, channel_id, limit)
        else:
            sql = (
                f"{_SELECT_MESSAGES} WHERE messages_fts MATCH ? "
                "ORDER BY bm25(messages_fts), m.sent_at DESC LIMIT ?"
            )
            params = (fts_query, limit)
        return await self._match(sql, params, "search")

    async def search_prefix(
        self,
        prefix: str,
        channel_id: str | None = None,
        limit: int = 20,
    ) -> list[CachedMessage]:
        """前缀检索（输入联想），少于 2 个字符直接返回空"""
        prefix = prefix.strip()
        if len(prefix) < 2:
            return []
        escaped = escape_fts_token(prefix)
        if not escaped:
            return []

        fts_query = f'"{escaped}"*'
        if channel_id is not None:
            sql = (
                f"{_SELECT_MESSAGES} WHERE messages_fts MATCH ? AND m.channel_id = ? "
                "ORDER BY m.sent_at DESC LIMIT ?"
            )
            params: tuple = (fts_query, channel_id, limit)
        else:
            sql = f"{_SELECT_MESSAGES} WHERE messages_fts MATCH ? ORDER BY m.sent_at DESC LIMIT ?"
            params = (fts_query, limit)
        return await self._match(sql, params, "prefix")

    async def search_by_sender(
        self,
        sender_name: str,
        limit: int = 50,
    ) -> list[CachedMessage]:
        """按发送者名称前缀检索"""
        escaped = escape_fts_token(sender_name.strip())
        if not escaped:
            return []
        sql = f"{_SELECT_MESSAGES} WHERE messages_fts MATCH ? ORDER BY m.sent_at DESC LIMIT ?"
        return await self._match(sql, (f'sender_name:"{escaped}"*', limit), "sender")

    async def search_legacy(
        self,
        query: str,
        channel_id: str | None = None,
        limit: int = 100,
    ) -> list[CachedMessage]:
        """LIKE 子串检索（FTS 不可用时的降级路径），不含软删除消息"""
        pattern = f"%{_escape_like(query)}%"
        if channel_id is not None:
            sql = (
                "SELECT * FROM cached_messages "
                "WHERE content LIKE ? ESCAPE '\\' AND is_deleted = 0 AND channel_id = ? "
                "ORDER BY sent_at DESC LIMIT ?"
            )
            params: tuple = (pattern, channel_id, limit)
        else:
            sql = (
                "SELECT * FROM cached_messages "
                "WHERE content LIKE ? ESCAPE '\\' AND is_deleted = 0 "
                "ORDER BY sent_at DESC LIMIT ?"
            )
            params = (pattern, limit)
        async with self._lock:
            cursor = await self._conn.execute(sql, params)
            rows = await cursor.fetchall()
        return [row_to_message(row) for row in rows]

    async def optimize(self) -> None:
        """合并 FTS5 内部段，提升查询性能"""
        async with write_transaction(self._conn, self._lock, "optimize_search_index") as conn:
            await conn.execute("INSERT INTO messages_fts(messages_fts) VALUES('optimize')")
        await log.ainfo("search_index_optimized")

    async def rebuild(self) -> None:
        """清空并从未删除消息重建索引（单事务）"""
        async with write_transaction(self._conn, self._lock, "rebuild_search_index") as conn:
            for sql in REBUILD_FTS_SQL:
                await conn.execute(sql)
        indexed = await self.count_indexed()
        await log.ainfo("search_index_rebuilt", indexed_messages=indexed)

    async def count_indexed(self) -> int:
        """索引行数"""
        return await fetch_count(
            self._conn,
            "SELECT COUNT(*) FROM messages_fts",
            operation="count_indexed",
            lock=self._lock,
        )

    async def get_index_stats(self) -> dict[str, int | str]:
        """索引统计，索引不可读时 status 为 error"""
        try:
            indexed = await self.count_indexed()
        except Exception as e:
            log.warning("search_index_stats_failed", error=str(e))
            return {"indexed_messages": 0, "status": "error"}
        return {"indexed_messages": indexed, "status": "healthy"}
