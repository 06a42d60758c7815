"""MessageStore SQLite 实现

cached_messages / channel_sync_meta 两张权威表的 CRUD、分页、清理与统计。
每个写操作都是一个独立事务；全文索引由触发器在同一事务内同步维护。
upsert 使用 ON CONFLICT DO UPDATE（而非 INSERT OR REPLACE），
这样冲突时触发的是 UPDATE 触发器，索引不会残留旧行。
"""

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import aiosqlite
import structlog

from ..config import DEFAULT_PRUNE_KEEP_DAYS, SCHEMA_VERSION
from ..models.health import HealthReport, StoreStats
from ..models.message import CachedMessage, ChannelSyncMeta
from .transaction import fetch_all, fetch_count, fetch_one, write_transaction

log = structlog.get_logger(component="message_store")

_MESSAGE_COLUMNS = (
    "id",
    "channel_id",
    "sender_id",
    "sender_name",
    "sender_avatar",
    "content",
    "attachments_json",
    "sent_at",
    "edited_at",
    "deleted_at",
    "is_deleted",
    "is_encrypted",
    "encryption_version",
    "sender_public_key",
    "nonce",
    "cached_at",
)

_UPSERT_MESSAGE_SQL = (
    f"INSERT INTO cached_messages ({', '.join(_MESSAGE_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _MESSAGE_COLUMNS)}) "
    "ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(f"{col} = excluded.{col}" for col in _MESSAGE_COLUMNS[1:])
)

_UPSERT_META_SQL = """
INSERT INTO channel_sync_meta (channel_id, last_synced_at, has_more, message_count)
VALUES (?, ?, ?, ?)
ON CONFLICT(channel_id) DO UPDATE SET
    last_synced_at = excluded.last_synced_at,
    has_more = excluded.has_more,
    message_count = excluded.message_count
"""


def format_ts(value: datetime | None) -> str | None:
    """datetime -> 定宽 ISO-8601 UTC 字符串（字典序与时间序一致）"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_ts(value: str | None) -> datetime | None:
    """ISO-8601 字符串 -> UTC aware datetime"""
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _optional_bool(value: Any) -> bool | None:
    return None if value is None else bool(value)


def message_to_params(message: CachedMessage) -> tuple:
    """CachedMessage -> INSERT 参数元组（顺序同 _MESSAGE_COLUMNS）"""
    return (
        message.id,
        message.channel_id,
        message.sender_id,
        message.sender_name,
        message.sender_avatar,
        message.content,
        message.attachments_json,
        format_ts(message.sent_at),
        format_ts(message.edited_at),
        format_ts(message.deleted_at),
        int(message.is_deleted),
        None if message.is_encrypted is None else int(message.is_encrypted),
        message.encryption_version,
        message.sender_public_key,
        message.nonce,
        format_ts(message.cached_at),
    )


def row_to_message(row: aiosqlite.Row) -> CachedMessage:
    """将 cached_messages 行转换为 CachedMessage 模型"""
    return CachedMessage(
        id=row["id"],
        channel_id=row["channel_id"],
        sender_id=row["sender_id"],
        sender_name=row["sender_name"],
        sender_avatar=row["sender_avatar"],
        content=row["content"],
        attachments_json=row["attachments_json"],
        sent_at=parse_ts(row["sent_at"]),
        edited_at=parse_ts(row["edited_at"]),
        deleted_at=parse_ts(row["deleted_at"]),
        is_deleted=bool(row["is_deleted"]),
        is_encrypted=_optional_bool(row["is_encrypted"]),
        encryption_version=row["encryption_version"],
        sender_public_key=row["sender_public_key"],
        nonce=row["nonce"],
        cached_at=parse_ts(row["cached_at"]),
    )


def row_to_meta(row: aiosqlite.Row) -> ChannelSyncMeta:
    """将 channel_sync_meta 行转换为 ChannelSyncMeta 模型"""
    return ChannelSyncMeta(
        channel_id=row["channel_id"],
        last_synced_at=parse_ts(row["last_synced_at"]),
        has_more=bool(row["has_more"]),
        message_count=row["message_count"],
    )


class SqliteMessageStore:
    """消息与频道同步游标的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection, lock: asyncio.Lock) -> None:
        self._conn = conn
        self._lock = lock

    def rebind(self, conn: aiosqlite.Connection) -> None:
        """切换到新的数据库连接（紧急恢复后使用）"""
        self._conn = conn

    @property
    def schema_version(self) -> int:
        return SCHEMA_VERSION

    # ---- 消息查询 ----

    async def get_messages_for_channel(
        self,
        channel_id: str,
        limit: int = 50,
        before: datetime | None = None,
    ) -> list[CachedMessage]:
        """频道消息分页（新 -> 旧）

        before 不为空时只返回 sent_at 严格早于 before 的消息，
        用上一页最后一条的 sent_at 作为 before 即可无重叠地翻页。
        """
        if before is not None:
            rows = await fetch_all(
                self._conn,
                """
                SELECT * FROM cached_messages
                WHERE channel_id = ? AND sent_at < ?
                ORDER BY sent_at DESC, id DESC
                LIMIT ?
                """,
                (channel_id, format_ts(before), limit),
                "get_messages_for_channel",
                lock=self._lock,
            )
        else:
            rows = await fetch_all(
                self._conn,
                """
                SELECT * FROM cached_messages
                WHERE channel_id = ?
                ORDER BY sent_at DESC, id DESC
                LIMIT ?
                """,
                (channel_id, limit),
                "get_messages_for_channel",
                lock=self._lock,
            )
        return [row_to_message(row) for row in rows]

    async def get_message(self, message_id: str) -> CachedMessage | None:
        """根据 ID 查询单条消息"""
        row = await fetch_one(
            self._conn,
            "SELECT * FROM cached_messages WHERE id = ?",
            (message_id,),
            "get_message",
            lock=self._lock,
        )
        if row is None:
            return None
        return row_to_message(row)

    async def get_messages_by_sender(
        self,
        sender_id: str,
        limit: int = 50,
    ) -> list[CachedMessage]:
        """查询某发送者的消息，按 sent_at 倒序"""
        rows = await fetch_all(
            self._conn,
            """
            SELECT * FROM cached_messages
            WHERE sender_id = ?
            ORDER BY sent_at DESC
            LIMIT ?
            """,
            (sender_id, limit),
            "get_messages_by_sender",
            lock=self._lock,
        )
        return [row_to_message(row) for row in rows]

    async def get_message_count(self, channel_id: str) -> int:
        """频道内缓存的消息数（含软删除）"""
        return await fetch_count(
            self._conn,
            "SELECT COUNT(*) FROM cached_messages WHERE channel_id = ?",
            (channel_id,),
            "get_message_count",
            lock=self._lock,
        )

    async def get_all_messages(self) -> list[CachedMessage]:
        """全量读取消息（仅用于备份 / 诊断，O(n)）"""
        rows = await fetch_all(
            self._conn,
            "SELECT * FROM cached_messages ORDER BY channel_id, sent_at",
            operation="get_all_messages",
            lock=self._lock,
        )
        return [row_to_message(row) for row in rows]

    # ---- 消息写入 ----

    async def upsert_message(self, message: CachedMessage) -> None:
        """插入或覆盖一条消息（按 id）"""
        async with write_transaction(self._conn, self._lock, "upsert_message") as conn:
            await conn.execute(_UPSERT_MESSAGE_SQL, message_to_params(message))

    async def batch_upsert_messages(self, messages: Sequence[CachedMessage]) -> int:
        """批量 upsert（同步写入路径），整批在一个事务内提交

        Returns:
            写入的消息条数
        """
        if not messages:
            return 0
        async with write_transaction(
            self._conn, self._lock, "batch_upsert_messages"
        ) as conn:
            await conn.executemany(
                _UPSERT_MESSAGE_SQL,
                [message_to_params(m) for m in messages],
            )
        await log.adebug("messages_batch_upserted", count=len(messages))
        return len(messages)

    async def delete_message_by_id(self, message_id: str) -> None:
        """物理删除一条消息（不可恢复）"""
        async with write_transaction(
            self._conn, self._lock, "delete_message_by_id"
        ) as conn:
            await conn.execute("DELETE FROM cached_messages WHERE id = ?", (message_id,))

    async def soft_delete_message(self, message_id: str) -> None:
        """软删除：is_deleted=1、deleted_at=now，content 保留

        幂等：已软删除的消息保持首次的 deleted_at。
        """
        async with write_transaction(
            self._conn, self._lock, "soft_delete_message"
        ) as conn:
            await conn.execute(
                """
                UPDATE cached_messages
                SET is_deleted = 1, deleted_at = ?
                WHERE id = ? AND is_deleted = 0
                """,
                (format_ts(datetime.now(UTC)), message_id),
            )

    async def delete_channel_messages(self, channel_id: str) -> None:
        """清空频道：删除该频道全部消息及其同步游标"""
        async with write_transaction(
            self._conn, self._lock, "delete_channel_messages"
        ) as conn:
            await conn.execute(
                "DELETE FROM cached_messages WHERE channel_id = ?", (channel_id,)
            )
            await conn.execute(
                "DELETE FROM channel_sync_meta WHERE channel_id = ?", (channel_id,)
            )
        await log.ainfo("channel_cleared", channel_id=channel_id)

    async def clear_channel(self, channel_id: str) -> None:
        """清空单个频道的缓存"""
        await self.delete_channel_messages(channel_id)

    async def clear_all(self) -> None:
        """清空全部缓存数据"""
        async with write_transaction(self._conn, self._lock, "clear_all") as conn:
            await conn.execute("DELETE FROM cached_messages")
            await conn.execute("DELETE FROM channel_sync_meta")
        await log.ainfo("cache_cleared")

    # ---- 同步游标 ----

    async def get_channel_meta(self, channel_id: str) -> ChannelSyncMeta | None:
        """查询频道同步游标"""
        row = await fetch_one(
            self._conn,
            "SELECT * FROM channel_sync_meta WHERE channel_id = ?",
            (channel_id,),
            "get_channel_meta",
            lock=self._lock,
        )
        if row is None:
            return None
        return row_to_meta(row)

    async def update_channel_meta(self, meta: ChannelSyncMeta) -> None:
        """写入频道同步游标（按 channel_id upsert）"""
        async with write_transaction(
            self._conn, self._lock, "update_channel_meta"
        ) as conn:
            await conn.execute(
                _UPSERT_META_SQL,
                (
                    meta.channel_id,
                    format_ts(meta.last_synced_at),
                    int(meta.has_more),
                    meta.message_count,
                ),
            )

    async def get_all_channel_meta(self) -> list[ChannelSyncMeta]:
        """全量读取同步游标（仅用于备份 / 诊断）"""
        rows = await fetch_all(
            self._conn,
            "SELECT * FROM channel_sync_meta ORDER BY channel_id",
            operation="get_all_channel_meta",
            lock=self._lock,
        )
        return [row_to_meta(row) for row in rows]

    async def get_cached_channel_ids(self) -> list[str]:
        """有同步游标的频道 ID 列表"""
        rows = await fetch_all(
            self._conn,
            "SELECT DISTINCT channel_id FROM channel_sync_meta ORDER BY channel_id",
            operation="get_cached_channel_ids",
            lock=self._lock,
        )
        return [row[0] for row in rows]

    # ---- 维护 ----

    async def prune_old_messages(
        self,
        keep_days: int = DEFAULT_PRUNE_KEEP_DAYS,
        now: datetime | None = None,
    ) -> int:
        """物理删除 sent_at 早于 now - keep_days 的消息

        恰好等于截止时间的消息保留。

        Returns:
            删除的消息条数
        """
        reference = now or datetime.now(UTC)
        cutoff = reference - timedelta(days=keep_days)
        async with write_transaction(
            self._conn, self._lock, "prune_old_messages"
        ) as conn:
            cursor = await conn.execute(
                "DELETE FROM cached_messages WHERE sent_at < ?",
                (format_ts(cutoff),),
            )
            removed = cursor.rowcount
        await log.ainfo("messages_pruned", keep_days=keep_days, removed=removed)
        return removed

    async def vacuum(self) -> None:
        """VACUUM 回收空间（可能阻塞，非正确性必需）"""
        async with write_transaction(self._conn, self._lock, "vacuum") as conn:
            await conn.execute("VACUUM")
        await log.ainfo("database_vacuumed")

    async def get_stats(self) -> StoreStats:
        """消息总数、频道数、索引行数、schema 版本（同一次持锁内读取）"""
        async with self._lock:
            total = await fetch_count(
                self._conn, "SELECT COUNT(*) FROM cached_messages", operation="get_stats"
            )
            channels = await fetch_count(
                self._conn, "SELECT COUNT(*) FROM channel_sync_meta", operation="get_stats"
            )
            indexed = await fetch_count(
                self._conn, "SELECT COUNT(*) FROM messages_fts", operation="get_stats"
            )
        return StoreStats(
            total_messages=total,
            cached_channels=channels,
            indexed_messages=indexed,
            schema_version=self.schema_version,
        )

    async def check_integrity(self) -> HealthReport:
        """只读健康检查，详见 IntegrityEngine"""
        from ..integrity import inspect_database

        return await inspect_database(self._conn, lock=self._lock)
