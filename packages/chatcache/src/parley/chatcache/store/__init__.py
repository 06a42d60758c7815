"""Parley ChatCache Store -- SQLite 持久化实现

提供工厂函数创建共享数据库连接的 Store 实例组。
进程内只应创建一个 StoreGroup，并以依赖注入的方式传给各消费方。
"""

import asyncio
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite
import structlog

from ..config import SCHEMA_VERSION
from .message_store import SqliteMessageStore
from .protocols import MessageRepository, SearchIndex
from .search_index import SqliteSearchIndex
from .sqlite_init import init_db
from .transaction import write_transaction

log = structlog.get_logger(component="store")

_SIDE_FILE_SUFFIXES = ("-wal", "-shm")


async def _open_connection(db_path: str) -> aiosqlite.Connection:
    if db_path != ":memory:":
        # 确保数据库目录存在
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row
    await init_db(conn)
    return conn


class StoreGroup:
    """Store 实例组 -- 共享同一个数据库连接与写锁"""

    def __init__(self, conn: aiosqlite.Connection, db_path: str) -> None:
        self.conn = conn
        self.db_path = db_path
        self.lock = asyncio.Lock()
        self.message_store = SqliteMessageStore(conn, self.lock)
        self.search_index = SqliteSearchIndex(conn, self.lock)

    @property
    def schema_version(self) -> int:
        return SCHEMA_VERSION

    async def close(self) -> None:
        """TRUNCATE checkpoint 后关闭连接；checkpoint 失败只记录日志"""
        try:
            await self.conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
        except (aiosqlite.Error, ValueError) as e:
            log.warning("wal_checkpoint_on_close_failed", error=str(e))
        await self.conn.close()

    def _move_aside(self) -> list[str]:
        """把损坏的数据库文件及其 -wal / -shm 文件改名为 <name>.corrupt-<ts>"""
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")
        moved: list[str] = []
        base = Path(self.db_path)
        for path in [base, *(Path(f"{base}{s}") for s in _SIDE_FILE_SUFFIXES)]:
            if path.exists():
                target = path.with_name(f"{path.name}.corrupt-{stamp}")
                path.rename(target)
                moved.append(str(target))
        return moved

    async def reopen(self, discard_files: bool = False) -> None:
        """关闭当前连接并重新打开数据库，原有 store 实例重新绑定到新连接

        Args:
            discard_files: 为 True 时先把现有数据库文件移到一边，得到全新空库
        """
        try:
            await self.conn.close()
        except (aiosqlite.Error, ValueError) as e:
            log.warning("close_before_reopen_failed", error=str(e))

        if discard_files and self.db_path != ":memory:":
            moved = self._move_aside()
            await log.ainfo("database_files_moved_aside", files=moved)

        conn = await _open_connection(self.db_path)
        self.conn = conn
        self.message_store.rebind(conn)
        self.search_index.rebind(conn)
        await log.ainfo("database_reopened", db_path=self.db_path, fresh=discard_files)


async def create_store_group(db_path: str) -> StoreGroup:
    """创建 Store 实例组

    Args:
        db_path: SQLite 数据库文件路径（":memory:" 表示内存库）

    Returns:
        StoreGroup 实例
    """
    conn = await _open_connection(db_path)
    return StoreGroup(conn=conn, db_path=db_path)


__all__ = [
    "StoreGroup",
    "create_store_group",
    "SqliteMessageStore",
    "SqliteSearchIndex",
    "MessageRepository",
    "SearchIndex",
    "init_db",
    "write_transaction",
]
