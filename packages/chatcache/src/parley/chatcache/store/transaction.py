"""写事务封装与读查询辅助

所有写操作在同一把 asyncio.Lock 下、同一 SQLite 事务内完成：
消息变更与其触发器维护的索引变更一起提交或一起回滚。
读操作同样在写锁下执行，不会读到其它写者未提交的数据。
引擎异常统一转换为 StorageError。
"""

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import AbstractAsyncContextManager, asynccontextmanager, nullcontext
from typing import Any

import aiosqlite

from ..exceptions import StorageError


@asynccontextmanager
async def write_transaction(
    conn: aiosqlite.Connection,
    lock: asyncio.Lock,
    operation: str,
) -> AsyncIterator[aiosqlite.Connection]:
    """在写锁内执行一个原子事务

    调用方任务被取消时同样回滚：未提交的语句不能留在连接上，
    否则会被下一个写者一并提交。

    Args:
        conn: 共享数据库连接
        lock: 串行化写操作的锁（同一连接上的隐式事务不能交错）
        operation: 操作名称，用于错误信息

    Raises:
        StorageError: 任一语句或提交失败，事务已回滚
    """
    async with lock:
        try:
            yield conn
            # 原子提交
            await conn.commit()
        except aiosqlite.Error as e:
            await _rollback(conn)
            raise StorageError(operation, e) from e
        except BaseException:
            # 含 CancelledError
            await _rollback(conn)
            raise


async def _rollback(conn: aiosqlite.Connection) -> None:
    """回滚当前事务，回滚本身不受任务取消影响

    rollback 在连接的工作线程上按提交顺序执行，
    即使等待被再次取消，它也先于后续任何写操作生效。
    """
    await asyncio.shield(conn.rollback())


def read_lock(lock: asyncio.Lock | None) -> AbstractAsyncContextManager:
    """读操作的同步上下文

    读写共享同一连接：持写锁等待进行中的写事务结束后再查询，
    读到的只有已提交的数据。lock 为 None 表示调用方已持锁。
    """
    return lock if lock is not None else nullcontext()


async def fetch_all(
    conn: aiosqlite.Connection,
    sql: str,
    params: Iterable[Any] = (),
    operation: str = "query",
    lock: asyncio.Lock | None = None,
) -> list[aiosqlite.Row]:
    """执行查询并返回全部行"""
    async with read_lock(lock):
        try:
            cursor = await conn.execute(sql, tuple(params))
            return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise StorageError(operation, e) from e


async def fetch_one(
    conn: aiosqlite.Connection,
    sql: str,
    params: Iterable[Any] = (),
    operation: str = "query",
    lock: asyncio.Lock | None = None,
) -> aiosqlite.Row | None:
    """执行查询并返回第一行（没有结果时返回 None）"""
    async with read_lock(lock):
        try:
            cursor = await conn.execute(sql, tuple(params))
            return await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError(operation, e) from e


async def fetch_count(
    conn: aiosqlite.Connection,
    sql: str,
    params: Iterable[Any] = (),
    operation: str = "count",
    lock: asyncio.Lock | None = None,
) -> int:
    """执行 COUNT 类查询"""
    row = await fetch_one(conn, sql, params, operation, lock)
    return int(row[0]) if row and row[0] is not None else 0
