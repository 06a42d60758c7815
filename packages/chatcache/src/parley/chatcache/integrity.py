"""完整性检查 / 修复 / 紧急恢复

三级处理:
  1. check_integrity   只读检查，输出 HealthReport
  2. attempt_repair    按固定顺序执行修复动作，首个失败即停止
  3. emergency_recovery 抢救数据 -> 换新库 -> 回放
启动检查只做 1 和 2，不会自动升级到紧急恢复（会替换数据库文件，需要调用方决定）。
所有入口都不向外抛异常，结果以结构化模型返回。
"""

import asyncio
import time
from datetime import UTC, datetime, timedelta

import aiosqlite
import structlog

from .config import SEARCH_INDEX_DRIFT_TOLERANCE, SOFT_DELETE_PURGE_DAYS
from .models.health import HealthReport, RecoveryResult, RepairResult, WALStatus
from .models.message import CachedMessage, ChannelSyncMeta
from .store import StoreGroup
from .store.message_store import format_ts
from .store.transaction import (
    fetch_all,
    fetch_count,
    fetch_one,
    read_lock,
    write_transaction,
)

log = structlog.get_logger(component="integrity")

_ORPHANED_META_WHERE = (
    "channel_id NOT IN (SELECT DISTINCT channel_id FROM cached_messages)"
)


async def _read_wal_status(conn: aiosqlite.Connection) -> WALStatus:
    row = await fetch_one(conn, "PRAGMA journal_mode;", operation="journal_mode")
    journal_mode = str(row[0]).lower() if row else "unknown"
    row = await fetch_one(conn, "PRAGMA wal_checkpoint(PASSIVE);", operation="wal_checkpoint")
    if row is None:
        return WALStatus(journal_mode=journal_mode)
    return WALStatus(
        journal_mode=journal_mode,
        busy=row[0],
        log_frames=row[1],
        checkpointed_frames=row[2],
    )


async def inspect_database(
    conn: aiosqlite.Connection,
    drift_tolerance: int = SEARCH_INDEX_DRIFT_TOLERANCE,
    lock: asyncio.Lock | None = None,
) -> HealthReport:
    """只读健康检查

    检查项:
    - PRAGMA integrity_check 必须为 ok
    - PRAGMA foreign_key_check 必须为空
    - 未删除消息数与索引行数之差不超过 drift_tolerance
    - 孤立的同步游标（只报告，不影响健康判定）
    - WAL 状态快照

    传入 lock 时全部检查项在同一次持锁内完成，不会看到写了一半的事务。
    """
    issues: list[str] = []
    is_healthy = True
    try:
        async with read_lock(lock):
            rows = await fetch_all(conn, "PRAGMA integrity_check;", operation="integrity_check")
            results = [str(r[0]) for r in rows]
            if results != ["ok"]:
                is_healthy = False
                issues.append(f"Database corruption detected: {'; '.join(results)}")

            violations = await fetch_all(
                conn, "PRAGMA foreign_key_check;", operation="foreign_key_check"
            )
            if violations:
                is_healthy = False
                issues.append(f"Foreign key violations: {len(violations)} found")

            active = await fetch_count(
                conn,
                "SELECT COUNT(*) FROM cached_messages WHERE is_deleted = 0",
                operation="count_active_messages",
            )
            indexed = await fetch_count(
                conn, "SELECT COUNT(*) FROM messages_fts", operation="count_indexed"
            )
            if abs(active - indexed) > drift_tolerance:
                is_healthy = False
                issues.append("Search index inconsistency detected")

            orphaned = await fetch_count(
                conn,
                f"SELECT COUNT(*) FROM channel_sync_meta WHERE {_ORPHANED_META_WHERE}",
                operation="count_orphaned_meta",
            )
            if orphaned > 0:
                issues.append(f"Orphaned sync metadata: {orphaned} entries")

            wal_status = await _read_wal_status(conn)
    except Exception as e:
        log.error("integrity_check_failed", error=str(e))
        return HealthReport(is_healthy=False, issues=[f"Integrity check failed: {e}"])

    return HealthReport(is_healthy=is_healthy, issues=issues, wal_status=wal_status)


class IntegrityEngine:
    """数据库完整性引擎

    持有 StoreGroup 而非单个连接：紧急恢复会替换底层连接。
    """

    def __init__(
        self,
        group: StoreGroup,
        drift_tolerance: int = SEARCH_INDEX_DRIFT_TOLERANCE,
        purge_after_days: int = SOFT_DELETE_PURGE_DAYS,
    ) -> None:
        self._group = group
        self._drift_tolerance = drift_tolerance
        self._purge_after_days = purge_after_days

    async def check_integrity(self) -> HealthReport:
        """只读健康检查，从不抛异常"""
        report = await inspect_database(
            self._group.conn, self._drift_tolerance, lock=self._group.lock
        )
        await log.ainfo(
            "integrity_checked",
            is_healthy=report.is_healthy,
            issue_count=len(report.issues),
        )
        return report

    async def _execute(self, operation: str, sql: str, params: tuple = ()) -> int:
        async with write_transaction(self._group.conn, self._group.lock, operation) as conn:
            cursor = await conn.execute(sql, params)
            return cursor.rowcount

    async def attempt_repair(self) -> RepairResult:
        """按顺序执行修复动作

        顺序: 重建索引 -> 清理孤立游标 -> 清除过期软删除消息
              -> WAL TRUNCATE checkpoint -> REINDEX -> ANALYZE
        首个失败追加 "Error: ..." 并停止，不回滚已完成的动作。
        """
        actions: list[str] = []
        start_time = time.monotonic()
        try:
            await self._group.search_index.rebuild()
            actions.append("Search index rebuilt")

            removed = await self._execute(
                "clean_orphaned_meta",
                f"DELETE FROM channel_sync_meta WHERE {_ORPHANED_META_WHERE}",
            )
            actions.append(f"Orphaned sync metadata cleaned ({removed})")

            cutoff = datetime.now(UTC) - timedelta(days=self._purge_after_days)
            purged = await self._execute(
                "purge_deleted_messages",
                "DELETE FROM cached_messages WHERE is_deleted = 1 AND deleted_at < ?",
                (format_ts(cutoff),),
            )
            actions.append(f"Old deleted messages purged ({purged})")

            await self._execute("wal_checkpoint", "PRAGMA wal_checkpoint(TRUNCATE);")
            actions.append("WAL checkpoint completed")

            await self._execute("reindex", "REINDEX;")
            actions.append("Indexes rebuilt")

            await self._execute("analyze", "ANALYZE;")
            actions.append("Statistics updated")
        except Exception as e:
            actions.append(f"Error: {e}")
            log.error("repair_failed", error=str(e), completed_actions=len(actions) - 1)
            return RepairResult(success=False, actions=actions)

        elapsed_ms = int((time.monotonic() - start_time) * 1000)
        await log.ainfo("repair_completed", actions=len(actions), elapsed_ms=elapsed_ms)
        return RepairResult(success=True, actions=actions)

    async def emergency_recovery(self) -> RecoveryResult:
        """紧急恢复：抢救可读数据 -> 换新数据库 -> 回放

        抢救失败的部分按空处理；换库或回放失败时 success=False。
        """
        store = self._group.message_store

        messages: list[CachedMessage] = []
        try:
            messages = await store.get_all_messages()
        except Exception as e:
            log.error("salvage_messages_failed", error=str(e))

        metas: list[ChannelSyncMeta] = []
        try:
            metas = await store.get_all_channel_meta()
        except Exception as e:
            log.error("salvage_sync_meta_failed", error=str(e))

        await log.ainfo(
            "emergency_recovery_started",
            salvaged_messages=len(messages),
            salvaged_channels=len(metas),
        )

        try:
            await self._group.reopen(discard_files=True)
            recovered = await store.batch_upsert_messages(messages)
            for meta in metas:
                await store.update_channel_meta(meta)
        except Exception as e:
            log.error("emergency_recovery_failed", error=str(e))
            return RecoveryResult(success=False, error=str(e))

        await log.ainfo(
            "emergency_recovery_completed",
            messages_recovered=recovered,
            channels_recovered=len(metas),
        )
        return RecoveryResult(
            success=True,
            messages_recovered=recovered,
            channels_recovered=len(metas),
        )

    async def run_startup_check(self) -> tuple[HealthReport, RepairResult | None]:
        """启动检查：不健康时尝试修复；修复失败只记录错误"""
        report = await self.check_integrity()
        if report.is_healthy:
            return report, None

        log.warning("startup_check_unhealthy", issues=report.issues)
        repair = await self.attempt_repair()
        if not repair.success:
            log.error("startup_repair_failed", actions=repair.actions)
        return report, repair
