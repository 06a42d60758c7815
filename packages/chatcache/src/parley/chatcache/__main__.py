"""CLI 入口模块 -- python -m parley.chatcache <command>

支持的命令：
  check              只读健康检查
  repair             执行自动修复
  recover            紧急恢复（抢救数据后重建数据库）
  stats              显示本地库统计信息
  vacuum             回收数据库空间
  backup             立即备份到备份目录并清理旧备份
  restore <file>     从备份文件恢复（覆盖本地数据）
  verify <file>      校验备份文件
  list-backups       列出本地备份文件

备份密码从 PARLEY_BACKUP_PASSWORD 环境变量读取。
"""

import asyncio
import os
import sys

from .config import get_backups_dir, get_db_path

_USAGE = """用法: python -m parley.chatcache <command> [args]
命令:
  check              只读健康检查
  repair             执行自动修复
  recover            紧急恢复（抢救数据后重建数据库）
  stats              显示本地库统计信息
  vacuum             回收数据库空间
  backup             立即备份到备份目录并清理旧备份
  restore <file>     从备份文件恢复（覆盖本地数据）
  verify <file>      校验备份文件
  list-backups       列出本地备份文件"""

_FILE_COMMANDS = {"restore", "verify"}


def _backup_password() -> str | None:
    return os.environ.get("PARLEY_BACKUP_PASSWORD") or None


def main(argv: list[str] | None = None) -> None:
    """CLI 主入口"""
    args = sys.argv[1:] if argv is None else argv
    if not args:
        print(_USAGE)
        sys.exit(1)

    command = args[0]
    handlers = {
        "check": check,
        "repair": repair,
        "recover": recover,
        "stats": stats,
        "vacuum": vacuum,
        "backup": backup,
        "restore": restore,
        "verify": verify,
        "list-backups": list_backups,
    }
    handler = handlers.get(command)
    if handler is None:
        print(f"未知命令: {command}")
        print(f"可用命令: {', '.join(handlers)}")
        sys.exit(1)

    if command in _FILE_COMMANDS:
        if len(args) < 2:
            print(f"用法: python -m parley.chatcache {command} <file>")
            sys.exit(1)
        ok = asyncio.run(handler(args[1]))
    else:
        ok = asyncio.run(handler())
    if not ok:
        sys.exit(1)


async def _open_store():
    from .logging_config import setup_logging
    from .store import create_store_group

    setup_logging()
    db_path = get_db_path()
    print(f"数据库路径: {db_path}")
    return await create_store_group(db_path)


async def check() -> bool:
    """只读健康检查"""
    from .integrity import IntegrityEngine

    group = await _open_store()
    try:
        report = await IntegrityEngine(group).check_integrity()
    finally:
        await group.close()

    print(f"健康状态: {'healthy' if report.is_healthy else 'unhealthy'}")
    print(f"journal_mode: {report.wal_status.journal_mode}, WAL 帧数: {report.wal_status.log_frames}")
    for issue in report.issues:
        print(f"  - {issue}")
    return report.is_healthy


async def repair() -> bool:
    """执行自动修复"""
    from .integrity import IntegrityEngine

    group = await _open_store()
    try:
        result = await IntegrityEngine(group).attempt_repair()
    finally:
        await group.close()

    for action in result.actions:
        print(f"  - {action}")
    print("修复完成" if result.success else "修复失败")
    return result.success


async def recover() -> bool:
    """紧急恢复"""
    from .integrity import IntegrityEngine

    group = await _open_store()
    try:
        result = await IntegrityEngine(group).emergency_recovery()
    finally:
        await group.close()

    if not result.success:
        print(f"紧急恢复失败: {result.error}")
        return False
    print(f"恢复完成: {result.messages_recovered} 条消息, {result.channels_recovered} 个频道")
    return True


async def stats() -> bool:
    """显示统计信息"""
    group = await _open_store()
    try:
        store_stats = await group.message_store.get_stats()
    finally:
        await group.close()

    print(f"消息总数: {store_stats.total_messages}")
    print(f"缓存频道数: {store_stats.cached_channels}")
    print(f"索引行数: {store_stats.indexed_messages}")
    print(f"schema 版本: {store_stats.schema_version}")
    return True


async def vacuum() -> bool:
    """回收数据库空间"""
    group = await _open_store()
    try:
        await group.message_store.vacuum()
    finally:
        await group.close()
    print("VACUUM 完成")
    return True


async def backup() -> bool:
    """立即备份"""
    from .backup import BackupFileManager, BackupService

    group = await _open_store()
    backups_dir = get_backups_dir()
    print(f"备份目录: {backups_dir}")
    try:
        service = BackupService(group.message_store, BackupFileManager(backups_dir))
        result = await service.run_backup(password=_backup_password())
    finally:
        await group.close()

    if not result.success:
        print(f"备份失败: {result.error}")
        return False
    print(f"备份完成: {result.file_path}")
    print(f"  {result.message_count} 条消息, {result.channel_count} 个频道")
    return True


async def restore(file_path: str) -> bool:
    """从备份文件恢复"""
    from .backup import BackupService

    group = await _open_store()
    try:
        result = await BackupService(group.message_store).restore_from_file(
            file_path, password=_backup_password()
        )
    finally:
        await group.close()

    if not result.success:
        print(f"恢复失败 [{result.error_code}]: {result.error}")
        return False
    print(f"恢复完成: {result.messages_restored} 条消息, {result.channels_restored} 个频道")
    if result.messages_skipped or result.channels_skipped:
        print(f"  跳过: {result.messages_skipped} 条消息, {result.channels_skipped} 个频道")
    return True


async def verify(file_path: str) -> bool:
    """校验备份文件"""
    from .backup import BackupService

    group = await _open_store()
    try:
        result = await BackupService(group.message_store).verify_backup(
            file_path, password=_backup_password()
        )
    finally:
        await group.close()

    if not result.is_valid:
        print(f"备份无效 [{result.error_code}]: {result.error}")
        return False
    if result.needs_password:
        print("备份已加密，设置 PARLEY_BACKUP_PASSWORD 后可完整校验")
        return True
    manifest = result.manifest
    print(f"备份有效: 创建于 {manifest.created_at.isoformat()}")
    print(f"  {manifest.message_count} 条消息, {manifest.channel_count} 个频道, 加密: {result.is_encrypted}")
    return True


async def list_backups() -> bool:
    """列出本地备份文件"""
    from .backup import BackupFileManager

    backups = await BackupFileManager(get_backups_dir()).list_backups()
    if not backups:
        print("没有备份文件")
        return True
    for info in backups:
        flag = "encrypted" if info.is_encrypted else "plain"
        print(f"{info.created_at.isoformat()}  {info.size_formatted:>10}  {flag:<9}  {info.file_name}")
    return True


if __name__ == "__main__":
    main()
