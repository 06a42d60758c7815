"""本地备份文件管理

文件名: backup_<ISO 时间戳，":" 替换为 "-">.parley.enc | .parley.json
列表按修改时间倒序；清理时保留最新的 keep_count 个。
"""

from datetime import UTC, datetime
from pathlib import Path

import structlog

from ..config import BACKUP_RETENTION_COUNT
from ..models.backup import BackupFileInfo, BackupPackage

log = structlog.get_logger(component="backup_files")

ENCRYPTED_SUFFIX = ".parley.enc"
PLAINTEXT_SUFFIX = ".parley.json"


def backup_file_name(created_at: datetime, encrypted: bool) -> str:
    stamp = created_at.astimezone(UTC).isoformat(timespec="microseconds").replace(":", "-")
    return f"backup_{stamp}{ENCRYPTED_SUFFIX if encrypted else PLAINTEXT_SUFFIX}"


class BackupFileManager:
    """备份目录下的文件保存、列举与清理"""

    def __init__(self, backups_dir: str | Path) -> None:
        self._backups_dir = Path(backups_dir)

    @property
    def backups_dir(self) -> Path:
        return self._backups_dir

    def _to_info(self, path: Path) -> BackupFileInfo:
        stat = path.stat()
        return BackupFileInfo(
            path=str(path),
            file_name=path.name,
            size=stat.st_size,
            created_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            is_encrypted=path.name.endswith(ENCRYPTED_SUFFIX),
        )

    async def save(self, package: BackupPackage) -> BackupFileInfo:
        """把备份包写入备份目录"""
        self._backups_dir.mkdir(parents=True, exist_ok=True)
        path = self._backups_dir / backup_file_name(
            package.manifest.created_at, package.is_encrypted
        )
        path.write_bytes(package.data)
        await log.ainfo(
            "backup_saved",
            file_name=path.name,
            size=package.size_formatted,
            encrypted=package.is_encrypted,
        )
        return self._to_info(path)

    async def list_backups(self) -> list[BackupFileInfo]:
        """列出全部备份文件，最新的在前"""
        if not self._backups_dir.exists():
            return []
        paths = [
            p
            for p in self._backups_dir.glob("backup_*")
            if p.is_file() and p.name.endswith((ENCRYPTED_SUFFIX, PLAINTEXT_SUFFIX))
        ]
        infos = [self._to_info(p) for p in paths]
        infos.sort(key=lambda info: (info.created_at, info.file_name), reverse=True)
        return infos

    async def prune(self, keep_count: int = BACKUP_RETENTION_COUNT) -> int:
        """删除 keep_count 之外的旧备份，单个文件删除失败只记录日志

        Returns:
            实际删除的文件数
        """
        backups = await self.list_backups()
        removed = 0
        for info in backups[keep_count:]:
            try:
                Path(info.path).unlink()
                removed += 1
            except OSError as e:
                log.warning("backup_prune_failed", file_name=info.file_name, error=str(e))
        if removed:
            await log.ainfo("backups_pruned", removed=removed, kept=keep_count)
        return removed
