"""BackupService -- 导出 / 恢复 / 校验

恢复流程:
  1. 魔数判断是否加密；加密但无密码 -> PASSWORD_REQUIRED
  2. 解密（当前格式或旧格式）并解码 JSON
  3. 在原始 JSON 上把 checksum 置空后重算校验和，不匹配 -> CORRUPTED（不做任何写入）
  4. manifest.schemaVersion 高于本地 -> INCOMPATIBLE_VERSION
  5. 非合并模式先清空本地数据
  6. 逐行 upsert，单行失败记录并跳过
恢复与校验入口从不抛异常，错误以 error / error_code 返回。
"""

from datetime import UTC, datetime
from pathlib import Path

import structlog

from ..config import BACKUP_FORMAT_VERSION, BACKUP_RETENTION_COUNT
from ..exceptions import (
    BackupValidationError,
    CryptoError,
    IncompatibleBackupError,
    IntegrityError,
    PasswordRequiredError,
)
from ..models.backup import (
    BackupEnvelope,
    BackupManifest,
    BackupPackage,
    BackupResult,
    BackupVerifyResult,
    RestoreResult,
)
from ..models.enums import EncryptionFormat, RestoreErrorCode
from ..models.message import CachedMessage, ChannelSyncMeta
from ..store.protocols import MessageRepository
from . import crypto
from .codec import decode_envelope, encode_envelope
from .files import BackupFileManager

log = structlog.get_logger(component="backup_service")


def classify_error(error: Exception) -> RestoreErrorCode:
    """异常 -> 面向 UI 的错误码"""
    if isinstance(error, PasswordRequiredError):
        return RestoreErrorCode.PASSWORD_REQUIRED
    if isinstance(error, CryptoError):
        return RestoreErrorCode.INVALID_PASSWORD
    if isinstance(error, IntegrityError):
        return RestoreErrorCode.CORRUPTED
    if isinstance(error, IncompatibleBackupError):
        return RestoreErrorCode.INCOMPATIBLE_VERSION
    if isinstance(error, BackupValidationError):
        return RestoreErrorCode.INVALID_FORMAT
    if isinstance(error, FileNotFoundError):
        return RestoreErrorCode.FILE_NOT_FOUND
    return RestoreErrorCode.UNKNOWN


def _file_not_found_message(path: Path) -> str:
    return f"Backup file not found: {path}"


class BackupService:
    """备份服务 -- 只依赖 MessageRepository 接口"""

    def __init__(
        self,
        repository: MessageRepository,
        file_manager: BackupFileManager | None = None,
    ) -> None:
        self._repository = repository
        self._file_manager = file_manager

    async def create_backup(
        self,
        password: str | None = None,
        include_deleted_messages: bool = False,
    ) -> BackupPackage:
        """导出全部数据为备份包

        Args:
            password: 不为空时使用 AES-256-GCM 加密
            include_deleted_messages: 是否包含软删除消息

        Raises:
            StorageError: 读取本地数据失败
        """
        messages = await self._repository.get_all_messages()
        if not include_deleted_messages:
            messages = [m for m in messages if not m.is_deleted]
        metas = await self._repository.get_all_channel_meta()

        encrypted = bool(password)
        envelope = BackupEnvelope(
            manifest=BackupManifest(
                version=BACKUP_FORMAT_VERSION,
                created_at=datetime.now(UTC),
                schema_version=self._repository.schema_version,
                message_count=len(messages),
                channel_count=len(metas),
                is_encrypted=encrypted,
            ),
            messages=[m.model_dump(mode="json", by_alias=True) for m in messages],
            sync_meta=[m.model_dump(mode="json", by_alias=True) for m in metas],
        )
        payload, manifest = encode_envelope(envelope)
        data = await crypto.encrypt(payload, password) if encrypted else payload

        await log.ainfo(
            "backup_created",
            message_count=manifest.message_count,
            channel_count=manifest.channel_count,
            encrypted=encrypted,
            size=len(data),
        )
        return BackupPackage(data=data, manifest=manifest, is_encrypted=encrypted)

    async def _open(self, data: bytes, password: str | None) -> BackupEnvelope:
        """解密 + 解析 + 校验（不修改本地库）"""
        fmt = crypto.detect_format(data)
        if fmt == EncryptionFormat.PLAINTEXT:
            envelope = decode_envelope(data)
        else:
            if not password:
                raise PasswordRequiredError()
            payload = await crypto.decrypt(data, password)
            try:
                envelope = decode_envelope(payload)
            except IntegrityError as e:
                if fmt == EncryptionFormat.LEGACY_XOR:
                    # 旧格式没有认证标签，密码错误只会表现为无法解析
                    raise CryptoError() from e
                raise

        local_version = self._repository.schema_version
        if envelope.manifest.schema_version > local_version:
            raise IncompatibleBackupError(envelope.manifest.schema_version, local_version)
        return envelope

    async def restore_from_bytes(
        self,
        data: bytes,
        password: str | None = None,
        merge_with_existing: bool = False,
    ) -> RestoreResult:
        """从备份字节恢复

        Args:
            data: 备份内容（明文 JSON 或加密数据）
            password: 加密备份的密码
            merge_with_existing: False 时先清空本地数据
        """
        try:
            envelope = await self._open(data, password)
        except Exception as e:
            code = classify_error(e)
            log.warning("restore_rejected", error_code=code.value, error=str(e))
            return RestoreResult(success=False, error=str(e), error_code=code)

        try:
            if not merge_with_existing:
                await self._repository.clear_all()
        except Exception as e:
            log.error("restore_clear_failed", error=str(e))
            return RestoreResult(
                success=False, error=str(e), error_code=RestoreErrorCode.UNKNOWN
            )

        messages_restored = messages_skipped = 0
        for row in envelope.messages:
            try:
                await self._repository.upsert_message(CachedMessage.model_validate(row))
                messages_restored += 1
            except Exception as e:
                messages_skipped += 1
                log.warning("restore_message_skipped", message_id=row.get("id"), error=str(e))

        channels_restored = channels_skipped = 0
        for row in envelope.sync_meta:
            try:
                await self._repository.update_channel_meta(ChannelSyncMeta.model_validate(row))
                channels_restored += 1
            except Exception as e:
                channels_skipped += 1
                log.warning(
                    "restore_channel_skipped", channel_id=row.get("channelId"), error=str(e)
                )

        await log.ainfo(
            "backup_restored",
            messages_restored=messages_restored,
            channels_restored=channels_restored,
            messages_skipped=messages_skipped,
            channels_skipped=channels_skipped,
            merged=merge_with_existing,
        )
        return RestoreResult(
            success=True,
            messages_restored=messages_restored,
            channels_restored=channels_restored,
            messages_skipped=messages_skipped,
            channels_skipped=channels_skipped,
            backup_date=envelope.manifest.created_at,
        )

    async def restore_from_file(
        self,
        path: str | Path,
        password: str | None = None,
        merge_with_existing: bool = False,
    ) -> RestoreResult:
        """从备份文件恢复"""
        path = Path(path)
        if not path.is_file():
            return RestoreResult(
                success=False,
                error=_file_not_found_message(path),
                error_code=RestoreErrorCode.FILE_NOT_FOUND,
            )
        try:
            data = path.read_bytes()
        except OSError as e:
            return RestoreResult(success=False, error=str(e), error_code=classify_error(e))
        return await self.restore_from_bytes(data, password, merge_with_existing)

    async def verify_bytes(
        self,
        data: bytes,
        password: str | None = None,
    ) -> BackupVerifyResult:
        """校验备份内容（不修改本地库）

        加密且未提供密码时视为有效并标记 needs_password。
        """
        encrypted = crypto.is_encrypted(data)
        if encrypted and not password:
            return BackupVerifyResult(is_valid=True, is_encrypted=True, needs_password=True)

        try:
            envelope = await self._open(data, password)
        except Exception as e:
            return BackupVerifyResult(
                is_valid=False,
                is_encrypted=encrypted,
                error=str(e),
                error_code=classify_error(e),
            )
        return BackupVerifyResult(
            is_valid=True,
            is_encrypted=encrypted,
            manifest=envelope.manifest,
        )

    async def verify_backup(
        self,
        path: str | Path,
        password: str | None = None,
    ) -> BackupVerifyResult:
        """校验备份文件"""
        path = Path(path)
        if not path.is_file():
            return BackupVerifyResult(
                is_valid=False,
                error=_file_not_found_message(path),
                error_code=RestoreErrorCode.FILE_NOT_FOUND,
            )
        try:
            data = path.read_bytes()
        except OSError as e:
            return BackupVerifyResult(is_valid=False, error=str(e), error_code=classify_error(e))
        return await self.verify_bytes(data, password)

    async def run_backup(
        self,
        password: str | None = None,
        keep_count: int = BACKUP_RETENTION_COUNT,
    ) -> BackupResult:
        """立即备份：创建 -> 保存 -> 清理旧文件，从不抛异常"""
        if self._file_manager is None:
            return BackupResult(success=False, error="Backup directory is not configured")

        try:
            package = await self.create_backup(password=password)
            info = await self._file_manager.save(package)
            await self._file_manager.prune(keep_count)
        except Exception as e:
            log.error("scheduled_backup_failed", error=str(e))
            return BackupResult(success=False, error=str(e))

        return BackupResult(
            success=True,
            file_path=info.path,
            message_count=package.manifest.message_count,
            channel_count=package.manifest.channel_count,
        )
