"""BackupService 单元测试

测试内容：
1. 导出：manifest、checksum、软删除过滤、加密
2. 恢复：错误码、篡改检测、版本检查、单行失败跳过、合并模式
3. 校验：不修改本地库
"""

import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from parley.chatcache.backup import BackupFileManager, BackupService, compute_checksum, crypto
from parley.chatcache.backup.codec import canonical_json, decode_envelope
from parley.chatcache.exceptions import BackupValidationError, IntegrityError
from parley.chatcache.models import RestoreErrorCode


@pytest_asyncio.fixture
async def seeded_store(message_store, make_message, make_meta):
    """两个频道、5 条消息（其中 1 条软删除）"""
    await message_store.batch_upsert_messages(
        [
            make_message("a1", channel_id="ch-a", minutes=1),
            make_message("a2", channel_id="ch-a", content="naïve café ☕", minutes=2),
            make_message("a3", channel_id="ch-a", minutes=3),
            make_message("b1", channel_id="ch-b", minutes=4, edited_at=None),
            make_message("b2", channel_id="ch-b", minutes=5),
        ]
    )
    await message_store.soft_delete_message("a3")
    await message_store.update_channel_meta(make_meta("ch-a", message_count=3))
    await message_store.update_channel_meta(make_meta("ch-b", message_count=2, has_more=False))
    return message_store


@pytest_asyncio.fixture
async def service(seeded_store):
    return BackupService(seeded_store)


def _rewrite(data: bytes, mutate) -> bytes:
    """修改备份 JSON 并重新计算 checksum"""
    envelope = json.loads(data)
    mutate(envelope)
    envelope["manifest"]["checksum"] = compute_checksum(envelope)
    return canonical_json(envelope).encode()


class TestCreateBackup:
    """导出"""

    async def test_manifest_counts_exclude_deleted(self, service):
        package = await service.create_backup()

        assert package.is_encrypted is False
        assert package.manifest.message_count == 4
        assert package.manifest.channel_count == 2
        assert package.manifest.schema_version == 2
        assert package.manifest.version == 1
        assert len(package.manifest.checksum) == 16

    async def test_include_deleted_messages(self, service):
        package = await service.create_backup(include_deleted_messages=True)
        assert package.manifest.message_count == 5

    async def test_envelope_wire_format(self, service):
        package = await service.create_backup()
        envelope = json.loads(package.data)

        assert set(envelope) == {"manifest", "messages", "syncMeta"}
        assert envelope["manifest"]["checksum"] == package.manifest.checksum
        assert "channelId" in envelope["messages"][0]
        assert "lastSyncedAt" in envelope["syncMeta"][0]

    async def test_checksum_computed_over_blanked_envelope(self, service):
        package = await service.create_backup()
        envelope = json.loads(package.data)
        assert compute_checksum(envelope) == envelope["manifest"]["checksum"]
        assert decode_envelope(package.data).manifest == package.manifest

    async def test_encrypted_backup(self, service):
        package = await service.create_backup(password="s3cret")

        assert package.is_encrypted is True
        assert package.manifest.is_encrypted is True
        assert package.data.startswith(crypto.MAGIC)
        assert b"ch-a" not in package.data


class TestRestore:
    """恢复"""

    async def test_round_trip_restores_exact_state(self, service, seeded_store):
        before_messages = [m for m in await seeded_store.get_all_messages() if not m.is_deleted]
        before_meta = await seeded_store.get_all_channel_meta()
        package = await service.create_backup()

        await seeded_store.clear_all()
        result = await service.restore_from_bytes(package.data)

        assert result.success is True
        assert result.messages_restored == 4
        assert result.channels_restored == 2
        assert result.messages_skipped == 0
        assert result.backup_date == package.manifest.created_at
        assert await seeded_store.get_all_messages() == before_messages
        assert await seeded_store.get_all_channel_meta() == before_meta

    async def test_encrypted_round_trip(self, service, seeded_store):
        package = await service.create_backup(password="s3cret")
        result = await service.restore_from_bytes(package.data, password="s3cret")
        assert result.success is True
        assert result.messages_restored == 4

    async def test_password_required(self, service, seeded_store):
        package = await service.create_backup(password="s3cret")
        await seeded_store.clear_all()

        result = await service.restore_from_bytes(package.data)

        assert result.success is False
        assert result.error_code == RestoreErrorCode.PASSWORD_REQUIRED
        assert result.error == "Backup is encrypted. Please provide a password."

    async def test_wrong_password_leaves_store_untouched(self, service, seeded_store):
        package = await service.create_backup(password="s3cret")

        result = await service.restore_from_bytes(package.data, password="guess")

        assert result.success is False
        assert result.error_code == RestoreErrorCode.INVALID_PASSWORD
        assert len(await seeded_store.get_all_messages()) == 5

    async def test_tampered_payload_rejected_before_mutation(self, service, seeded_store):
        """修改 checksum 以外的任意字节都会被检测到"""
        package = await service.create_backup()
        tampered = package.data.replace(b'"content":"hello world"', b'"content":"hellO world"', 1)
        assert tampered != package.data

        result = await service.restore_from_bytes(tampered)

        assert result.success is False
        assert result.error_code == RestoreErrorCode.CORRUPTED
        assert result.error == "Backup checksum mismatch. File may be corrupted."
        assert len(await seeded_store.get_all_messages()) == 5

    @pytest.mark.parametrize(
        "payload",
        [b"\xff\xfe not utf8", b"{not json", b"[]", b'{"messages":[]}', b'{"manifest":{"version":1}}'],
    )
    async def test_unparseable_payload_is_corruption(self, service, payload):
        result = await service.restore_from_bytes(payload)
        assert result.success is False
        assert result.error_code == RestoreErrorCode.CORRUPTED

    async def test_newer_schema_rejected(self, service, seeded_store):
        package = await service.create_backup()
        data = _rewrite(package.data, lambda e: e["manifest"].update(schemaVersion=99))

        await seeded_store.clear_all()
        result = await service.restore_from_bytes(data)

        assert result.success is False
        assert result.error_code == RestoreErrorCode.INCOMPATIBLE_VERSION
        assert result.error == "Backup is from a newer app version. Please update the app."

    async def test_invalid_manifest_is_invalid_format(self, service):
        package = await service.create_backup()
        data = _rewrite(package.data, lambda e: e["manifest"].pop("messageCount"))

        with pytest.raises(BackupValidationError):
            decode_envelope(data)
        result = await service.restore_from_bytes(data)
        assert result.error_code == RestoreErrorCode.INVALID_FORMAT

    async def test_bad_rows_are_skipped_and_counted(self, service, seeded_store):
        """单行失败不影响其余行"""
        package = await service.create_backup()

        def corrupt_rows(envelope):
            envelope["messages"][0].pop("content")
            envelope["syncMeta"][0]["messageCount"] = -5

        data = _rewrite(package.data, corrupt_rows)
        result = await service.restore_from_bytes(data)

        assert result.success is True
        assert result.messages_restored == 3
        assert result.messages_skipped == 1
        assert result.channels_restored == 1
        assert result.channels_skipped == 1

    async def test_storage_failure_on_row_is_skipped(self, seeded_store, make_message):
        package = await BackupService(seeded_store).create_backup()
        repository = AsyncMock()
        repository.schema_version = 2
        repository.upsert_message.side_effect = [RuntimeError("disk full"), None, None, None]

        result = await BackupService(repository).restore_from_bytes(package.data)

        assert result.success is True
        assert result.messages_restored == 3
        assert result.messages_skipped == 1
        repository.clear_all.assert_awaited_once()

    async def test_merge_keeps_existing_data(self, service, seeded_store, make_message):
        package = await service.create_backup()
        await seeded_store.upsert_message(make_message("local-only", channel_id="ch-z"))

        result = await service.restore_from_bytes(package.data, merge_with_existing=True)

        assert result.success is True
        assert await seeded_store.get_message("local-only") is not None

    async def test_replace_clears_existing_data(self, service, seeded_store, make_message):
        package = await service.create_backup()
        await seeded_store.upsert_message(make_message("local-only", channel_id="ch-z"))

        await service.restore_from_bytes(package.data)

        assert await seeded_store.get_message("local-only") is None
        # 软删除消息未导出，替换模式下不再存在
        assert await seeded_store.get_message("a3") is None

    async def test_legacy_backup_restores(self, service, seeded_store):
        """旧格式备份可以用正确密码恢复"""
        package = await service.create_backup()
        key = crypto.derive_legacy_key("old pw")
        body = bytes(b ^ key[i % len(key)] for i, b in enumerate(package.data))
        legacy_blob = crypto.LEGACY_PREFIX + b"1" + body

        await seeded_store.clear_all()
        ok = await service.restore_from_bytes(legacy_blob, password="old pw")
        assert ok.success is True
        assert ok.messages_restored == 4

        bad = await service.restore_from_bytes(legacy_blob, password="wrong")
        assert bad.error_code == RestoreErrorCode.INVALID_PASSWORD

    async def test_restore_from_missing_file(self, service, tmp_path):
        result = await service.restore_from_file(tmp_path / "nope.parley.json")
        assert result.success is False
        assert result.error_code == RestoreErrorCode.FILE_NOT_FOUND


class TestVerify:
    """校验（不修改本地库）"""

    async def test_verify_plain_backup(self, service, seeded_store):
        package = await service.create_backup()
        before = await seeded_store.get_all_messages()

        result = await service.verify_bytes(package.data)

        assert result.is_valid is True
        assert result.is_encrypted is False
        assert result.manifest == package.manifest
        assert await seeded_store.get_all_messages() == before

    async def test_encrypted_without_password_needs_password(self, service):
        package = await service.create_backup(password="pw")
        result = await service.verify_bytes(package.data)
        assert result.is_valid is True
        assert result.needs_password is True
        assert result.manifest is None

    async def test_encrypted_with_wrong_password(self, service):
        package = await service.create_backup(password="pw")
        result = await service.verify_bytes(package.data, password="nope")
        assert result.is_valid is False
        assert result.is_encrypted is True
        assert result.error_code == RestoreErrorCode.INVALID_PASSWORD

    async def test_verify_detects_tampering(self, service):
        package = await service.create_backup()
        tampered = package.data.replace(b'"hasMore":false', b'"hasMore":true ', 1)
        result = await service.verify_bytes(tampered)
        assert result.is_valid is False
        assert result.error_code == RestoreErrorCode.CORRUPTED

    async def test_verify_file(self, service, tmp_backups_dir):
        package = await service.create_backup(password="pw")
        info = await BackupFileManager(tmp_backups_dir).save(package)

        result = await service.verify_backup(info.path, password="pw")
        assert result.is_valid is True
        assert result.manifest.message_count == 4

        missing = await service.verify_backup(tmp_backups_dir / "missing.parley.enc")
        assert missing.error_code == RestoreErrorCode.FILE_NOT_FOUND

    def test_decode_rejects_missing_checksum(self):
        with pytest.raises(IntegrityError):
            decode_envelope(b'{"manifest":{"checksum":""},"messages":[],"syncMeta":[]}')


class TestRunBackup:
    """立即备份"""

    async def test_run_backup_saves_and_prunes(self, seeded_store, tmp_backups_dir):
        manager = BackupFileManager(tmp_backups_dir)
        service = BackupService(seeded_store, manager)

        for _ in range(3):
            result = await service.run_backup(keep_count=2)
            assert result.success is True

        backups = await manager.list_backups()
        assert len(backups) == 2
        assert result.file_path == backups[0].path
        assert result.message_count == 4

    async def test_run_backup_failure_reported(self, tmp_backups_dir):
        repository = AsyncMock()
        repository.get_all_messages.side_effect = RuntimeError("database is locked")
        service = BackupService(repository, BackupFileManager(tmp_backups_dir))

        result = await service.run_backup()

        assert result.success is False
        assert "database is locked" in result.error

    async def test_run_backup_without_directory(self, seeded_store):
        result = await BackupService(seeded_store).run_backup()
        assert result.success is False


class TestChecksumCoverage:
    """校验和覆盖原始字节"""

    async def test_every_single_byte_flip_detected(self, service):
        """逐字节翻转（0x01 / 0x20）都会被拒绝"""
        package = await service.create_backup()
        data = package.data
        decode_envelope(data)

        accepted = []
        for index in range(len(data)):
            for mask in (0x01, 0x20):
                flipped = bytearray(data)
                flipped[index] ^= mask
                try:
                    decode_envelope(bytes(flipped))
                except IntegrityError:
                    continue
                accepted.append((index, mask))

        assert accepted == []

    async def test_equivalent_escape_spelling_rejected(self, message_store, make_message):
        """解析结果相同但字节不同的转义写法同样视为损坏"""
        await message_store.upsert_message(make_message("ctl", content="bell\x1fchar"))
        package = await BackupService(message_store).create_backup()
        assert b"\\u001f" in package.data

        respelled = package.data.replace(b"\\u001f", b"\\u001F", 1)
        assert json.loads(respelled) == json.loads(package.data)

        with pytest.raises(IntegrityError):
            decode_envelope(respelled)
