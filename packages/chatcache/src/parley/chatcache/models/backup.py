"""备份 / 恢复数据模型

BackupEnvelope 是导出时的逻辑结构，顶层键固定为 manifest / messages / syncMeta。
checksum 在 checksum 字段置空的序列化结果上计算，再回填。
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .enums import RestoreErrorCode
from .message import normalize_utc


def format_size(size: int) -> str:
    """字节数转为可读字符串"""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


class BackupManifest(BaseModel):
    """备份清单"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: int = Field(description="备份格式版本")
    created_at: datetime = Field(description="备份创建时间")
    schema_version: int = Field(description="导出时本地库 schema 版本")
    message_count: int = Field(ge=0)
    channel_count: int = Field(ge=0)
    is_encrypted: bool
    checksum: str = Field(default="", description="SHA-256 前 16 位 hex")

    @field_validator("created_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return normalize_utc(value)


class BackupEnvelope(BaseModel):
    """备份信封 -- messages / syncMeta 为通用键值映射"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    manifest: BackupManifest
    messages: list[dict[str, Any]] = Field(default_factory=list)
    sync_meta: list[dict[str, Any]] = Field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        """转换为写入 JSON 的 camelCase 字典"""
        return self.model_dump(mode="json", by_alias=True)


class BackupPackage(BaseModel):
    """可存储 / 传输的完整备份包"""

    data: bytes
    manifest: BackupManifest
    is_encrypted: bool

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def size_formatted(self) -> str:
        return format_size(self.size)


class BackupFileInfo(BaseModel):
    """本地备份文件信息"""

    path: str
    file_name: str
    size: int
    created_at: datetime
    is_encrypted: bool

    @property
    def size_formatted(self) -> str:
        return format_size(self.size)


class RestoreResult(BaseModel):
    """恢复结果 -- 失败时 error 为面向用户的描述，error_code 供 UI 分支"""

    success: bool
    messages_restored: int = 0
    channels_restored: int = 0
    messages_skipped: int = 0
    channels_skipped: int = 0
    backup_date: datetime | None = None
    error: str | None = None
    error_code: RestoreErrorCode | None = None


class BackupVerifyResult(BaseModel):
    """备份校验结果（不修改本地库）"""

    is_valid: bool
    is_encrypted: bool = False
    needs_password: bool = False
    manifest: BackupManifest | None = None
    error: str | None = None
    error_code: RestoreErrorCode | None = None


class BackupResult(BaseModel):
    """一次立即备份（创建 + 保存 + 清理旧文件）的结果"""

    success: bool
    file_path: str | None = None
    message_count: int = 0
    channel_count: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None
