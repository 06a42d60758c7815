"""Parley ChatCache Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .backup import (
    BackupEnvelope,
    BackupFileInfo,
    BackupManifest,
    BackupPackage,
    BackupResult,
    BackupVerifyResult,
    RestoreResult,
)
from .enums import EncryptionFormat, RestoreErrorCode
from .health import HealthReport, RecoveryResult, RepairResult, StoreStats, WALStatus
from .message import CachedMessage, ChannelSyncMeta

__all__ = [
    # 枚举
    "RestoreErrorCode",
    "EncryptionFormat",
    # 消息
    "CachedMessage",
    "ChannelSyncMeta",
    # 健康检查
    "WALStatus",
    "HealthReport",
    "RepairResult",
    "RecoveryResult",
    "StoreStats",
    # 备份
    "BackupManifest",
    "BackupEnvelope",
    "BackupPackage",
    "BackupFileInfo",
    "RestoreResult",
    "BackupVerifyResult",
    "BackupResult",
]
