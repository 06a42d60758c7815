"""枚举定义

包含恢复失败原因码和备份加密格式。
"""

from enum import StrEnum


class RestoreErrorCode(StrEnum):
    """恢复 / 校验失败原因 -- UI 据此渲染不同的引导文案"""

    PASSWORD_REQUIRED = "PASSWORD_REQUIRED"
    INVALID_PASSWORD = "INVALID_PASSWORD"
    CORRUPTED = "CORRUPTED"
    INCOMPATIBLE_VERSION = "INCOMPATIBLE_VERSION"
    INVALID_FORMAT = "INVALID_FORMAT"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    UNKNOWN = "UNKNOWN"


class EncryptionFormat(StrEnum):
    """备份字节流格式（由 magic 前缀判定）"""

    PLAINTEXT = "plaintext"
    # 当前格式：AES-256-GCM + PBKDF2
    AES_GCM = "aes_gcm"
    # 旧格式：无认证的 XOR 流，仅支持解密
    LEGACY_XOR = "legacy_xor"
