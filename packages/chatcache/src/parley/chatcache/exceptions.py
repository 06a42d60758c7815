"""ChatCache 异常体系

查询类操作的"未找到"以 None / [] 返回，不抛异常。
批量恢复中的单行失败以 skipped 计数体现，不作为异常抛出。
"""


class ChatCacheError(Exception):
    """本地缓存基础异常"""

    def __init__(self, message: str, recoverable: bool = True) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 是否可通过重试或修复恢复
        """
        super().__init__(message)
        self.recoverable = recoverable


class StorageError(ChatCacheError):
    """底层存储引擎或 I/O 失败"""

    def __init__(self, operation: str, original_error: Exception) -> None:
        """
        Args:
            operation: 失败的操作名称
            original_error: 原始异常
        """
        super().__init__(f"Storage operation '{operation}' failed: {original_error}")
        self.operation = operation
        self.original_error = original_error


class SearchError(ChatCacheError):
    """全文检索后端不可用或索引损坏

    此异常触发降级到子串检索。
    """


class IntegrityError(ChatCacheError):
    """校验和不匹配或检测到结构性损坏"""

    def __init__(self, message: str = "Backup checksum mismatch. File may be corrupted.") -> None:
        super().__init__(message, recoverable=False)


class CryptoError(ChatCacheError):
    """解密失败

    密码错误与认证标签校验失败统一为同一条消息，避免形成解密 oracle。
    """

    def __init__(self, message: str = "Decryption failed: invalid password or corrupted data") -> None:
        super().__init__(message, recoverable=False)


class PasswordRequiredError(ChatCacheError):
    """备份已加密但未提供密码"""

    def __init__(self) -> None:
        super().__init__("Backup is encrypted. Please provide a password.")


class BackupValidationError(ChatCacheError):
    """备份内容格式不合法（缺字段、类型错误等）"""

    def __init__(self, message: str) -> None:
        super().__init__(message, recoverable=False)


class IncompatibleBackupError(BackupValidationError):
    """备份来自更新的 schema 版本，本地无法安全导入"""

    def __init__(self, backup_version: int, local_version: int) -> None:
        super().__init__("Backup is from a newer app version. Please update the app.")
        self.backup_version = backup_version
        self.local_version = local_version
