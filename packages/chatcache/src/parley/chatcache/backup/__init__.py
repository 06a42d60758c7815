"""Parley ChatCache Backup -- 备份导出、加密、恢复与文件管理"""

from .codec import canonical_json, compute_checksum, decode_envelope, encode_envelope
from .crypto import decrypt, detect_format, encrypt, is_encrypted
from .files import BackupFileManager
from .service import BackupService, classify_error

__all__ = [
    "BackupService",
    "BackupFileManager",
    "classify_error",
    "canonical_json",
    "compute_checksum",
    "encode_envelope",
    "decode_envelope",
    "encrypt",
    "decrypt",
    "detect_format",
    "is_encrypted",
]
