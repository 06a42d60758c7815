"""备份加解密

当前格式 (AES-256-GCM):
    MAGIC(8) ‖ SALT(16) ‖ NONCE(12) ‖ CIPHERTEXT ‖ TAG(16)
    MAGIC = b"PRLYBAK2"，密钥由 PBKDF2-HMAC-SHA256 从密码派生。
旧格式 (仅解密):
    b"PRLYBAK" + 任意第 8 字节，正文与迭代 SHA-256 派生的密钥逐字节异或。
    没有完整性保护，新备份不再使用。

PBKDF2 是 CPU 密集操作，异步入口通过 asyncio.to_thread 执行。
"""

import asyncio
import hashlib
import os

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import PBKDF2_ITERATIONS
from ..exceptions import CryptoError
from ..models.enums import EncryptionFormat

log = structlog.get_logger(component="backup_crypto")

MAGIC = b"PRLYBAK2"
LEGACY_PREFIX = b"PRLYBAK"
LEGACY_SALT = "parley_backup_salt_v1"
LEGACY_ITERATIONS = 10_000

SALT_SIZE = 16
NONCE_SIZE = 12
KEY_SIZE = 32
TAG_SIZE = 16
HEADER_SIZE = len(MAGIC) + SALT_SIZE + NONCE_SIZE


def detect_format(data: bytes) -> EncryptionFormat:
    """根据魔数判断备份的加密格式"""
    if data[: len(MAGIC)] == MAGIC:
        return EncryptionFormat.AES_GCM
    if len(data) >= len(MAGIC) and data[: len(LEGACY_PREFIX)] == LEGACY_PREFIX:
        return EncryptionFormat.LEGACY_XOR
    return EncryptionFormat.PLAINTEXT


def is_encrypted(data: bytes) -> bool:
    return detect_format(data) != EncryptionFormat.PLAINTEXT


def derive_key(password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """PBKDF2-HMAC-SHA256 派生 256 位密钥"""
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, KEY_SIZE)


def derive_legacy_key(password: str) -> bytes:
    """旧格式密钥：对 password + 固定盐迭代 SHA-256"""
    key = (password + LEGACY_SALT).encode("utf-8")
    for _ in range(LEGACY_ITERATIONS):
        key = hashlib.sha256(key).digest()
    return key[:KEY_SIZE]


def encrypt_bytes(plaintext: bytes, password: str) -> bytes:
    """AES-256-GCM 加密，每次调用使用新的随机盐和 nonce"""
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    key = derive_key(password, salt)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
    return MAGIC + salt + nonce + ciphertext


def _decrypt_legacy(data: bytes, password: str) -> bytes:
    key = derive_legacy_key(password)
    body = data[len(MAGIC):]
    return bytes(b ^ key[i % len(key)] for i, b in enumerate(body))


def decrypt_bytes(data: bytes, password: str) -> bytes:
    """解密备份数据

    Raises:
        CryptoError: 密码错误、数据被篡改或截断（统一消息）；或不是加密数据
    """
    fmt = detect_format(data)
    if fmt == EncryptionFormat.AES_GCM:
        if len(data) < HEADER_SIZE + TAG_SIZE:
            raise CryptoError()
        salt = data[len(MAGIC): len(MAGIC) + SALT_SIZE]
        nonce = data[len(MAGIC) + SALT_SIZE: HEADER_SIZE]
        key = derive_key(password, salt)
        try:
            return AESGCM(key).decrypt(nonce, data[HEADER_SIZE:], None)
        except InvalidTag as e:
            raise CryptoError() from e
    if fmt == EncryptionFormat.LEGACY_XOR:
        log.warning("legacy_backup_format_decrypted")
        return _decrypt_legacy(data, password)
    raise CryptoError("Unrecognized encryption format")


async def encrypt(plaintext: bytes, password: str) -> bytes:
    """encrypt_bytes 的异步版本（在线程池执行）"""
    return await asyncio.to_thread(encrypt_bytes, plaintext, password)


async def decrypt(data: bytes, password: str) -> bytes:
    """decrypt_bytes 的异步版本（在线程池执行）"""
    return await asyncio.to_thread(decrypt_bytes, data, password)
