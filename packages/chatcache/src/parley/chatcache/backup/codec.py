"""备份信封编解码与校验和

规范化 JSON: 键排序、无多余空白、保留非 ASCII 字符。
checksum = SHA-256(manifest.checksum 置空后的规范化 JSON) 的前 16 位 hex。
解码时在原始文本上把 checksum 的值原位置空后重算，任何字节改动都会改变结果；
校验通过后才做模型校验。
"""

import copy
import hashlib
import json
from typing import Any

from pydantic import ValidationError

from ..exceptions import BackupValidationError, IntegrityError
from ..models.backup import BackupEnvelope, BackupManifest

CHECKSUM_LENGTH = 16


def canonical_json(data: Any) -> str:
    """规范化 JSON 序列化"""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_checksum(envelope: dict[str, Any]) -> str:
    """在 checksum 置空的副本上计算校验和（不修改入参）"""
    blanked = copy.deepcopy(envelope)
    blanked["manifest"]["checksum"] = ""
    digest = hashlib.sha256(canonical_json(blanked).encode("utf-8")).hexdigest()
    return digest[:CHECKSUM_LENGTH]


def payload_checksum(text: str, stored: str) -> str | None:
    """在原始 JSON 文本上把 checksum 的值原位置空后计算校验和

    checksum 字段必须恰好出现一次，否则返回 None。
    字符串值内的引号总被转义，消息内容无法伪造出该字段。
    """
    field = f'"checksum":"{stored}"'
    if text.count(field) != 1:
        return None
    blanked = text.replace(field, '"checksum":""')
    digest = hashlib.sha256(blanked.encode("utf-8")).hexdigest()
    return digest[:CHECKSUM_LENGTH]


def encode_envelope(envelope: BackupEnvelope) -> tuple[bytes, BackupManifest]:
    """序列化信封并回填 checksum

    Returns:
        (UTF-8 JSON 字节, 带 checksum 的 manifest)
    """
    wire = envelope.to_wire()
    checksum = compute_checksum(wire)
    wire["manifest"]["checksum"] = checksum
    manifest = envelope.manifest.model_copy(update={"checksum": checksum})
    return canonical_json(wire).encode("utf-8"), manifest


def decode_envelope(payload: bytes) -> BackupEnvelope:
    """解析并校验备份 JSON

    Raises:
        IntegrityError: 无法解码 / 解析、缺少 manifest 或 checksum、checksum 不匹配
        BackupValidationError: checksum 正确但结构不符合信封模型
    """
    try:
        text = payload.decode("utf-8")
        raw = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise IntegrityError() from e

    if not isinstance(raw, dict) or not isinstance(raw.get("manifest"), dict):
        raise IntegrityError()
    stored = raw["manifest"].get("checksum")
    if not isinstance(stored, str) or not stored:
        raise IntegrityError()
    if payload_checksum(text, stored) != stored:
        raise IntegrityError()

    try:
        return BackupEnvelope.model_validate(raw)
    except ValidationError as e:
        raise BackupValidationError(f"Invalid backup format: {e.error_count()} validation errors") from e
