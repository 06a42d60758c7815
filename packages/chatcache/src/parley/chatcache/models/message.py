"""CachedMessage / ChannelSyncMeta Domain Model

本地缓存的聊天消息与每个频道的同步游标。
Python 属性为 snake_case，备份 / 线上格式为 camelCase（两种键名均可构造）。
所有时间字段统一归一化为 UTC aware datetime，保证写入后读回值相等。
"""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def normalize_utc(value: datetime | None) -> datetime | None:
    """naive 时间按 UTC 解释，aware 时间转换到 UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class CachedMessage(BaseModel):
    """本地缓存的单条聊天消息

    软删除只设置 is_deleted / deleted_at，content 保留，直到被物理删除。
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(description="消息 ID（服务端 UUID，主键）")
    channel_id: str = Field(description="所属频道 ID")
    sender_id: str = Field(description="发送者 ID")
    sender_name: str = Field(description="发送者名称")
    sender_avatar: str | None = Field(default=None, description="发送者头像 URL")
    content: str = Field(description="消息文本")
    attachments_json: str = Field(default="[]", description="附件数组（JSON 序列化）")
    sent_at: datetime = Field(description="发送时间")
    edited_at: datetime | None = Field(default=None, description="最后编辑时间")
    deleted_at: datetime | None = Field(default=None, description="软删除时间")
    is_deleted: bool = Field(default=False, description="是否已软删除")

    # 端到端加密字段
    is_encrypted: bool | None = Field(default=None, description="内容是否为密文")
    encryption_version: int | None = Field(default=None, description="加密协议版本")
    sender_public_key: str | None = Field(default=None, description="发送者公钥")
    nonce: str | None = Field(default=None, description="加密 nonce")

    cached_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="写入缓存的时间",
    )

    @field_validator("sent_at", "edited_at", "deleted_at", "cached_at")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return normalize_utc(value)


class ChannelSyncMeta(BaseModel):
    """频道同步游标 -- 每个 channel_id 至多一行"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    channel_id: str = Field(description="频道 ID（主键）")
    last_synced_at: datetime = Field(description="最近一次成功同步时间")
    has_more: bool = Field(default=True, description="远端是否还有更早的消息")
    message_count: int = Field(default=0, ge=0, description="本地缓存消息数（信息性）")

    @field_validator("last_synced_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return normalize_utc(value)
