"""Store Protocol 接口定义

备份 / 恢复层只依赖这里的结构化接口，不依赖具体的 SQLite 实现，
测试中可以用 AsyncMock 或内存实现替换。
"""

from typing import Protocol

from ..models.message import CachedMessage, ChannelSyncMeta


class MessageRepository(Protocol):
    """备份层所需的消息仓库接口"""

    @property
    def schema_version(self) -> int:
        """本地库 schema 版本"""
        ...

    async def get_all_messages(self) -> list[CachedMessage]:
        """读取全部消息（含软删除）"""
        ...

    async def get_all_channel_meta(self) -> list[ChannelSyncMeta]:
        """读取全部频道同步游标"""
        ...

    async def upsert_message(self, message: CachedMessage) -> None:
        """插入或覆盖一条消息"""
        ...

    async def update_channel_meta(self, meta: ChannelSyncMeta) -> None:
        """写入频道同步游标"""
        ...

    async def clear_all(self) -> None:
        """清空全部消息与游标"""
        ...


class SearchIndex(Protocol):
    """全文检索接口 -- search 从不抛异常"""

    async def search(
        self,
        query: str,
        channel_id: str | None = None,
        limit: int = 50,
    ) -> list[CachedMessage]:
        """带降级的检索入口"""
        ...

    async def rebuild(self) -> None:
        """从权威表重建索引"""
        ...
