"""全局 pytest 配置 -- 临时 SQLite 数据库 + 测试消息工厂"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from parley.chatcache.models import CachedMessage, ChannelSyncMeta

# 测试数据的固定基准时间
BASE_TIME = datetime(2025, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest_asyncio.fixture
async def tmp_db_path(tmp_path: Path) -> Path:
    """提供临时 SQLite 数据库路径"""
    return tmp_path / "sqlite" / "chatcache.db"


@pytest_asyncio.fixture
async def tmp_backups_dir(tmp_path: Path) -> Path:
    """提供临时备份目录"""
    backups_dir = tmp_path / "backups"
    backups_dir.mkdir(parents=True, exist_ok=True)
    return backups_dir


@pytest.fixture
def make_message() -> Callable[..., CachedMessage]:
    """消息工厂：make_message("m1", minutes=3, content="hi")"""

    def _make(
        message_id: str,
        channel_id: str = "ch-general",
        content: str = "hello world",
        sender_name: str = "Alice",
        minutes: int = 0,
        **overrides,
    ) -> CachedMessage:
        fields = {
            "id": message_id,
            "channel_id": channel_id,
            "sender_id": f"user-{sender_name.lower()}",
            "sender_name": sender_name,
            "content": content,
            "sent_at": BASE_TIME + timedelta(minutes=minutes),
            "cached_at": BASE_TIME,
        }
        fields.update(overrides)
        return CachedMessage(**fields)

    return _make


@pytest.fixture
def make_meta() -> Callable[..., ChannelSyncMeta]:
    """同步游标工厂"""

    def _make(channel_id: str, message_count: int = 0, has_more: bool = True) -> ChannelSyncMeta:
        return ChannelSyncMeta(
            channel_id=channel_id,
            last_synced_at=BASE_TIME,
            has_more=has_more,
            message_count=message_count,
        )

    return _make
