"""packages/chatcache 测试配置 -- Store 层 fixture"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest_asyncio
from parley.chatcache.store import StoreGroup, create_store_group


@pytest_asyncio.fixture
async def store_group(tmp_db_path: Path) -> AsyncGenerator[StoreGroup, None]:
    """已初始化的 StoreGroup（临时文件数据库）"""
    group = await create_store_group(str(tmp_db_path))
    yield group
    await group.close()


@pytest_asyncio.fixture
async def message_store(store_group: StoreGroup):
    return store_group.message_store


@pytest_asyncio.fixture
async def search_index(store_group: StoreGroup):
    return store_group.search_index
