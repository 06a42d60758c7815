"""集成测试共享 fixture"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from parley.chatcache.backup import BackupFileManager, BackupService
from parley.chatcache.integrity import IntegrityEngine
from parley.chatcache.store import StoreGroup, create_store_group


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch):
    """CLI 使用的环境变量（数据库与备份目录指向临时目录）

    CLI 每次运行都会重新配置 root logger，测试中跳过该步骤。
    """
    monkeypatch.setenv("PARLEY_DB_PATH", str(tmp_path / "cli" / "chatcache.db"))
    monkeypatch.setenv("PARLEY_BACKUPS_DIR", str(tmp_path / "cli" / "backups"))
    monkeypatch.delenv("PARLEY_BACKUP_PASSWORD", raising=False)
    monkeypatch.setattr("parley.chatcache.logging_config.setup_logging", lambda: None)
    return tmp_path / "cli"


@pytest_asyncio.fixture
async def integration_group(tmp_db_path: Path) -> AsyncGenerator[StoreGroup, None]:
    """集成测试用 StoreGroup"""
    group = await create_store_group(str(tmp_db_path))
    yield group
    await group.close()


@pytest_asyncio.fixture
async def backup_service(integration_group: StoreGroup, tmp_backups_dir: Path) -> BackupService:
    return BackupService(integration_group.message_store, BackupFileManager(tmp_backups_dir))


@pytest_asyncio.fixture
async def integrity_engine(integration_group: StoreGroup) -> IntegrityEngine:
    return IntegrityEngine(integration_group)
