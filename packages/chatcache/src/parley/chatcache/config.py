"""配置常量模块 -- 可通过环境变量覆盖

包含数据库路径、备份目录、索引漂移容差、清理阈值等可配置常量。
"""

import os
from pathlib import Path


def _get_base_dir() -> Path:
    """获取本地数据基础目录"""
    return Path(os.environ.get("PARLEY_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "PARLEY_DB_PATH",
        str(_get_base_dir() / "sqlite" / "chatcache.db"),
    )


def get_backups_dir() -> Path:
    """获取备份文件存储目录"""
    return Path(
        os.environ.get(
            "PARLEY_BACKUPS_DIR",
            str(_get_base_dir() / "backups"),
        )
    )


# 当前本地库 schema 版本（v2 引入 FTS5 全文索引）
SCHEMA_VERSION: int = 2

# 备份信封格式版本
BACKUP_FORMAT_VERSION: int = 1

# PBKDF2-HMAC-SHA256 迭代次数
PBKDF2_ITERATIONS: int = 100_000

# 消息数与索引行数允许的最大差值（超过即判定索引漂移）
SEARCH_INDEX_DRIFT_TOLERANCE: int = int(
    os.environ.get("PARLEY_SEARCH_DRIFT_TOLERANCE", "5")
)

# 默认保留最近多少天的消息
DEFAULT_PRUNE_KEEP_DAYS: int = int(
    os.environ.get("PARLEY_PRUNE_KEEP_DAYS", "90")
)

# 软删除消息在修复流程中被物理清除前的保留天数
SOFT_DELETE_PURGE_DAYS: int = int(
    os.environ.get("PARLEY_SOFT_DELETE_PURGE_DAYS", "30")
)

# 本地备份文件保留个数
BACKUP_RETENTION_COUNT: int = int(
    os.environ.get("PARLEY_BACKUP_RETENTION_COUNT", "5")
)
