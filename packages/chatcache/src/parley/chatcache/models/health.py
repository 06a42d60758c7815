"""健康检查 / 修复 / 紧急恢复结果模型

完整性引擎把所有内部异常转换为这些结构化结果，不向调用方抛出。
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WALStatus(BaseModel):
    """WAL 状态快照（PRAGMA wal_checkpoint(PASSIVE) 的返回值）"""

    journal_mode: str = Field(default="unknown", description="当前 journal 模式")
    busy: int = Field(default=0, description="checkpoint 是否被阻塞（0/1）")
    log_frames: int = Field(default=0, description="WAL 文件中的帧数")
    checkpointed_frames: int = Field(default=0, description="已回写主库的帧数")


class HealthReport(BaseModel):
    """数据库健康检查报告"""

    is_healthy: bool
    issues: list[str] = Field(default_factory=list, description="可读的问题描述")
    wal_status: WALStatus = Field(default_factory=WALStatus)
    checked_at: datetime = Field(default_factory=_utcnow)


class RepairResult(BaseModel):
    """自动修复结果 -- actions 按执行顺序记录"""

    success: bool
    actions: list[str] = Field(default_factory=list)
    repaired_at: datetime = Field(default_factory=_utcnow)


class RecoveryResult(BaseModel):
    """紧急恢复结果"""

    success: bool
    messages_recovered: int = 0
    channels_recovered: int = 0
    recovered_at: datetime = Field(default_factory=_utcnow)
    error: str | None = None


class StoreStats(BaseModel):
    """本地库统计信息"""

    total_messages: int = Field(ge=0)
    cached_channels: int = Field(ge=0)
    indexed_messages: int = Field(ge=0, description="全文索引行数")
    schema_version: int
