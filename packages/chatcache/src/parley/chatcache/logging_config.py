"""structlog 配置模块

dev 模式：pretty print 可读输出
json 模式：结构化 JSON 输出
处理器链会遮蔽密码与消息正文字段；每条日志都带 component 标签。
只在 "parley" logger 上挂载处理器，宿主应用已有的 root handler 保持不变。
"""

import logging
import os
from typing import IO, Any

import structlog

LOGGER_NAMESPACE = "parley"

# 不允许出现在日志中的字段
REDACTED_KEYS = frozenset({"password", "content", "plaintext", "key"})

DEFAULT_COMPONENT = "chatcache"


def redact_sensitive(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """把敏感字段的值替换为 [redacted]"""
    for key in REDACTED_KEYS & event_dict.keys():
        event_dict[key] = "[redacted]"
    return event_dict


def add_default_component(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """未绑定 component 的日志归到 chatcache"""
    event_dict.setdefault("component", DEFAULT_COMPONENT)
    return event_dict


def setup_logging(
    log_format: str | None = None,
    log_level: str | None = None,
    stream: IO[str] | None = None,
) -> logging.Handler:
    """初始化 structlog 配置

    根据 PARLEY_LOG_FORMAT 环境变量选择渲染模式：
    - "json": 结构化 JSON 输出
    - "dev" (默认): pretty print 可读输出
    PARLEY_LOG_LEVEL 控制日志级别（默认 INFO）。
    参数优先于环境变量。重复调用会替换上一次安装的 handler。

    Returns:
        安装到 "parley" logger 上的 handler
    """
    log_format = log_format or os.environ.get("PARLEY_LOG_FORMAT", "dev")
    log_level = log_level or os.environ.get("PARLEY_LOG_LEVEL", "INFO")

    # 基础处理器链
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_default_component,
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # 配置标准库 logging
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)
    handler.set_name(f"{LOGGER_NAMESPACE}-structlog")

    package_logger = logging.getLogger(LOGGER_NAMESPACE)
    for existing in list(package_logger.handlers):
        if existing.get_name() == handler.get_name():
            package_logger.removeHandler(existing)
    package_logger.addHandler(handler)
    package_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    # 已由本 handler 输出，不再冒泡到 root
    package_logger.propagate = False
    return handler
