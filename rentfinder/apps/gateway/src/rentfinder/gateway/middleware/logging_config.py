"""gateway 与 CLI 共用的日志初始化

所有日志（structlog 与标准库 logging）经同一条处理器链输出到 stderr，
事件名为 snake_case，时间戳统一 UTC。
"""

import logging

import structlog
from rentfinder.core.config import get_log_format, get_log_level, get_logfire_enabled

# 逐请求打 INFO 的第三方库，渠道调用失败另有 channel_* 结构化日志
_QUIET_LOGGERS = ("httpx", "httpcore")


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer(ensure_ascii=False)
    return structlog.dev.ConsoleRenderer()


def setup_logging(log_format: str | None = None, log_level: str | None = None) -> None:
    """配置 structlog 并接管标准库 root logger

    Args:
        log_format: "json" 或 "dev"，默认读 RENTFINDER_LOG_FORMAT
        log_level: 日志级别名，默认读 RENTFINDER_LOG_LEVEL
    """
    log_format = log_format or get_log_format()
    level = getattr(logging, (log_level or get_log_level()).upper(), logging.INFO)

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_renderer(log_format),
            foreign_pre_chain=pre_chain,
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def setup_logfire(app=None) -> None:
    """按 LOGFIRE_SEND_TO_LOGFIRE 可选接入 Logfire，同时采集 FastAPI 与渠道 httpx 调用

    初始化失败时只记 warning，继续使用本地日志。
    """
    if not get_logfire_enabled():
        return
    try:
        import logfire

        logfire.configure()
        if app is not None:
            logfire.instrument_fastapi(app)
        logfire.instrument_httpx()
    except Exception as e:
        structlog.get_logger().warning(
            "logfire_init_failed",
            error_type=type(e).__name__,
            error=str(e),
        )
