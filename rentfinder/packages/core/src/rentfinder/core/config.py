"""配置常量模块 -- 可通过环境变量覆盖

包含数据库路径、调度周期、批量大小、渠道调用超时、卡单回收阈值等可配置项。
非法数值不阻塞启动，记录 warning 后回退默认值。
"""

import os
from pathlib import Path

import structlog

log = structlog.get_logger()


def _get_base_dir() -> Path:
    """获取项目 data 基础目录"""
    return Path(os.environ.get("RENTFINDER_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "RENTFINDER_DB_PATH",
        str(_get_base_dir() / "sqlite" / "rentfinder.db"),
    )


def _int_env(name: str, default: int) -> int:
    """读取整数环境变量，非法值回退默认值"""
    val = os.environ.get(name)
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        log.warning("invalid_int_config", env_var=name, value=val, fallback=default)
        return default


def _float_env(name: str, default: float) -> float:
    """读取浮点环境变量，非法值回退默认值"""
    val = os.environ.get(name)
    if not val:
        return default
    try:
        return float(val)
    except ValueError:
        log.warning("invalid_float_config", env_var=name, value=val, fallback=default)
        return default


def get_dispatch_interval_s() -> int:
    """调度周期（秒），默认 5 分钟"""
    return _int_env("RENTFINDER_DISPATCH_INTERVAL_S", 300)


def get_dispatch_batch_size() -> int:
    """单个调度周期最多认领的任务数"""
    return _int_env("RENTFINDER_DISPATCH_BATCH_SIZE", 20)


def get_dispatch_concurrency() -> int:
    """单个调度周期内并发处理的任务数上限"""
    return _int_env("RENTFINDER_DISPATCH_CONCURRENCY", 5)


def get_claim_timeout_s() -> int:
    """claimed 状态超过该时长视为调度进程崩溃遗留，由 sweep 退回 pending"""
    return _int_env("RENTFINDER_CLAIM_TIMEOUT_S", 600)


def get_channel_timeout_s(action_type: str) -> float:
    """获取单次渠道调用超时（秒）

    短信/邮件为秒级，语音外呼下单为数十秒级。
    """
    defaults = {"sms": 10.0, "email": 10.0, "call": 30.0}
    env_name = f"RENTFINDER_{action_type.upper()}_TIMEOUT_S"
    return _float_env(env_name, defaults.get(action_type, 10.0))


def get_scheduler_enabled() -> bool:
    """是否在 gateway 进程内启动周期调度循环（默认关闭，由 cron 触发）"""
    return os.environ.get("RENTFINDER_SCHEDULER_ENABLED", "false").lower() == "true"


def get_log_format() -> str:
    """日志渲染模式：json（生产）或 dev（默认）"""
    return os.environ.get("RENTFINDER_LOG_FORMAT", "dev").lower()


def get_log_level() -> str:
    """日志级别，默认 INFO"""
    return os.environ.get("RENTFINDER_LOG_LEVEL", "INFO").upper()


def get_logfire_enabled() -> bool:
    """是否启用 Logfire APM（需要 LOGFIRE_TOKEN，安装 apm extra）"""
    return os.environ.get("LOGFIRE_SEND_TO_LOGFIRE", "false").lower() == "true"


# activity payload 中原始 webhook 内容的截断长度
WEBHOOK_PREVIEW_LENGTH: int = _int_env("RENTFINDER_WEBHOOK_PREVIEW_LENGTH", 500)
