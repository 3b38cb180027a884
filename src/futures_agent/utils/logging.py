"""结构化日志配置模块。

使用 structlog 输出结构化日志，支持 JSON 和控制台两种格式。
日志写到 stderr，stdout 留给 CLI 的结果输出。
"""

import logging
import sys
from typing import Any, TextIO

import structlog
from structlog.types import Processor

from futures_agent.config import LogFormat, Settings, get_settings

# 这些第三方库在 INFO 级别会逐条打印请求
_NOISY_LOGGERS = ("httpx", "httpcore")


def setup_logging(settings: Settings | None = None, stream: TextIO | None = None) -> None:
    """配置结构化日志系统。

    Args:
        settings: 配置快照，为 None 时读取全局配置。
        stream: 输出流，默认 stderr。
    """
    settings = settings or get_settings()
    stream = stream or sys.stderr

    log_level = getattr(logging, settings.log_level)
    logging.basicConfig(format="%(message)s", stream=stream, level=log_level, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_format == LogFormat.JSON:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        # 仅在终端上着色
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=stream.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """获取结构化日志记录器。"""
    return structlog.get_logger(name)


def bind_cycle_context(*, exchange: str, iteration: int) -> None:
    """把当前循环编号绑定到之后的所有日志上。"""
    structlog.contextvars.bind_contextvars(exchange=exchange, iteration=iteration)


def clear_cycle_context() -> None:
    structlog.contextvars.clear_contextvars()


# 便捷日志函数
def log_trade_signal(
    logger: structlog.stdlib.BoundLogger,
    *,
    symbol: str,
    direction: str,
    strategy: str,
    **kwargs: Any,
) -> None:
    """记录交易信号。"""
    logger.info(
        "trade_signal",
        symbol=symbol,
        direction=direction,
        strategy=strategy,
        **kwargs,
    )


def log_order_execution(
    logger: structlog.stdlib.BoundLogger,
    *,
    exchange: str,
    symbol: str,
    side: str,
    quantity: float,
    price: float | None = None,
    order_id: str | None = None,
    status: str = "submitted",
    **kwargs: Any,
) -> None:
    """记录订单执行。"""
    level = "warning" if status in ("REJECTED", "ERROR") else "info"
    getattr(logger, level)(
        "order_execution",
        exchange=exchange,
        symbol=symbol,
        side=side,
        quantity=quantity,
        price=price,
        order_id=order_id,
        status=status,
        **kwargs,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """记录风控事件。"""
    logger.warning(
        "risk_event",
        event_type=event_type,
        action=action,
        **kwargs,
    )


def log_shutdown_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    step: str,
    success: bool = True,
    **kwargs: Any,
) -> None:
    """记录关机协议步骤。"""
    level = "info" if success else "error"
    getattr(logger, level)(
        "shutdown_step",
        step=step,
        success=success,
        **kwargs,
    )
