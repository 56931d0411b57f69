"""
结构化日志配置。

structlog 输出 JSON（非 TTY）或彩色 Console。请求 ID、调用方 user_id、
本地 task_id 与引擎侧 engine_task_id 通过 structlog.contextvars 绑定，
同一请求或同一轮询循环内的日志自动带上这些字段。
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.contextvars import bind_contextvars, merge_contextvars

from .config import settings

# 引擎输出可能很长（整段 Markdown），日志里只保留开头
_MAX_FIELD_CHARS = 500
_SECRET_KEYS = frozenset({"api_key", "engine_api_key", "authorization", "x-api-key"})


def bind_request_id(request_id: str) -> None:
    bind_contextvars(request_id=request_id)


def bind_user_id(user_id: int) -> None:
    bind_contextvars(user_id=user_id)


def bind_task_id(task_id: int, engine_task_id: Optional[str] = None) -> None:
    """绑定当前处理的任务；已知引擎任务 ID 时一并绑定，便于与引擎侧日志对照。"""
    if engine_task_id:
        bind_contextvars(task_id=task_id, engine_task_id=engine_task_id)
    else:
        bind_contextvars(task_id=task_id)


def _redact_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in list(event_dict):
        if key.lower() in _SECRET_KEYS and event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def _truncate_long_fields(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key, value in event_dict.items():
        if key != "exception" and isinstance(value, str) and len(value) > _MAX_FIELD_CHARS:
            event_dict[key] = f"{value[:_MAX_FIELD_CHARS]}...(+{len(value) - _MAX_FIELD_CHARS})"
    return event_dict


def _use_json_output() -> bool:
    if settings.log_format == "auto":
        return not sys.stderr.isatty()
    return settings.log_format == "json"


_configured = False


def setup_logging() -> None:
    """配置 structlog 并接管标准 logging（uvicorn / httpx 日志同样输出为结构化格式）。"""
    global _configured
    if _configured:
        return
    _configured = True

    renderer: Any = (
        structlog.processors.JSONRenderer(ensure_ascii=False)
        if _use_json_output()
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_secrets,
            _truncate_long_fields,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    # 每 2 秒一次的轮询请求会刷屏
    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    if not _configured:
        setup_logging()
    return structlog.get_logger(name)  # type: ignore[return-value]
