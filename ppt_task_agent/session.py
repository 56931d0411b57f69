"""请求级会话上下文。

身份通过显式的 ``SessionContext`` 传给控制器，不使用模块级的"当前用户"。
认证机制本身不在本服务范围内，上游网关写入 ``X-User-Id`` 请求头。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from .config import settings
from .errors import AppError, ErrorCode
from .logging_config import bind_user_id


@dataclass(frozen=True)
class SessionContext:
    """当前请求的调用方身份。"""

    user_id: int
    display_name: Optional[str] = None


async def resolve_session(
    x_user_id: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
) -> SessionContext:
    """FastAPI 依赖：从请求头构造会话上下文，缺省时落到默认用户。

    异步依赖与端点运行在同一上下文，绑定的 user_id 会出现在本次请求的全部日志中。
    """
    if x_user_id is None or x_user_id == "":
        bind_user_id(settings.default_user_id)
        return SessionContext(user_id=settings.default_user_id, display_name=x_user_name)
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise AppError(ErrorCode.AUTH_INVALID_USER, f"X-User-Id 不合法: {x_user_id!r}")
    if user_id <= 0:
        raise AppError(ErrorCode.AUTH_INVALID_USER, f"X-User-Id 不合法: {x_user_id!r}")
    bind_user_id(user_id)
    return SessionContext(user_id=user_id, display_name=x_user_name)
