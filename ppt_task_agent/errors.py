"""
标准化错误码与统一异常处理。

定义全局错误码枚举、应用异常类、引擎异常、FastAPI 异常处理器注册。
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


# ---------------------------------------------------------------------------
# 错误码枚举
# ---------------------------------------------------------------------------

class ErrorCode(str, Enum):
    """应用级标准错误码。

    命名规则: 全大写 + 下划线，前缀表示模块。
    """

    # ── 认证 & 授权 ──
    AUTH_MISSING_KEY = "AUTH_MISSING_KEY"
    AUTH_INVALID_KEY = "AUTH_INVALID_KEY"
    AUTH_INVALID_USER = "AUTH_INVALID_USER"

    # ── 速率限制 ──
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # ── 任务管理 ──
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    TASK_INVALID_STATE = "TASK_INVALID_STATE"
    TASK_NOT_STARTED = "TASK_NOT_STARTED"

    # ── 项目 ──
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"

    # ── PPT 引擎 ──
    ENGINE_UNAVAILABLE = "ENGINE_UNAVAILABLE"
    ENGINE_ERROR = "ENGINE_ERROR"
    ENGINE_API_KEY_INVALID = "ENGINE_API_KEY_INVALID"

    # ── 文件 ──
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    FILE_INVALID = "FILE_INVALID"
    FILE_UNSUPPORTED_TYPE = "FILE_UNSUPPORTED_TYPE"

    # ── 输入校验 ──
    VALIDATION_TITLE_REQUIRED = "VALIDATION_TITLE_REQUIRED"
    VALIDATION_EMPTY_RESPONSE = "VALIDATION_EMPTY_RESPONSE"
    VALIDATION_FIELD_TOO_LONG = "VALIDATION_FIELD_TOO_LONG"
    VALIDATION_INVALID_IMAGE = "VALIDATION_INVALID_IMAGE"
    VALIDATION_BODY_TOO_LARGE = "VALIDATION_BODY_TOO_LARGE"

    # ── 系统 ──
    SYSTEM_INTERNAL_ERROR = "SYSTEM_INTERNAL_ERROR"


# ---------------------------------------------------------------------------
# 错误码元信息（默认 HTTP 状态码 & retriable 标记）
# ---------------------------------------------------------------------------

_ERROR_META: dict[ErrorCode, dict[str, Any]] = {
    # 认证
    ErrorCode.AUTH_MISSING_KEY:              {"status": 401, "retriable": False},
    ErrorCode.AUTH_INVALID_KEY:              {"status": 401, "retriable": False},
    ErrorCode.AUTH_INVALID_USER:             {"status": 401, "retriable": False},
    # 速率
    ErrorCode.RATE_LIMIT_EXCEEDED:           {"status": 429, "retriable": True},
    # 任务
    ErrorCode.TASK_NOT_FOUND:                {"status": 404, "retriable": False},
    ErrorCode.TASK_INVALID_STATE:            {"status": 409, "retriable": False},
    ErrorCode.TASK_NOT_STARTED:              {"status": 409, "retriable": True},
    # 项目
    ErrorCode.PROJECT_NOT_FOUND:             {"status": 404, "retriable": False},
    # 引擎
    ErrorCode.ENGINE_UNAVAILABLE:            {"status": 502, "retriable": True},
    ErrorCode.ENGINE_ERROR:                  {"status": 502, "retriable": False},
    ErrorCode.ENGINE_API_KEY_INVALID:        {"status": 502, "retriable": False},
    # 文件
    ErrorCode.FILE_TOO_LARGE:                {"status": 413, "retriable": False},
    ErrorCode.FILE_INVALID:                  {"status": 422, "retriable": False},
    ErrorCode.FILE_UNSUPPORTED_TYPE:         {"status": 415, "retriable": False},
    # 校验
    ErrorCode.VALIDATION_TITLE_REQUIRED:     {"status": 422, "retriable": False},
    ErrorCode.VALIDATION_EMPTY_RESPONSE:     {"status": 422, "retriable": False},
    ErrorCode.VALIDATION_FIELD_TOO_LONG:     {"status": 422, "retriable": False},
    ErrorCode.VALIDATION_INVALID_IMAGE:      {"status": 422, "retriable": False},
    ErrorCode.VALIDATION_BODY_TOO_LARGE:     {"status": 413, "retriable": False},
    # 系统
    ErrorCode.SYSTEM_INTERNAL_ERROR:         {"status": 500, "retriable": True},
}


# ---------------------------------------------------------------------------
# 应用异常类
# ---------------------------------------------------------------------------

class AppError(Exception):
    """统一应用异常。

    使用方式::

        raise AppError(
            ErrorCode.TASK_INVALID_STATE,
            "任务当前状态不允许重试: running",
        )
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        status_code: Optional[int] = None,
        retriable: Optional[bool] = None,
        retry_after_seconds: Optional[int] = None,
        extra: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        meta = _ERROR_META.get(code, {"status": 500, "retriable": False})
        self.code = code
        self.message = message
        self.status_code = status_code or meta["status"]
        self.retriable = retriable if retriable is not None else meta["retriable"]
        self.retry_after_seconds = retry_after_seconds
        self.extra = extra or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "retriable": self.retriable,
        }
        if self.retry_after_seconds is not None:
            body["retry_after_seconds"] = self.retry_after_seconds
        if self.extra:
            body.update(self.extra)
        return body


# ---------------------------------------------------------------------------
# 引擎异常
# ---------------------------------------------------------------------------

class EngineError(Exception):
    """引擎拒绝了请求（4xx 或业务错误）。"""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        retriable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.retriable = retriable

    def to_app_error(self) -> AppError:
        error_code = (
            ErrorCode.ENGINE_API_KEY_INVALID
            if self.status_code in (401, 403)
            else ErrorCode.ENGINE_ERROR
        )
        return AppError(
            error_code,
            f"生成服务调用失败: {self.message}",
            extra={"engine_code": self.code},
        )


class EngineUnavailable(EngineError):
    """网络错误、超时或引擎 5xx，属于瞬时错误。"""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(
            "engine_unavailable",
            message,
            status_code=status_code,
            retriable=True,
        )

    def to_app_error(self) -> AppError:
        return AppError(
            ErrorCode.ENGINE_UNAVAILABLE,
            f"生成服务暂时不可用: {self.message}",
            retry_after_seconds=10,
        )


# ---------------------------------------------------------------------------
# FastAPI 异常处理器
# ---------------------------------------------------------------------------

async def _app_error_handler(_request: Request, exc: AppError) -> JSONResponse:
    headers = {}
    if exc.retry_after_seconds is not None:
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_dict(), "detail": exc.message},
        headers=headers or None,
    )


async def _engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    return await _app_error_handler(request, exc.to_app_error())


async def _generic_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """兜底异常处理器，将未捕获异常转为标准格式。"""
    detail = f"内部服务器错误: {type(exc).__name__}"
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.SYSTEM_INTERNAL_ERROR.value,
                "message": detail,
                "retriable": True,
            },
            "detail": detail,
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    """向 FastAPI 应用注册统一异常处理器。"""
    app.add_exception_handler(AppError, _app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(EngineError, _engine_error_handler)  # type: ignore[arg-type]
    # 注意: 仅在非 debug 模式下注册兜底处理器，debug 时保留默认堆栈
    from .config import settings
    if not settings.debug:
        app.add_exception_handler(Exception, _generic_error_handler)  # type: ignore[arg-type]
