"""
HTTP 中间件。

RequestContextMiddleware 为每个请求重置日志上下文并回写 X-Request-ID，写操作记录耗时。
APIKeyMiddleware 在配置了 API_SECRET_KEY 时校验 X-API-Key。
BodySizeLimitMiddleware 按路由区分请求体上限：文件接口以 base64 上传，上限单独放宽。
"""

from __future__ import annotations

import hmac
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from structlog.contextvars import clear_contextvars

from .config import settings
from .errors import AppError, ErrorCode
from .logging_config import bind_request_id, get_logger

logger = get_logger(__name__)

_PUBLIC_EXACT = frozenset({"/", "/api/health", "/openapi.json"})
# 结果文件链接会直接发给下载方，不带 API Key
_PUBLIC_PREFIXES = ("/docs", "/redoc", "/files/")
_WRITE_METHODS = frozenset({"POST", "PATCH", "PUT", "DELETE"})

DEFAULT_BODY_LIMIT = 2 * 1024 * 1024


def _reject(code: ErrorCode, message: str) -> JSONResponse:
    error = AppError(code, message)
    return JSONResponse(status_code=error.status_code, content={"error": error.to_dict(), "detail": message})


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        # 每个请求从空的日志上下文开始
        clear_contextvars()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        bind_request_id(request_id)

        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        if request.method in _WRITE_METHODS and request.url.path.startswith("/api/"):
            logger.info(
                "request_finished",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )
        return response


class APIKeyMiddleware(BaseHTTPMiddleware):
    """``API_SECRET_KEY`` 为空时不做校验（本地开发）。"""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        secret = settings.api_secret_key
        path = request.url.path
        if not secret or path in _PUBLIC_EXACT or path.startswith(_PUBLIC_PREFIXES):
            return await call_next(request)

        api_key = request.headers.get("X-API-Key")
        if not api_key:
            return _reject(ErrorCode.AUTH_MISSING_KEY, "缺少 X-API-Key 请求头")
        if not hmac.compare_digest(api_key.encode(), secret.encode()):
            logger.warning("auth_rejected", path=path)
            return _reject(ErrorCode.AUTH_INVALID_KEY, "API Key 无效")
        return await call_next(request)


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        *,
        upload_max_bytes: int,
        default_max_bytes: int = DEFAULT_BODY_LIMIT,
        upload_paths: tuple[str, ...] = ("/api/files",),
    ):
        super().__init__(app)
        self.upload_max_bytes = upload_max_bytes
        self.default_max_bytes = default_max_bytes
        self.upload_paths = upload_paths

    def limit_for(self, path: str) -> int:
        return self.upload_max_bytes if path in self.upload_paths else self.default_max_bytes

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        declared = request.headers.get("content-length", "")
        if declared.isdigit():
            limit = self.limit_for(request.url.path)
            if int(declared) > limit:
                logger.warning("request_body_rejected", path=request.url.path, size=int(declared), limit=limit)
                return _reject(
                    ErrorCode.VALIDATION_BODY_TOO_LARGE,
                    f"请求体超过 {limit / (1024 * 1024):.0f} MB 上限",
                )
        return await call_next(request)
