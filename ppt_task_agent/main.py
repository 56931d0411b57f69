"""
FastAPI 应用入口

提供 PPT 生成任务的创建、查询、轮询、继续、重试，项目管理与文件上传等 API 端点。
"""

import asyncio
import base64
import binascii
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .config import settings
from .engine.client import get_engine_client
from .errors import AppError, EngineError, ErrorCode, register_error_handlers
from .logging_config import get_logger, setup_logging
from .middleware import APIKeyMiddleware, BodySizeLimitMiddleware, RequestContextMiddleware
from .session import SessionContext, resolve_session
from .storage.file_store import (
    ALLOWED_UPLOAD_TYPES,
    FileValidationError,
    get_file_storage,
    validate_file_buffer,
)
from .storage.task_store import get_task_store
from .tasks.lifecycle import TaskCreateInput, get_controller
from .tasks.projects import get_project_service
from .tasks.scheduler import get_scheduler
from .tasks.views import build_task_view

logger = get_logger(__name__)

# ── 速率限制器 ──
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri="memory://",
)

# base64 膨胀约 4/3，再留 1MB 给 JSON 其余字段
_MAX_UPLOAD_BODY_BYTES = settings.max_upload_bytes * 4 // 3 + 1024 * 1024


# ============== Pydantic 模型 ==============


class ImageAttachmentRequest(BaseModel):
    """配图"""

    file_id: str = Field(..., description="上传接口返回的文件 ID")
    usage_mode: str = Field("ai_decide", description="must_use | suggest_use | ai_decide")
    category: str = Field("other", description="配图类别")
    description: Optional[str] = Field(None, description="配图说明")
    file_name: Optional[str] = None
    file_url: Optional[str] = None


class CreateTaskRequest(BaseModel):
    """创建 PPT 任务请求"""

    title: str = Field("", description="任务标题（必填）")
    project_id: Optional[int] = Field(None, description="关联项目 ID")
    engine_project_id: Optional[str] = Field(None, description="引擎侧项目 ID")
    design_spec: Optional[Dict[str, Any]] = Field(None, description="设计规范")
    source_file_id: Optional[str] = Field(None, description="源文档文件 ID")
    source_text: Optional[str] = Field(None, description="源文档文本")
    proposal_content: Optional[str] = Field(None, description="Proposal 正文")
    images: List[ImageAttachmentRequest] = Field(default_factory=list, description="配图列表")


class ContinueTaskRequest(BaseModel):
    """ask 状态下的用户回复"""

    text: str = Field("", description="回复内容")


class UploadFileRequest(BaseModel):
    """base64 文件上传请求"""

    file_name: str = Field(..., min_length=1, max_length=255)
    content_type: str = Field(..., description="MIME 类型")
    data_base64: str = Field(..., description="base64 编码的文件内容")
    upload_to_engine: bool = Field(False, description="是否同时上传到生成服务")


class UploadFileResponse(BaseModel):
    """文件上传响应"""

    id: str
    file_name: str
    content_type: str
    size: int
    url: str
    engine_file_id: Optional[str] = None


class TaskListResponse(BaseModel):
    tasks: List[Dict[str, Any]]


_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


class CreateProjectRequest(BaseModel):
    """创建项目（设计规范）请求"""

    name: str = Field(..., min_length=1, max_length=100)
    primary_color: str = Field("#0c87eb", pattern=_COLOR_PATTERN, description="主色调 #RRGGBB")
    secondary_color: str = Field("#737373", pattern=_COLOR_PATTERN)
    accent_color: str = Field("#10b981", pattern=_COLOR_PATTERN)
    font_family: str = Field("微软雅黑", min_length=1, max_length=100)
    design_notes: Optional[str] = Field(None, max_length=5000, description="额外设计要求")
    logo_url: Optional[str] = Field(None, max_length=1000)


class UpdateProjectRequest(BaseModel):
    """更新项目请求（只写入提供的字段）"""

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    primary_color: Optional[str] = Field(None, pattern=_COLOR_PATTERN)
    secondary_color: Optional[str] = Field(None, pattern=_COLOR_PATTERN)
    accent_color: Optional[str] = Field(None, pattern=_COLOR_PATTERN)
    font_family: Optional[str] = Field(None, min_length=1, max_length=100)
    design_notes: Optional[str] = Field(None, max_length=5000)
    logo_url: Optional[str] = Field(None, max_length=1000)


class ProjectListResponse(BaseModel):
    projects: List[Dict[str, Any]]


# ── Lifespan ──
@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    # 启动阶段
    setup_logging()
    warnings = settings.validate_startup()
    for w in warnings:
        logger.warning("config_warning", detail=w)
    logger.info(
        "app_starting",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )
    stale = get_task_store().fail_stale_tasks(settings.stale_task_hours)
    if stale:
        logger.warning("stale_tasks_cleaned", count=stale)
    scheduler = get_scheduler()
    scheduler.start()
    yield
    # 关闭阶段
    logger.info("app_shutting_down")
    await scheduler.shutdown()
    logger.info("app_stopped")


app = FastAPI(
    title="PPT Task Agent API",
    description="PPT 生成任务看板后端",
    version="0.1.0",
    lifespan=lifespan,
)

# 注册错误处理器
register_error_handlers(app)


# 速率限制异常处理器
@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    error = AppError(
        ErrorCode.RATE_LIMIT_EXCEEDED,
        "请求频率超限，请稍后重试",
        retry_after_seconds=60,
    )
    return JSONResponse(
        status_code=error.status_code,
        content={"error": error.to_dict(), "detail": error.message},
        headers={"Retry-After": str(error.retry_after_seconds)} if error.retry_after_seconds else None,
    )

app.state.limiter = limiter

# 中间件注册（注意顺序：后加的先执行）
app.add_middleware(BodySizeLimitMiddleware, upload_max_bytes=_MAX_UPLOAD_BODY_BYTES)
app.add_middleware(APIKeyMiddleware)
app.add_middleware(RequestContextMiddleware)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.frontend_url,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 本地存储的上传文件与结果文件
if settings.file_public_base_url.startswith("/"):
    app.mount(
        settings.file_public_base_url.rstrip("/") or "/files",
        StaticFiles(directory=str(settings.file_storage_path), check_dir=False),
        name="files",
    )


# ============== 辅助函数 ==============


def _decode_upload(request_body: UploadFileRequest) -> bytes:
    content_type = request_body.content_type.split(";")[0].strip().lower()
    if content_type not in ALLOWED_UPLOAD_TYPES:
        raise AppError(ErrorCode.FILE_UNSUPPORTED_TYPE, f"不支持的文件类型: {request_body.content_type}")

    raw = request_body.data_base64
    # 兼容 data URL 前缀
    if raw.startswith("data:") and "," in raw:
        raw = raw.split(",", 1)[1]
    try:
        data = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise AppError(ErrorCode.FILE_INVALID, "文件内容不是合法的 base64")
    if not data:
        raise AppError(ErrorCode.FILE_INVALID, "文件内容为空")

    if len(data) > settings.max_upload_bytes:
        raise AppError(
            ErrorCode.FILE_TOO_LARGE,
            f"文件太大（{len(data) / 1024 / 1024:.1f}MB），最大支持{settings.max_upload_size_mb}MB",
        )
    try:
        validate_file_buffer(data, request_body.file_name)
    except FileValidationError as e:
        raise AppError(ErrorCode.FILE_INVALID, str(e))
    return data


def _sse(event: str, payload: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


# ============== API 端点 ==============


@app.get("/")
async def root():
    """根路径"""
    return {
        "name": "PPT Task Agent API",
        "version": "0.1.0",
        "status": "running",
        "docs_url": "/docs",
    }


@app.get("/api/health")
async def health_check():
    """健康检查"""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
    }


# -------------- 文件上传 --------------


@app.post("/api/files", response_model=UploadFileResponse)
async def upload_file(
    request_body: UploadFileRequest,
    session: SessionContext = Depends(resolve_session),
):
    """上传文件（base64），可选同时上传到生成服务。"""
    data = _decode_upload(request_body)
    content_type = request_body.content_type.split(";")[0].strip().lower()

    stored = await asyncio.to_thread(
        get_file_storage().store_upload,
        session.user_id,
        request_body.file_name,
        data,
        content_type,
    )

    engine_file_id: Optional[str] = None
    if request_body.upload_to_engine:
        try:
            engine_file_id = await get_engine_client().upload_file(
                request_body.file_name, data, content_type
            )
        except EngineError as e:
            logger.warning("engine_upload_failed", code=e.code, error=e.message)
            raise e.to_app_error() from e

    file_id = uuid.uuid4().hex
    get_task_store().save_uploaded_file(
        file_id,
        session.user_id,
        request_body.file_name,
        content_type,
        len(data),
        stored.key,
        stored.url,
        engine_file_id=engine_file_id,
    )
    logger.info("file_uploaded", file_id=file_id, size=len(data), engine=bool(engine_file_id))
    return UploadFileResponse(
        id=file_id,
        file_name=request_body.file_name,
        content_type=content_type,
        size=len(data),
        url=stored.url,
        engine_file_id=engine_file_id,
    )


# -------------- 项目 --------------


@app.get("/api/projects", response_model=ProjectListResponse)
async def list_projects(session: SessionContext = Depends(resolve_session)):
    """列出当前用户的项目"""
    projects = get_project_service().list_projects(session)
    return ProjectListResponse(projects=[p.to_dict() for p in projects])


@app.post("/api/projects")
async def create_project(
    request_body: CreateProjectRequest,
    session: SessionContext = Depends(resolve_session),
):
    """创建项目，同时尝试建立引擎侧项目。"""
    fields = request_body.model_dump(exclude={"name"})
    project = await get_project_service().create_project(session, request_body.name, fields)
    return project.to_dict()


@app.get("/api/projects/{project_id}")
async def get_project(project_id: int, session: SessionContext = Depends(resolve_session)):
    return get_project_service().get_project(project_id, session).to_dict()


@app.patch("/api/projects/{project_id}")
async def update_project(
    project_id: int,
    request_body: UpdateProjectRequest,
    session: SessionContext = Depends(resolve_session),
):
    """更新项目。已创建的任务保留创建时的设计规范快照。"""
    fields = request_body.model_dump(exclude_none=True)
    return get_project_service().update_project(project_id, session, fields).to_dict()


@app.delete("/api/projects/{project_id}")
async def delete_project(project_id: int, session: SessionContext = Depends(resolve_session)):
    get_project_service().delete_project(project_id, session)
    return {"success": True}


# -------------- PPT 任务 --------------


@app.post("/api/tasks")
@limiter.limit(settings.rate_limit_create)
async def create_task(
    request_body: CreateTaskRequest,
    request: Request,
    session: SessionContext = Depends(resolve_session),
):
    """创建 PPT 任务并立即提交到生成服务。"""
    controller = get_controller()
    task = await controller.create_task(
        session,
        TaskCreateInput(
            title=request_body.title,
            project_id=request_body.project_id,
            engine_project_id=request_body.engine_project_id,
            design_spec=request_body.design_spec,
            source_file_id=request_body.source_file_id,
            source_text=request_body.source_text,
            proposal_content=request_body.proposal_content,
            images=[img.model_dump() for img in request_body.images],
        ),
    )
    return build_task_view(task, controller.filter_rules)


@app.get("/api/tasks", response_model=TaskListResponse)
async def list_tasks(
    limit: int = 50,
    session: SessionContext = Depends(resolve_session),
):
    """
    列出当前用户的任务

    - **limit**: 返回数量限制（默认 50）
    """
    controller = get_controller()
    tasks = controller.list_tasks(session, limit=min(max(limit, 1), 200))
    return TaskListResponse(tasks=[build_task_view(t, controller.filter_rules) for t in tasks])


@app.get("/api/tasks/{task_id}")
async def get_task(task_id: int, session: SessionContext = Depends(resolve_session)):
    """查询任务详情（含展示块与交互提示）。"""
    controller = get_controller()
    return build_task_view(controller.get_task(task_id, session), controller.filter_rules)


@app.post("/api/tasks/{task_id}/poll")
@limiter.limit(settings.rate_limit_query)
async def poll_task(
    task_id: int,
    request: Request,
    session: SessionContext = Depends(resolve_session),
):
    """立即拉取一次生成服务状态。"""
    controller = get_controller()
    task = await controller.poll_task(task_id, session)
    return build_task_view(task, controller.filter_rules)


@app.post("/api/tasks/{task_id}/continue")
async def continue_task(
    task_id: int,
    request_body: ContinueTaskRequest,
    session: SessionContext = Depends(resolve_session),
):
    """回复 AI 的确认请求，任务回到生成中。"""
    controller = get_controller()
    task = await controller.continue_task(task_id, request_body.text, session)
    get_scheduler().resume(task_id)
    return build_task_view(task, controller.filter_rules)


@app.post("/api/tasks/{task_id}/retry")
@limiter.limit(settings.rate_limit_create)
async def retry_task(
    task_id: int,
    request: Request,
    session: SessionContext = Depends(resolve_session),
):
    """重试失败的任务（输入不变，新建生成任务）。"""
    controller = get_controller()
    task = await controller.retry_task(task_id, session)
    get_scheduler().resume(task_id)
    return build_task_view(task, controller.filter_rules)


@app.post("/api/tasks/{task_id}/refresh-results")
async def refresh_task_results(task_id: int, session: SessionContext = Depends(resolve_session)):
    """补齐已完成任务缺失的 PPTX / PDF 链接。"""
    controller = get_controller()
    task = await controller.refresh_results(task_id, session)
    return build_task_view(task, controller.filter_rules)


@app.get("/api/tasks/{task_id}/events")
async def stream_task_events(
    task_id: int,
    request: Request,
    session: SessionContext = Depends(resolve_session),
):
    """
    任务进度事件流（SSE）

    连接期间驱动该任务的轮询循环。任务处于 ask 时连接保持，continue 之后轮询自动恢复；
    任务结束（completed / failed）时发送 task_idle 并关闭。
    """
    controller = get_controller()
    controller.get_task(task_id, session)
    scheduler = get_scheduler()

    async def event_generator():
        scheduler.watch(task_id)
        last_version = -1
        try:
            while True:
                if await request.is_disconnected():
                    break

                task = controller.get_task(task_id, session)
                if task.version != last_version:
                    last_version = task.version
                    yield _sse("task_update", build_task_view(task, controller.filter_rules))

                if not task.is_active:
                    yield _sse(
                        "task_idle",
                        {"task_id": task_id, "status": task.status.value, "version": task.version},
                    )
                    break

                yield ": heartbeat\n\n"
                await asyncio.sleep(1.0)
        finally:
            scheduler.unwatch(task_id)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ============== 启动入口 ==============


def start_server():
    """启动服务器"""
    import uvicorn

    uvicorn.run(
        "ppt_task_agent.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    start_server()
