from __future__ import annotations

"""
任务生命周期控制器。

状态机: pending -> uploading -> running -> {ask <-> running} -> {completed | failed}，
failed 可通过 retry 回到 pending（新引擎任务，输入不变）。

所有写入都经由 TaskStore.update_task 的状态 / 版本校验：
轮询结果只在任务仍处于 uploading / running 且版本未变时落库，
因此慢返回的轮询不会把 ask / completed 覆盖回 running，continue 总是优先于 poll。
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from ..config import settings
from ..engine.client import get_engine_client
from ..engine.models import DesignSpec, EngineSnapshot, ImageAttachment, PromptPayload
from ..errors import AppError, EngineError, ErrorCode
from ..logging_config import bind_task_id, get_logger
from ..session import SessionContext
from ..storage.file_store import ResultMirror
from ..storage.task_store import TaskStore, get_task_store
from .models import POLLABLE_STATUSES, Task, TaskStatus
from .output_filter import FilterRules
from .progress import ProgressConfig, estimate_progress

logger = get_logger(__name__)

MAX_TITLE_LENGTH = 200
MAX_PROPOSAL_LENGTH = 50000
MAX_IMAGES = 20

_ENGINE_STATUS_MAP: dict[str, TaskStatus] = {
    "pending": TaskStatus.RUNNING,
    "running": TaskStatus.RUNNING,
    "ask": TaskStatus.ASK,
    "completed": TaskStatus.COMPLETED,
    "failed": TaskStatus.FAILED,
    "stopped": TaskStatus.FAILED,
}

_RESULT_SUFFIXES: tuple[tuple[str, str, str], ...] = (
    (".pptx", "pptx", "result_pptx_url"),
    (".pdf", "pdf", "result_pdf_url"),
)


def map_engine_status(engine_status: str, previous: TaskStatus) -> TaskStatus:
    """引擎状态 -> 本地状态；未知状态记录日志并保持原状态。"""
    mapped = _ENGINE_STATUS_MAP.get((engine_status or "").lower())
    if mapped is None:
        logger.warning("engine_status_unknown", engine_status=engine_status, kept=previous.value)
        return previous
    return mapped


class EngineGateway(Protocol):
    async def create_remote_task(self, payload: PromptPayload) -> str: ...

    async def get_remote_task(self, engine_task_id: str) -> EngineSnapshot: ...

    async def submit_continuation(self, engine_task_id: str, text: str) -> None: ...


class ResultMirrorGateway(Protocol):
    async def mirror(
        self, url: str, *, user_id: int, task_id: int, title: str, extension: str
    ) -> Optional[str]: ...


@dataclass
class TaskCreateInput:
    """创建任务的用户输入。"""

    title: str
    project_id: Optional[int] = None
    engine_project_id: Optional[str] = None
    design_spec: Optional[dict[str, Any]] = None
    source_file_id: Optional[str] = None
    source_text: Optional[str] = None
    proposal_content: Optional[str] = None
    images: list[dict[str, Any]] = field(default_factory=list)


class TaskLifecycleController:
    """任务生命周期控制器。"""

    def __init__(
        self,
        store: Optional[TaskStore] = None,
        engine: Optional[EngineGateway] = None,
        mirror: Optional[ResultMirrorGateway] = None,
        progress_config: Optional[ProgressConfig] = None,
        filter_rules: Optional[FilterRules] = None,
    ):
        self.store = store or get_task_store()
        self.engine = engine or get_engine_client()
        self.mirror = mirror or ResultMirror()
        self.progress_config = progress_config or ProgressConfig.from_settings()
        self.filter_rules = filter_rules or FilterRules.from_settings()
        self._polls_in_flight: set[int] = set()
        self._poll_failures: dict[int, int] = {}
        self._poll_error_log_every = max(1, int(settings.poll_error_log_every))

    # ------------------------------------------------------------------ #
    # 查询
    # ------------------------------------------------------------------ #

    def get_task(self, task_id: int, session: Optional[SessionContext] = None) -> Task:
        task = self.store.get_task(task_id, user_id=session.user_id if session else None)
        if task is None:
            raise AppError(ErrorCode.TASK_NOT_FOUND, f"任务不存在: {task_id}")
        return task

    def list_tasks(self, session: SessionContext, limit: int = 50) -> list[Task]:
        return self.store.list_tasks(session.user_id, limit=limit)

    # ------------------------------------------------------------------ #
    # create / start
    # ------------------------------------------------------------------ #

    def _validate_create_input(self, data: TaskCreateInput) -> tuple[str, list[ImageAttachment]]:
        title = (data.title or "").strip()
        if not title:
            raise AppError(ErrorCode.VALIDATION_TITLE_REQUIRED, "请输入任务标题")
        if len(title) > MAX_TITLE_LENGTH:
            raise AppError(ErrorCode.VALIDATION_FIELD_TOO_LONG, f"title 超过 {MAX_TITLE_LENGTH} 字符")
        if data.proposal_content and len(data.proposal_content) > MAX_PROPOSAL_LENGTH:
            raise AppError(
                ErrorCode.VALIDATION_FIELD_TOO_LONG,
                f"proposal_content 超过 {MAX_PROPOSAL_LENGTH} 字符",
            )
        if len(data.images) > MAX_IMAGES:
            raise AppError(ErrorCode.VALIDATION_INVALID_IMAGE, f"配图数量超过限制: {len(data.images)}/{MAX_IMAGES}")

        images: list[ImageAttachment] = []
        for raw in data.images:
            try:
                images.append(ImageAttachment.from_dict(raw))
            except ValueError as e:
                raise AppError(ErrorCode.VALIDATION_INVALID_IMAGE, f"配图参数不合法: {e}")
        return title, images

    def _resolve_upload(self, file_id: str, user_id: int) -> dict[str, Any]:
        """上传记录 -> 引擎文件 ID / 文件名 / URL；找不到记录时把 ID 当作引擎文件 ID。"""
        record = self.store.get_uploaded_file(file_id, user_id=user_id)
        if record is None:
            return {"engine_file_id": file_id, "file_name": None, "url": None}
        return {
            "engine_file_id": record.get("engine_file_id") or file_id,
            "file_name": record.get("file_name"),
            "url": record.get("url"),
        }

    async def create_task(
        self,
        session: SessionContext,
        data: TaskCreateInput,
        *,
        start: bool = True,
    ) -> Task:
        """校验输入、创建 pending 任务，并立即提交到引擎。"""
        title, images = self._validate_create_input(data)

        # 项目设计规范在创建时固化为快照，之后修改项目不影响已有任务
        design_spec = DesignSpec.from_dict(data.design_spec) if data.design_spec else None
        engine_project_id = data.engine_project_id
        if data.project_id is not None:
            project = self.store.get_project(data.project_id, user_id=session.user_id)
            if project is None:
                raise AppError(ErrorCode.PROJECT_NOT_FOUND, f"项目不存在: {data.project_id}")
            design_spec = design_spec or project.to_design_spec()
            engine_project_id = engine_project_id or project.engine_project_id

        source = self._resolve_upload(data.source_file_id, session.user_id) if data.source_file_id else None
        resolved_images: list[ImageAttachment] = []
        for image in images:
            upload = self._resolve_upload(image.file_id, session.user_id)
            resolved_images.append(ImageAttachment(
                file_id=upload["engine_file_id"],
                usage_mode=image.usage_mode,
                category=image.category,
                description=image.description,
                file_name=image.file_name or upload["file_name"],
                file_url=image.file_url or upload["url"],
            ))

        task = self.store.create_task(
            session.user_id,
            title,
            project_id=data.project_id,
            engine_project_id=engine_project_id,
            design_spec=design_spec,
            source_file_id=source["engine_file_id"] if source else None,
            source_file_name=source["file_name"] if source else None,
            source_file_url=source["url"] if source else None,
            source_text=data.source_text or None,
            proposal_content=data.proposal_content or None,
            image_attachments=resolved_images,
        )
        if not start:
            return task
        return await self.start_task_processing(task.id)

    async def start_task_processing(self, task_id: int) -> Task:
        """pending -> uploading -> running；引擎调用失败则 failed。"""
        bind_task_id(task_id)
        uploading = self.store.update_task(
            task_id,
            {
                "status": TaskStatus.UPLOADING,
                "progress": settings.progress_start,
                "current_step": "正在创建生成任务...",
            },
            expected_status=TaskStatus.PENDING,
            timeline_event=("开始生成PPT", TaskStatus.UPLOADING.value),
        )
        if uploading is None:
            # 已被其他请求启动
            return self.get_task(task_id)

        try:
            engine_task_id = await self.engine.create_remote_task(uploading.to_prompt_payload())
        except EngineError as e:
            logger.error("engine_create_failed", code=e.code, error=e.message)
            return self._fail_start(task_id, e.message)
        except Exception as e:
            logger.error("engine_create_crashed", error=f"{type(e).__name__}: {e}", exc_info=True)
            return self._fail_start(task_id, f"{type(e).__name__}: {e}")

        bind_task_id(task_id, engine_task_id)
        running = self.store.update_task(
            task_id,
            {
                "engine_task_id": engine_task_id,
                "status": TaskStatus.RUNNING,
                "progress": max(uploading.progress, self.progress_config.baseline),
                "current_step": "AI正在分析文档内容...",
            },
            expected_status=TaskStatus.UPLOADING,
        )
        if running is None:
            logger.warning("task_start_discarded", engine_task_id=engine_task_id)
            return self.get_task(task_id)
        logger.info("task_started", engine_task_id=engine_task_id)
        return running

    def _fail_start(self, task_id: int, reason: str) -> Task:
        failed = self.store.update_task(
            task_id,
            {
                "status": TaskStatus.FAILED,
                "current_step": "生成失败",
                "error_message": f"生成服务调用失败: {reason}",
            },
            expected_status=TaskStatus.UPLOADING,
            timeline_event=("生成服务调用失败", TaskStatus.FAILED.value),
        )
        return failed or self.get_task(task_id)

    # ------------------------------------------------------------------ #
    # poll
    # ------------------------------------------------------------------ #

    async def poll_task(self, task_id: int, session: Optional[SessionContext] = None) -> Task:
        """拉取一次引擎状态并落库。同一任务已有轮询在途时直接返回当前记录。"""
        task = self.get_task(task_id, session)
        if task.status not in POLLABLE_STATUSES or not task.engine_task_id:
            self._poll_failures.pop(task_id, None)
            return task
        if task_id in self._polls_in_flight:
            logger.debug("poll_skipped_in_flight", task_id=task_id)
            return task

        self._polls_in_flight.add(task_id)
        try:
            bind_task_id(task_id, task.engine_task_id)
            try:
                snapshot = await self.engine.get_remote_task(task.engine_task_id)
            except EngineError as e:
                # 轮询错误视为瞬时错误，保持当前状态，下个周期再试
                failures = self._poll_failures.get(task_id, 0) + 1
                self._poll_failures[task_id] = failures
                # 连续失败时每 N 次记一条 warning
                log = logger.warning if (failures - 1) % self._poll_error_log_every == 0 else logger.debug
                log(
                    "engine_poll_failed",
                    code=e.code,
                    error=e.message,
                    retriable=e.retriable,
                    consecutive_failures=failures,
                )
                return task
            self._poll_failures.pop(task_id, None)
            updated = await self._apply_snapshot(task, snapshot)
            return updated or self.get_task(task_id)
        finally:
            self._polls_in_flight.discard(task_id)
            if task_id in self._poll_failures:
                current = self.store.get_task(task_id)
                if current is None or not current.is_pollable:
                    self._poll_failures.pop(task_id, None)

    def poll_failure_count(self, task_id: int) -> int:
        return self._poll_failures.get(task_id, 0)

    def is_polling(self, task_id: int) -> bool:
        return task_id in self._polls_in_flight

    async def _apply_snapshot(self, task: Task, snapshot: EngineSnapshot) -> Optional[Task]:
        new_status = map_engine_status(snapshot.status, task.status)
        if (snapshot.status or "").lower() not in _ENGINE_STATUS_MAP:
            return task
        output_content = (
            json.dumps(snapshot.output_payload(), ensure_ascii=False)
            if snapshot.messages
            else task.output_content
        )
        share_url = snapshot.share_url or task.share_url
        timeline_event: Optional[tuple[str, str]] = None

        if new_status == TaskStatus.RUNNING:
            estimate = estimate_progress(
                task.progress,
                task.current_step,
                snapshot,
                self.progress_config,
                self.filter_rules,
            )
            fields: dict[str, Any] = {
                "status": TaskStatus.RUNNING,
                "progress": estimate.progress,
                "current_step": estimate.current_step,
                "output_content": output_content,
                "share_url": share_url,
            }
        elif new_status == TaskStatus.ASK:
            fields = {
                "status": TaskStatus.ASK,
                "current_step": "需要您的确认",
                "interaction_data": json.dumps(snapshot.output_payload(), ensure_ascii=False),
                "output_content": output_content,
                "share_url": share_url,
            }
            timeline_event = ("等待用户确认", TaskStatus.ASK.value)
        elif new_status == TaskStatus.COMPLETED:
            fields = {
                "status": TaskStatus.COMPLETED,
                "progress": 100,
                "current_step": "生成完成！",
                "output_content": output_content,
                "share_url": share_url,
                "interaction_data": None,
            }
            fields.update(await self._resolve_results(task, snapshot))
            timeline_event = ("PPT生成完成", TaskStatus.COMPLETED.value)
        elif new_status == TaskStatus.FAILED:
            fields = {
                "status": TaskStatus.FAILED,
                "current_step": "生成失败",
                "error_message": "任务已被停止" if snapshot.status == "stopped" else "生成过程中出错",
                "output_content": output_content,
                "interaction_data": None,
            }
            timeline_event = ("生成失败", TaskStatus.FAILED.value)
        else:
            return task

        updated = self.store.update_task(
            task.id,
            fields,
            expected_status=POLLABLE_STATUSES,
            expected_version=task.version,
            timeline_event=timeline_event,
        )
        if updated is None:
            logger.info("poll_result_discarded", engine_status=snapshot.status, version=task.version)
            return None
        if updated.status != task.status:
            logger.info(
                "task_status_changed",
                from_status=task.status.value,
                to_status=updated.status.value,
                progress=updated.progress,
            )
        return updated

    async def _resolve_results(self, task: Task, snapshot: EngineSnapshot) -> dict[str, Optional[str]]:
        """按后缀匹配 PPTX / PDF 附件并转存；转存失败回退到引擎 URL。"""
        results: dict[str, Optional[str]] = {}
        for suffix, extension, column in _RESULT_SUFFIXES:
            attachment = snapshot.find_attachment(suffix)
            if attachment is None:
                continue
            mirrored = await self.mirror.mirror(
                attachment.url,
                user_id=task.user_id,
                task_id=task.id,
                title=task.title,
                extension=extension,
            )
            if mirrored is None:
                logger.warning("result_mirror_fallback", extension=extension)
            results[column] = mirrored or attachment.url
        if not results:
            logger.warning("result_files_missing", attachments=len(snapshot.attachments))
        return results

    # ------------------------------------------------------------------ #
    # continue / retry / refresh
    # ------------------------------------------------------------------ #

    async def continue_task(self, task_id: int, text: str, session: Optional[SessionContext] = None) -> Task:
        """提交用户回复：成功后 ask -> running；引擎失败时任务保持 ask 不变。"""
        reply = (text or "").strip()
        if not reply:
            raise AppError(ErrorCode.VALIDATION_EMPTY_RESPONSE, "回复内容不能为空")

        task = self.get_task(task_id, session)
        if task.status != TaskStatus.ASK:
            raise AppError(ErrorCode.TASK_INVALID_STATE, f"任务当前状态不需要确认: {task.status.value}")
        if not task.engine_task_id:
            raise AppError(ErrorCode.TASK_NOT_STARTED, "任务尚未关联生成服务")

        bind_task_id(task_id, task.engine_task_id)
        try:
            await self.engine.submit_continuation(task.engine_task_id, reply)
        except EngineError as e:
            logger.warning("engine_continue_failed", code=e.code, error=e.message)
            raise e.to_app_error() from e

        updated = self.store.update_task(
            task_id,
            {
                "status": TaskStatus.RUNNING,
                "current_step": "继续生成中...",
                "interaction_data": None,
            },
            expected_status=TaskStatus.ASK,
            timeline_event=("用户已确认，继续生成", TaskStatus.RUNNING.value),
        )
        if updated is None:
            raise AppError(ErrorCode.TASK_INVALID_STATE, "任务状态已变化，请刷新后重试")
        self._poll_failures.pop(task_id, None)
        logger.info("task_continued")
        return updated

    async def retry_task(self, task_id: int, session: Optional[SessionContext] = None) -> Task:
        """failed -> pending，复用原有输入重新提交。"""
        task = self.get_task(task_id, session)
        if task.status != TaskStatus.FAILED:
            raise AppError(ErrorCode.TASK_INVALID_STATE, f"只有失败的任务可以重试: {task.status.value}")

        bind_task_id(task_id)
        reset = self.store.update_task(
            task_id,
            {
                "status": TaskStatus.PENDING,
                "engine_task_id": None,
                "progress": 0,
                "current_step": "正在初始化...",
                "output_content": None,
                "interaction_data": None,
                "error_message": None,
                "share_url": None,
                "result_pptx_url": None,
                "result_pdf_url": None,
            },
            expected_status=TaskStatus.FAILED,
            timeline_event=("重试任务", TaskStatus.PENDING.value),
        )
        if reset is None:
            raise AppError(ErrorCode.TASK_INVALID_STATE, "任务状态已变化，请刷新后重试")
        self._poll_failures.pop(task_id, None)
        logger.info("task_retry")
        return await self.start_task_processing(task_id)

    async def refresh_results(self, task_id: int, session: Optional[SessionContext] = None) -> Task:
        """补齐已完成任务缺失的结果 URL，不改变状态。"""
        task = self.get_task(task_id, session)
        if task.status != TaskStatus.COMPLETED:
            raise AppError(ErrorCode.TASK_INVALID_STATE, f"任务尚未完成: {task.status.value}")
        if task.result_pptx_url and task.result_pdf_url:
            return task
        if not task.engine_task_id:
            raise AppError(ErrorCode.TASK_NOT_STARTED, "任务未关联生成服务")

        bind_task_id(task_id, task.engine_task_id)
        try:
            snapshot = await self.engine.get_remote_task(task.engine_task_id)
        except EngineError as e:
            raise e.to_app_error() from e

        resolved = await self._resolve_results(task, snapshot)
        fields = {
            column: url
            for column, url in resolved.items()
            if url and not getattr(task, column)
        }
        if not fields:
            return task

        updated = self.store.update_task(
            task_id,
            fields,
            expected_status=TaskStatus.COMPLETED,
            timeline_event=("结果文件已更新", TaskStatus.COMPLETED.value),
        )
        logger.info("task_results_refreshed", fields=sorted(fields))
        return updated or self.get_task(task_id)


_controller: Optional[TaskLifecycleController] = None


def get_controller() -> TaskLifecycleController:
    global _controller
    if _controller is None:
        _controller = TaskLifecycleController()
    return _controller
