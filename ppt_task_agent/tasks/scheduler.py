from __future__ import annotations

"""任务轮询调度器：每个被关注的任务一个 asyncio 轮询循环。"""

import asyncio
from typing import Any, Optional

from ..config import settings
from ..errors import AppError, ErrorCode
from ..logging_config import bind_task_id, get_logger
from .lifecycle import TaskLifecycleController, get_controller

logger = get_logger(__name__)


class TaskPollScheduler:
    """
    按引用计数管理轮询循环。

    SSE 连接 watch 一个任务，断开时 unwatch；引用计数归零或任务离开
    uploading / running 时循环结束。SSE 在 ask 期间保持连接，continue 之后通过 resume 重新拉起。
    """

    def __init__(
        self,
        controller: Optional[TaskLifecycleController] = None,
        interval_s: Optional[float] = None,
    ):
        self._controller = controller
        self.interval_s = float(interval_s if interval_s is not None else settings.poll_interval_seconds)
        self._loops: dict[int, asyncio.Task[Any]] = {}
        self._watchers: dict[int, int] = {}
        self._shutting_down = False

    @property
    def controller(self) -> TaskLifecycleController:
        if self._controller is None:
            self._controller = get_controller()
        return self._controller

    def is_running(self, task_id: int) -> bool:
        loop = self._loops.get(task_id)
        return loop is not None and not loop.done()

    def watch(self, task_id: int) -> None:
        self._watchers[task_id] = self._watchers.get(task_id, 0) + 1
        self._ensure_loop(task_id)

    def unwatch(self, task_id: int) -> None:
        remaining = self._watchers.get(task_id, 0) - 1
        if remaining > 0:
            self._watchers[task_id] = remaining
            return
        self._watchers.pop(task_id, None)
        loop = self._loops.pop(task_id, None)
        if loop is not None and not loop.done():
            loop.cancel()
            logger.info("poll_loop_cancelled", task_id=task_id, reason="no_watchers")

    def resume(self, task_id: int) -> None:
        """continue / retry 之后，若仍有观察者则重新拉起轮询。"""
        if self._watchers.get(task_id):
            self._ensure_loop(task_id)

    def _ensure_loop(self, task_id: int) -> None:
        if self._shutting_down or self.is_running(task_id):
            return
        self._loops[task_id] = asyncio.create_task(self._poll_loop(task_id))

    async def _poll_loop(self, task_id: int) -> None:
        bind_task_id(task_id)
        logger.info("poll_loop_started", interval_s=self.interval_s)
        try:
            while True:
                try:
                    task = await self.controller.poll_task(task_id)
                except AppError as e:
                    if e.code == ErrorCode.TASK_NOT_FOUND:
                        logger.warning("poll_loop_task_missing")
                        break
                    logger.error("poll_loop_error", code=e.code.value, error=e.message)
                except Exception as e:
                    # 单次轮询异常不终止循环，下个周期再试
                    logger.error("poll_loop_error", error=f"{type(e).__name__}: {e}", exc_info=True)
                else:
                    if not task.is_pollable:
                        logger.info("poll_loop_finished", status=task.status.value)
                        break
                await asyncio.sleep(self.interval_s)
        finally:
            current = self._loops.get(task_id)
            if current is asyncio.current_task():
                self._loops.pop(task_id, None)

    async def shutdown(self) -> None:
        """取消全部轮询循环（在 FastAPI lifespan 关闭阶段调用）。"""
        self._shutting_down = True
        loops = list(self._loops.values())
        self._loops.clear()
        self._watchers.clear()
        for loop in loops:
            if loop.done():
                continue
            loop.cancel()
            try:
                await loop
            except asyncio.CancelledError:
                pass
        logger.info("poll_scheduler_stopped", cancelled=len(loops))

    def start(self) -> None:
        self._shutting_down = False


_scheduler: Optional[TaskPollScheduler] = None


def get_scheduler() -> TaskPollScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = TaskPollScheduler()
    return _scheduler
