from __future__ import annotations

import asyncio
from pathlib import Path

from ppt_task_agent.session import SessionContext
from ppt_task_agent.storage.task_store import TaskStore
from ppt_task_agent.tasks.lifecycle import TaskCreateInput, TaskLifecycleController
from ppt_task_agent.tasks.models import TaskStatus
from ppt_task_agent.tasks.scheduler import TaskPollScheduler

from fakes import FakeEngine, FakeMirror, assistant, result_files, snapshot


def _setup(tmp_path: Path, engine: FakeEngine) -> tuple[TaskLifecycleController, TaskPollScheduler, int]:
    controller = TaskLifecycleController(
        store=TaskStore(tmp_path / "tasks.db"),
        engine=engine,
        mirror=FakeMirror(),
    )
    task = asyncio.run(controller.create_task(SessionContext(user_id=1), TaskCreateInput(title="行业洞察")))
    return controller, TaskPollScheduler(controller, interval_s=0), task.id


def test_poll_loop_stops_when_task_leaves_running(tmp_path: Path) -> None:
    engine = FakeEngine([
        snapshot("running", assistant("a")),
        snapshot("running", assistant("a"), assistant("b")),
        snapshot("completed", result_files()),
    ])
    controller, scheduler, task_id = _setup(tmp_path, engine)

    async def scenario() -> None:
        scheduler.watch(task_id)
        loop = scheduler._loops[task_id]
        await asyncio.wait_for(loop, timeout=2.0)
        assert not scheduler.is_running(task_id)

    asyncio.run(scenario())
    assert engine.poll_calls == 3
    assert controller.get_task(task_id).status == TaskStatus.COMPLETED


def test_unwatch_cancels_loop(tmp_path: Path) -> None:
    controller, scheduler, task_id = _setup(tmp_path, FakeEngine([snapshot("running", assistant("a"))]))

    async def scenario() -> None:
        scheduler.watch(task_id)
        scheduler.watch(task_id)
        await asyncio.sleep(0.01)

        scheduler.unwatch(task_id)
        assert scheduler.is_running(task_id)

        loop = scheduler._loops[task_id]
        scheduler.unwatch(task_id)
        await asyncio.sleep(0)
        assert loop.cancelled() or loop.done()
        assert not scheduler.is_running(task_id)

    asyncio.run(scenario())
    assert controller.get_task(task_id).status == TaskStatus.RUNNING


def test_resume_only_with_watchers(tmp_path: Path) -> None:
    _controller, scheduler, task_id = _setup(tmp_path, FakeEngine([snapshot("running")]))

    async def scenario() -> None:
        scheduler.resume(task_id)
        assert not scheduler.is_running(task_id)

        scheduler.watch(task_id)
        assert scheduler.is_running(task_id)
        await scheduler.shutdown()
        assert not scheduler.is_running(task_id)

        scheduler.watch(task_id)
        assert not scheduler.is_running(task_id)

    asyncio.run(scenario())


def test_poll_loop_survives_unexpected_error(tmp_path: Path) -> None:
    engine = FakeEngine([snapshot("completed", result_files())])
    engine.poll_errors = [RuntimeError("boom")]
    controller, scheduler, task_id = _setup(tmp_path, engine)

    async def scenario() -> None:
        scheduler.watch(task_id)
        await asyncio.wait_for(scheduler._loops[task_id], timeout=2.0)

    asyncio.run(scenario())
    assert engine.poll_calls == 2
    assert controller.get_task(task_id).status == TaskStatus.COMPLETED
