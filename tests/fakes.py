"""测试用的引擎与结果转存替身。"""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

from ppt_task_agent.engine.models import (
    DesignSpec,
    EngineSnapshot,
    FileOutput,
    OutputMessage,
    PromptPayload,
    TextOutput,
    extract_latest_attachments,
)
from ppt_task_agent.errors import EngineError

SLIDE_TEXT = (
    "## 第3页：市场规模\n"
    "2024年中国新能源汽车市场规模达到1.2万亿元，同比增长35%，渗透率首次突破40%，"
    "头部品牌集中度持续提升，二三线城市成为新的增长引擎。"
)


def assistant(*items: object) -> OutputMessage:
    parsed = tuple(TextOutput(i) if isinstance(i, str) else i for i in items)
    return OutputMessage(role="assistant", items=parsed)  # type: ignore[arg-type]


def snapshot(status: str, *messages: OutputMessage, share_url: Optional[str] = None) -> EngineSnapshot:
    return EngineSnapshot(
        engine_task_id="eng-1",
        status=status,
        messages=tuple(messages),
        attachments=extract_latest_attachments(tuple(messages)),
        share_url=share_url,
    )


def result_files() -> OutputMessage:
    return assistant(
        "演示文稿已经准备好，请查收。",
        FileOutput(file_url="https://engine.example/out/deck.pptx", file_name="deck.pptx"),
        FileOutput(file_url="https://engine.example/out/deck.pdf", file_name="deck.pdf"),
    )


class FakeEngine:
    """按顺序返回预置快照；create / continue 可配置为失败。"""

    def __init__(self, snapshots: Optional[list[EngineSnapshot]] = None):
        self.snapshots: list[EngineSnapshot] = list(snapshots or [])
        self.created: list[PromptPayload] = []
        self.continuations: list[tuple[str, str]] = []
        self.poll_calls = 0
        self.create_error: Optional[Exception] = None
        self.continue_error: Optional[EngineError] = None
        self.poll_error: Optional[EngineError] = None
        # 依次抛出，用完后恢复正常返回
        self.poll_errors: list[Exception] = []
        self.projects: list[DesignSpec] = []
        self.project_error: Optional[EngineError] = None
        self.poll_gate: Optional[asyncio.Event] = None
        self.on_poll: Optional[Callable[[], None]] = None

    async def create_remote_task(self, payload: PromptPayload) -> str:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(payload)
        return f"eng-{len(self.created)}"

    async def get_remote_task(self, engine_task_id: str) -> EngineSnapshot:
        self.poll_calls += 1
        if self.poll_gate is not None:
            await self.poll_gate.wait()
        if self.on_poll is not None:
            self.on_poll()
        if self.poll_error is not None:
            raise self.poll_error
        if self.poll_errors:
            raise self.poll_errors.pop(0)
        if len(self.snapshots) > 1:
            return self.snapshots.pop(0)
        return self.snapshots[0]

    async def submit_continuation(self, engine_task_id: str, text: str) -> None:
        if self.continue_error is not None:
            raise self.continue_error
        self.continuations.append((engine_task_id, text))

    async def create_remote_project(self, design_spec: DesignSpec) -> str:
        if self.project_error is not None:
            raise self.project_error
        self.projects.append(design_spec)
        return f"eng-proj-{len(self.projects)}"


class FakeMirror:
    """转存成功时返回本地 URL，fail=True 时模拟转存失败。"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[str, str]] = []

    async def mirror(self, url: str, *, user_id: int, task_id: int, title: str, extension: str) -> Optional[str]:
        self.calls.append((url, extension))
        if self.fail:
            return None
        return f"/files/results/{user_id}/{task_id}/result.{extension}"
