from __future__ import annotations

"""任务领域模型。"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..engine.models import DesignSpec, ImageAttachment, PromptPayload


class TaskStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    RUNNING = "running"
    ASK = "ask"
    COMPLETED = "completed"
    FAILED = "failed"


# 轮询只在这两个状态下进行
POLLABLE_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.UPLOADING, TaskStatus.RUNNING})

# 尚未结束的状态（超时清理、列表展示使用）
ACTIVE_STATUSES: frozenset[TaskStatus] = frozenset({
    TaskStatus.PENDING,
    TaskStatus.UPLOADING,
    TaskStatus.RUNNING,
    TaskStatus.ASK,
})

STATUS_LABELS: dict[TaskStatus, str] = {
    TaskStatus.PENDING: "等待中",
    TaskStatus.UPLOADING: "上传中",
    TaskStatus.RUNNING: "生成中",
    TaskStatus.ASK: "需确认",
    TaskStatus.COMPLETED: "已完成",
    TaskStatus.FAILED: "失败",
}


@dataclass(frozen=True)
class TimelineEvent:
    """时间线条目（只追加）。"""

    time: str
    event: str
    status: str

    def to_dict(self) -> dict[str, str]:
        return {"time": self.time, "event": self.event, "status": self.status}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimelineEvent":
        return cls(
            time=str(data.get("time") or ""),
            event=str(data.get("event") or ""),
            status=str(data.get("status") or ""),
        )


@dataclass
class Task:
    """PPT 生成任务记录。

    输入字段（title / 设计规范 / 源文档 / Proposal / 配图）创建后不再修改，重试时原样复用；
    其余字段由生命周期控制器写入。``version`` 随每次写入递增，用于乐观并发校验。
    """

    id: int
    user_id: int
    title: str
    status: TaskStatus = TaskStatus.PENDING

    # 输入
    project_id: Optional[int] = None
    engine_project_id: Optional[str] = None
    design_spec: Optional[DesignSpec] = None
    source_file_id: Optional[str] = None
    source_file_name: Optional[str] = None
    source_file_url: Optional[str] = None
    source_text: Optional[str] = None
    proposal_content: Optional[str] = None
    image_attachments: list[ImageAttachment] = field(default_factory=list)

    # 引擎关联与进度
    engine_task_id: Optional[str] = None
    progress: int = 0
    current_step: Optional[str] = None
    output_content: Optional[str] = None
    interaction_data: Optional[str] = None
    share_url: Optional[str] = None
    result_pptx_url: Optional[str] = None
    result_pdf_url: Optional[str] = None
    error_message: Optional[str] = None
    timeline_events: list[TimelineEvent] = field(default_factory=list)

    created_at: str = ""
    updated_at: str = ""
    version: int = 0

    @property
    def is_pollable(self) -> bool:
        return self.status in POLLABLE_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_prompt_payload(self) -> PromptPayload:
        return PromptPayload(
            title=self.title,
            source_file_id=self.source_file_id,
            source_text=self.source_text,
            proposal_content=self.proposal_content,
            images=list(self.image_attachments),
            design_spec=self.design_spec,
            engine_project_id=self.engine_project_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "status": self.status.value,
            "status_label": STATUS_LABELS[self.status],
            "project_id": self.project_id,
            "engine_project_id": self.engine_project_id,
            "design_spec": self.design_spec.to_dict() if self.design_spec else None,
            "source_file_id": self.source_file_id,
            "source_file_name": self.source_file_name,
            "source_file_url": self.source_file_url,
            "proposal_content": self.proposal_content,
            "image_attachments": [img.to_dict() for img in self.image_attachments],
            "engine_task_id": self.engine_task_id,
            "progress": self.progress,
            "current_step": self.current_step,
            "output_content": self.output_content,
            "interaction_data": self.interaction_data,
            "share_url": self.share_url,
            "result_pptx_url": self.result_pptx_url,
            "result_pdf_url": self.result_pdf_url,
            "error_message": self.error_message,
            "timeline_events": [e.to_dict() for e in self.timeline_events],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }


@dataclass
class Project:
    """项目：一组可复用的设计规范，创建任务时解析为 DesignSpec 快照。"""

    id: int
    user_id: int
    name: str
    primary_color: str = "#0c87eb"
    secondary_color: str = "#737373"
    accent_color: str = "#10b981"
    font_family: str = "微软雅黑"
    design_notes: Optional[str] = None
    logo_url: Optional[str] = None
    engine_project_id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    def to_design_spec(self) -> DesignSpec:
        return DesignSpec(
            name=self.name,
            primary_color=self.primary_color,
            secondary_color=self.secondary_color,
            accent_color=self.accent_color,
            font_family=self.font_family,
            extra_instructions=self.design_notes,
            logo_url=self.logo_url,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "primary_color": self.primary_color,
            "secondary_color": self.secondary_color,
            "accent_color": self.accent_color,
            "font_family": self.font_family,
            "design_notes": self.design_notes,
            "logo_url": self.logo_url,
            "engine_project_id": self.engine_project_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
