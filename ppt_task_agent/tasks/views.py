from __future__ import annotations

"""
任务读模型。

把存储中的任务记录转换为前端使用的视图：展示块、扁平时间线、
状态派生布尔值，以及 ask 状态下的交互提示。
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from ..engine.models import parse_output_messages
from .models import Task, TaskStatus
from .output_filter import DEFAULT_RULES, FilterRules, IMAGE_EXTENSIONS, build_display_blocks

_OPTION_RE = re.compile(r"(\d+)[.、]\s*([^\n]+)")
_IMAGE_WORDS = ("图片", "配图", "图像")


@dataclass
class InteractionPrompt:
    kind: str  # text | choice | image_confirmation
    title: str
    content: str
    options: list[str] = field(default_factory=list)
    images: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "title": self.title,
            "content": self.content,
            "options": list(self.options),
            "images": list(self.images),
        }


def _load_json(raw: Optional[str]) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _strip_internal(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_internal(v) for k, v in value.items() if not str(k).startswith("_")}
    if isinstance(value, list):
        return [_strip_internal(v) for v in value]
    return value


def sanitize_interaction_data(raw: Optional[str]) -> Optional[str]:
    """去掉以下划线开头的内部字段；不是合法 JSON 或清理后为空则返回 None。"""
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    cleaned = _strip_internal(data)
    if not cleaned:
        return None
    return json.dumps(cleaned, ensure_ascii=False)


def parse_interaction(
    interaction_data: Optional[str],
    output_content: Optional[str] = None,
) -> Optional[InteractionPrompt]:
    """从交互数据（缺省时用 output_content）解析出提示：文本 / 选项 / 配图确认。"""
    raw = _load_json(interaction_data)
    if raw is None:
        raw = _load_json(output_content)
    if raw is None:
        return None

    messages = parse_output_messages(raw)
    texts: list[str] = []
    images: list[dict[str, str]] = []
    # 只取最后一条有内容的 assistant 消息作为提问
    for message in reversed(messages):
        if message.role != "assistant":
            continue
        texts = [t.strip() for t in message.texts if t.strip()]
        images = [
            {"url": f.file_url, "name": f.file_name}
            for f in message.files
            if f.file_name.lower().endswith(IMAGE_EXTENSIONS)
        ]
        if texts or images:
            break
    content = "\n\n".join(texts)
    if not content and not images:
        return None

    if images or any(word in content for word in _IMAGE_WORDS):
        return InteractionPrompt(
            kind="image_confirmation",
            title="配图方案确认",
            content=content,
            options=[m.group(2).strip() for m in _OPTION_RE.finditer(content)],
            images=images,
        )

    options = [m.group(2).strip() for m in _OPTION_RE.finditer(content)]
    if options:
        return InteractionPrompt(kind="choice", title="请选择", content=content, options=options)
    return InteractionPrompt(kind="text", title="AI 需要您的输入", content=content)


def build_task_view(task: Task, rules: FilterRules = DEFAULT_RULES) -> dict[str, Any]:
    view = task.to_dict()
    view["interaction_data"] = sanitize_interaction_data(task.interaction_data)

    output = _load_json(task.output_content)
    messages = parse_output_messages(output) if output is not None else ()
    view["display_blocks"] = [block.to_dict() for block in build_display_blocks(messages, rules)]
    view["timeline"] = [event.to_dict() for event in task.timeline_events]

    view["is_active"] = task.is_active
    view["is_completed"] = task.status == TaskStatus.COMPLETED
    view["needs_interaction"] = task.status == TaskStatus.ASK
    view["is_failed"] = task.status == TaskStatus.FAILED

    interaction = (
        parse_interaction(view["interaction_data"], task.output_content)
        if task.status == TaskStatus.ASK
        else None
    )
    view["interaction"] = interaction.to_dict() if interaction else None
    return view
