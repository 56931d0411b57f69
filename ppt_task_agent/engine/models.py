from __future__ import annotations

"""PPT 引擎领域模型。

引擎返回的 ``output`` 有两种形态：消息数组，或旧版 ``{content, attachments}`` 对象。
``parse_output_messages`` 在客户端边界把两者统一成 ``OutputMessage`` 元组，
其余模块只处理规范形态。
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Union


IMAGE_USAGE_MODES: tuple[str, ...] = ("must_use", "suggest_use", "ai_decide")
IMAGE_CATEGORIES: tuple[str, ...] = ("cover", "content", "chart", "logo", "background", "other")

USAGE_MODE_LABELS: dict[str, str] = {
    "must_use": "必须使用",
    "suggest_use": "建议使用",
    "ai_decide": "AI自行决定",
}

CATEGORY_LABELS: dict[str, str] = {
    "cover": "封面/封底",
    "content": "内容配图",
    "chart": "数据图表",
    "logo": "Logo/品牌标识",
    "background": "背景图片",
    "other": "其他用途",
}


@dataclass
class ImageAttachment:
    """用户上传的配图及其使用指令。"""

    file_id: str
    usage_mode: str = "ai_decide"
    category: str = "other"
    description: str = ""
    file_name: Optional[str] = None
    file_url: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.file_id:
            raise ValueError("image file_id 不能为空")
        if self.usage_mode not in IMAGE_USAGE_MODES:
            raise ValueError(f"未知的 usage_mode: {self.usage_mode}")
        if self.category not in IMAGE_CATEGORIES:
            raise ValueError(f"未知的 category: {self.category}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_id": self.file_id,
            "usage_mode": self.usage_mode,
            "category": self.category,
            "description": self.description,
            "file_name": self.file_name,
            "file_url": self.file_url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImageAttachment":
        # 兼容旧数据的 camelCase 键与 placement 字段
        return cls(
            file_id=str(data.get("file_id") or data.get("fileId") or ""),
            usage_mode=str(data.get("usage_mode") or data.get("usageMode") or "ai_decide"),
            category=str(data.get("category") or "other"),
            description=str(data.get("description") or data.get("placement") or ""),
            file_name=data.get("file_name") or data.get("fileName"),
            file_url=data.get("file_url") or data.get("fileUrl"),
        )


@dataclass
class DesignSpec:
    """项目设计规范快照（配色、字体、Logo）。"""

    name: str
    primary_color: str
    secondary_color: str
    accent_color: str
    font_family: str
    extra_instructions: Optional[str] = None
    logo_url: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "primary_color": self.primary_color,
            "secondary_color": self.secondary_color,
            "accent_color": self.accent_color,
            "font_family": self.font_family,
            "extra_instructions": self.extra_instructions,
            "logo_url": self.logo_url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DesignSpec":
        return cls(
            name=str(data.get("name") or ""),
            primary_color=str(data.get("primary_color") or data.get("primaryColor") or ""),
            secondary_color=str(data.get("secondary_color") or data.get("secondaryColor") or ""),
            accent_color=str(data.get("accent_color") or data.get("accentColor") or ""),
            font_family=str(data.get("font_family") or data.get("fontFamily") or ""),
            extra_instructions=data.get("extra_instructions") or data.get("designSpec"),
            logo_url=data.get("logo_url") or data.get("logoUrl"),
        )


@dataclass
class PromptPayload:
    """提交给引擎的生成请求。"""

    title: str
    source_file_id: Optional[str] = None
    source_text: Optional[str] = None
    proposal_content: Optional[str] = None
    images: list[ImageAttachment] = field(default_factory=list)
    design_spec: Optional[DesignSpec] = None
    engine_project_id: Optional[str] = None

    @property
    def attachment_file_ids(self) -> list[str]:
        ids: list[str] = []
        if self.source_file_id:
            ids.append(self.source_file_id)
        ids.extend(img.file_id for img in self.images)
        return ids


# ---------------------------------------------------------------------------
# 输出消息（规范形态）
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextOutput:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "output_text", "text": self.text}


@dataclass(frozen=True)
class FileOutput:
    file_url: str
    file_name: str
    mime_type: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "type": "output_file",
            "fileUrl": self.file_url,
            "fileName": self.file_name,
        }
        if self.mime_type:
            item["mimeType"] = self.mime_type
        return item


OutputItem = Union[TextOutput, FileOutput]


@dataclass(frozen=True)
class OutputMessage:
    role: str
    items: tuple[OutputItem, ...] = ()
    message_id: Optional[str] = None

    @property
    def texts(self) -> list[str]:
        return [item.text for item in self.items if isinstance(item, TextOutput)]

    @property
    def files(self) -> list[FileOutput]:
        return [item for item in self.items if isinstance(item, FileOutput)]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "role": self.role,
            "content": [item.to_dict() for item in self.items],
        }
        if self.message_id:
            payload["id"] = self.message_id
        return payload


@dataclass(frozen=True)
class EngineAttachment:
    file_name: str
    url: str


@dataclass(frozen=True)
class EngineSnapshot:
    """一次 ``get_remote_task`` 的规范化结果。"""

    engine_task_id: str
    status: str
    messages: tuple[OutputMessage, ...] = ()
    attachments: tuple[EngineAttachment, ...] = ()
    share_url: Optional[str] = None
    title: Optional[str] = None

    @property
    def output_count(self) -> int:
        return len(self.messages)

    def latest_assistant_texts(self) -> list[str]:
        """最近一条带文本的 assistant 消息中的全部文本。"""
        for message in reversed(self.messages):
            if message.role != "assistant":
                continue
            texts = [t for t in message.texts if t.strip()]
            if texts:
                return texts
        return []

    def find_attachment(self, suffix: str) -> Optional[EngineAttachment]:
        suffix = suffix.lower()
        for attachment in self.attachments:
            if attachment.file_name.lower().endswith(suffix):
                return attachment
        return None

    def output_payload(self) -> list[dict[str, Any]]:
        return [message.to_dict() for message in self.messages]


# ---------------------------------------------------------------------------
# 形态归一
# ---------------------------------------------------------------------------

def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def _parse_item(raw: Any) -> Optional[OutputItem]:
    if isinstance(raw, str):
        return TextOutput(raw) if raw else None
    if not isinstance(raw, dict):
        return None
    item_type = str(raw.get("type") or "")
    text = raw.get("text")
    if item_type == "output_text" or (not item_type and isinstance(text, str)):
        return TextOutput(str(text or "")) if text else None
    file_url = _first(raw, "fileUrl", "file_url", "url", "download_url")
    file_name = _first(raw, "fileName", "file_name", "filename", "name")
    if file_url and file_name:
        return FileOutput(
            file_url=str(file_url),
            file_name=str(file_name),
            mime_type=_first(raw, "mimeType", "mime_type"),
        )
    return None


def _parse_message(raw: Any) -> Optional[OutputMessage]:
    if not isinstance(raw, dict):
        return None
    content = raw.get("content")
    if isinstance(content, str):
        raw_items: list[Any] = [content]
    elif isinstance(content, list):
        raw_items = content
    else:
        raw_items = []
    items = tuple(item for item in (_parse_item(x) for x in raw_items) if item is not None)
    return OutputMessage(
        role=str(raw.get("role") or "assistant"),
        items=items,
        message_id=raw.get("id"),
    )


def parse_output_messages(raw_output: Any) -> tuple[OutputMessage, ...]:
    """把引擎 ``output`` 字段统一为消息元组。"""
    if raw_output is None:
        return ()
    if isinstance(raw_output, list):
        parsed = (_parse_message(m) for m in raw_output)
        return tuple(m for m in parsed if m is not None)
    if isinstance(raw_output, dict):
        # 旧版对象形态：{content: str, attachments: [...]}
        items: list[OutputItem] = []
        content = raw_output.get("content")
        if isinstance(content, str) and content:
            items.append(TextOutput(content))
        elif isinstance(content, list):
            items.extend(i for i in (_parse_item(x) for x in content) if i is not None)
        for attachment in raw_output.get("attachments") or []:
            item = _parse_item(attachment if isinstance(attachment, dict) else {})
            if isinstance(item, FileOutput):
                items.append(item)
        if not items:
            return ()
        return (OutputMessage(role="assistant", items=tuple(items)),)
    if isinstance(raw_output, str) and raw_output:
        return (OutputMessage(role="assistant", items=(TextOutput(raw_output),)),)
    return ()


def extract_latest_attachments(messages: tuple[OutputMessage, ...]) -> tuple[EngineAttachment, ...]:
    """取最后一条带文件的 assistant 消息里的全部文件。"""
    for message in reversed(messages):
        if message.role != "assistant":
            continue
        files = message.files
        if files:
            return tuple(EngineAttachment(file_name=f.file_name, url=f.file_url) for f in files)
    return ()
