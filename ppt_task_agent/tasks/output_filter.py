"""
引擎输出过滤与分类。

纯函数：屏蔽泄露的内部指令与低信息量的套话，把剩余片段分类为
thinking / content / slide / action，文件输出分类为 image / result。
展示时间线与 current_step 提取共用同一套规则。

关键词匹配本身有误判与漏判，这里接受这一取舍，规则以数据形式维护在 ``FilterRules`` 中。
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

from ..config import settings
from ..engine.models import FileOutput, OutputMessage, TextOutput


class BlockCategory(str, Enum):
    THINKING = "thinking"
    CONTENT = "content"
    SLIDE = "slide"
    ACTION = "action"
    RESULT = "result"
    IMAGE = "image"


# 内部指令泄露标记：生成指令里的品牌纯净要求、引擎自我标识、对 AI 的元指令
INTERNAL_INSTRUCTION_KEYWORDS: tuple[str, ...] = (
    "品牌纯净要求",
    "违反此规则将导致交付物被完全拒绝",
    "Powered by Manus",
    "Made with Manus",
    "由Manus提供支持",
    "Powered by AI",
    "AI Generated",
    "由AI生成",
    "严禁在PPT的任何位置",
    "封面页特别要求",
    "绝对禁止出现",
    "最重要的规则",
    "必须首先阅读并严格遵守",
    "再次强调品牌纯净要求",
    "最终检查清单",
    "交付物将被拒绝",
    "PPT看起来100%像是人工专业制作",
    "任何暗示内容由AI生成",
    "OpenAI、Claude、GPT、Gemini",
    "技术来源声明",
    "请尽可能自主完成所有工作",
    "只有在遇到真正无法判断的关键问题时才向用户提问",
)

# 低信息量套话：文件获取方式、下载链接、泛泛的概述
MEANINGLESS_CONTENT_KEYWORDS: tuple[str, ...] = (
    "如何获取",
    "下载链接",
    "核心内容概览",
    "视觉设计亮点",
    "设计特点",
    "配色方案",
    "排版布局",
    "素材运用",
    "幻灯片概述",
    "PPTX文件",
    "PDF文件",
    "文件已生成",
    "点击下方链接",
    "查看演示文稿",
    "预览地址",
    "分享链接",
)

PROGRESS_VERBS: tuple[str, ...] = (
    "正在",
    "开始",
    "执行",
    "生成中",
    "已完成",
    "analyzing",
    "generating",
    "creating",
    "processing",
    "exporting",
    "completed",
)

THINKING_MARKERS: tuple[str, ...] = (
    "分析",
    "思考",
    "规划",
    "planning",
    "thinking",
)

IMAGE_EXTENSIONS: tuple[str, ...] = (".png", ".jpg", ".jpeg", ".gif", ".webp")

_LEADING_HEADING_RE = re.compile(r"^\s*#{1,6}[^\n]*(?:\n|$)")
_HEADING_RE = re.compile(r"^#{1,6}\s+\S", re.MULTILINE)
_TITLE_RE = re.compile(r"^\s*#{1,6}\s*(.+?)\s*$", re.MULTILINE)


@dataclass(frozen=True)
class FilterRules:
    """过滤与分类规则。"""

    internal_keywords: tuple[str, ...] = INTERNAL_INSTRUCTION_KEYWORDS
    meaningless_keywords: tuple[str, ...] = MEANINGLESS_CONTENT_KEYWORDS
    progress_verbs: tuple[str, ...] = PROGRESS_VERBS
    thinking_markers: tuple[str, ...] = THINKING_MARKERS
    min_meaningful_length: int = 50
    action_max_length: int = 100

    @classmethod
    def from_settings(cls) -> "FilterRules":
        return cls(
            min_meaningful_length=settings.filter_min_meaningful_length,
            action_max_length=settings.filter_action_max_length,
        )

    @property
    def suppressed_keywords(self) -> tuple[str, ...]:
        return self.internal_keywords + self.meaningless_keywords


DEFAULT_RULES = FilterRules()


@dataclass(frozen=True)
class Classification:
    category: BlockCategory
    display_text: str
    title: Optional[str] = None


@dataclass(frozen=True)
class DisplayBlock:
    """展示时间线中的一个块。"""

    id: str
    category: BlockCategory
    content: str
    title: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.category.value,
            "content": self.content,
            "title": self.title,
            "file_url": self.file_url,
            "file_name": self.file_name,
        }


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(k.lower() in lowered for k in keywords)


def strip_leading_heading(text: str) -> str:
    return _LEADING_HEADING_RE.sub("", text, count=1).strip()


def extract_title(text: str) -> Optional[str]:
    match = _TITLE_RE.search(text)
    return match.group(1) if match else None


def is_suppressed(fragment: str, rules: FilterRules = DEFAULT_RULES) -> bool:
    if _contains_any(fragment, rules.suppressed_keywords):
        return True
    return len(strip_leading_heading(fragment)) < rules.min_meaningful_length


def classify(fragment: str, rules: FilterRules = DEFAULT_RULES) -> Optional[Classification]:
    """对一段文本分类；返回 None 表示被屏蔽。"""
    if not fragment or is_suppressed(fragment, rules):
        return None

    text = fragment.strip()
    if _HEADING_RE.search(text):
        return Classification(BlockCategory.SLIDE, text, extract_title(text))
    if len(text) < rules.action_max_length and _contains_any(text, rules.progress_verbs):
        return Classification(BlockCategory.ACTION, text)
    if _contains_any(text, rules.thinking_markers):
        return Classification(BlockCategory.THINKING, text)
    return Classification(BlockCategory.CONTENT, text)


def classify_file(file_name: str) -> Classification:
    """文件输出按扩展名分类，不经过文本规则。"""
    if file_name.lower().endswith(IMAGE_EXTENSIONS):
        return Classification(BlockCategory.IMAGE, file_name)
    return Classification(BlockCategory.RESULT, file_name)


def build_display_blocks(
    messages: Iterable[OutputMessage],
    rules: FilterRules = DEFAULT_RULES,
) -> list[DisplayBlock]:
    """把 assistant 消息转换为有序展示块，屏蔽的片段直接丢弃。"""
    blocks: list[DisplayBlock] = []
    for msg_index, message in enumerate(messages):
        if message.role != "assistant":
            continue
        for item_index, item in enumerate(message.items):
            block_id = f"{msg_index}-{item_index}"
            if isinstance(item, TextOutput):
                result = classify(item.text, rules)
                if result is None:
                    continue
                blocks.append(DisplayBlock(
                    id=block_id,
                    category=result.category,
                    content=result.display_text,
                    title=result.title,
                ))
            elif isinstance(item, FileOutput):
                result = classify_file(item.file_name)
                blocks.append(DisplayBlock(
                    id=block_id,
                    category=result.category,
                    content=result.display_text,
                    file_url=item.file_url,
                    file_name=item.file_name,
                ))
    return blocks
