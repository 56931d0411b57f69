from __future__ import annotations

import pytest

from ppt_task_agent.engine.models import FileOutput, OutputMessage, TextOutput
from ppt_task_agent.tasks.output_filter import (
    BlockCategory,
    FilterRules,
    build_display_blocks,
    classify,
    classify_file,
    is_suppressed,
)

from fakes import SLIDE_TEXT

ACTION_TEXT = (
    "正在根据您提供的Proposal内容逐页整理幻灯片的核心论点，"
    "同时为每个数据页面补充最新的行业统计数据、图表与来源说明。"
)
THINKING_TEXT = (
    "我先分析一下这份材料的结构：第一部分讲行业背景，第二部分讲竞争格局，"
    "第三部分给出战略建议，整体逻辑清晰，适合做成十五页左右的咨询风格演示。"
)
CONTENT_TEXT = (
    "本次汇报建议聚焦三大战略方向：渠道下沉、产品高端化与数字化运营，"
    "每个方向配套明确的里程碑、资源投入与量化考核指标，便于管理层决策。"
)


def test_heading_with_long_body_is_slide() -> None:
    result = classify(SLIDE_TEXT)
    assert result is not None
    assert result.category == BlockCategory.SLIDE
    assert result.title == "第3页：市场规模"


def test_download_boilerplate_is_suppressed() -> None:
    assert classify("点击下方链接查看演示文稿") is None


def test_internal_instruction_leak_is_suppressed_regardless_of_length() -> None:
    leaked = CONTENT_TEXT + "\n品牌纯净要求：" + CONTENT_TEXT
    assert is_suppressed(leaked)
    assert classify(leaked) is None


def test_short_body_under_heading_is_suppressed() -> None:
    assert classify("## 第1页：封面\n新能源汽车市场洞察") is None
    assert classify("好的") is None
    assert classify("") is None


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        (ACTION_TEXT, BlockCategory.ACTION),
        (THINKING_TEXT, BlockCategory.THINKING),
        (CONTENT_TEXT, BlockCategory.CONTENT),
    ],
)
def test_first_matching_rule_wins(text: str, expected: BlockCategory) -> None:
    result = classify(text)
    assert result is not None
    assert result.category == expected


def test_long_text_with_progress_verb_is_not_action() -> None:
    text = ACTION_TEXT + CONTENT_TEXT
    assert len(text) >= 100
    result = classify(text)
    assert result is not None
    assert result.category == BlockCategory.CONTENT


def test_classification_is_idempotent() -> None:
    for text in (SLIDE_TEXT, ACTION_TEXT, THINKING_TEXT, CONTENT_TEXT):
        first = classify(text)
        assert first is not None
        again = classify(first.display_text)
        assert again is not None
        assert again.category == first.category
        assert again.display_text == first.display_text


def test_rules_are_configurable() -> None:
    rules = FilterRules(meaningless_keywords=("战略方向",), min_meaningful_length=10)
    assert classify(CONTENT_TEXT, rules) is None
    short = classify("这是一段足够长的正文内容，用于测试。", rules)
    assert short is not None


def test_file_outputs_classified_by_extension() -> None:
    assert classify_file("cover.PNG").category == BlockCategory.IMAGE
    assert classify_file("deck.pptx").category == BlockCategory.RESULT
    assert classify_file("deck.pdf").category == BlockCategory.RESULT


def test_display_blocks_skip_user_messages_and_suppressed_text() -> None:
    messages = [
        OutputMessage(role="user", items=(TextOutput(CONTENT_TEXT),)),
        OutputMessage(
            role="assistant",
            items=(
                TextOutput(SLIDE_TEXT),
                TextOutput("点击下方链接查看演示文稿"),
                FileOutput(file_url="https://engine.example/a.png", file_name="a.png"),
            ),
        ),
    ]
    blocks = build_display_blocks(messages)

    assert [b.id for b in blocks] == ["1-0", "1-2"]
    assert blocks[0].category == BlockCategory.SLIDE
    assert blocks[1].category == BlockCategory.IMAGE
    assert blocks[1].to_dict()["file_url"] == "https://engine.example/a.png"
    assert blocks[0].to_dict()["type"] == "slide"
