from __future__ import annotations

from ppt_task_agent.engine.models import DesignSpec, ImageAttachment, PromptPayload
from ppt_task_agent.engine.prompt import build_ppt_prompt


def test_prompt_with_design_and_proposal() -> None:
    prompt = build_ppt_prompt(
        PromptPayload(
            title="新能源汽车行业洞察",
            source_text="这段源文档不应出现",
            proposal_content="第一部分：行业背景",
            design_spec=DesignSpec(
                name="品牌蓝",
                primary_color="#0052CC",
                secondary_color="#FFFFFF",
                accent_color="#FF5630",
                font_family="思源黑体",
                logo_url="/files/logo.png",
            ),
        )
    )

    assert prompt.startswith("# PPT 制作任务")
    assert "**演示主题**：新能源汽车行业洞察" in prompt
    assert "**主色调**：#0052CC" in prompt
    assert "**Logo**" in prompt
    assert "**Proposal内容**：" in prompt
    assert "第一部分：行业背景" in prompt
    # Proposal 优先于源文档
    assert "这段源文档不应出现" not in prompt
    assert prompt.rstrip().endswith("才向用户提问。**")


def test_prompt_without_inputs_falls_back_to_title() -> None:
    prompt = build_ppt_prompt(PromptPayload(title="A"))

    assert "用户未指定设计规范" in prompt
    assert "请根据演示主题、设计规范和配图信息" in prompt
    assert "**智能配图**" in prompt


def test_prompt_truncates_long_source_text() -> None:
    prompt = build_ppt_prompt(PromptPayload(title="A", source_text="甲" * 30000 + "乙" * 10))

    assert "**源文档内容**：" in prompt
    assert "乙" not in prompt


def test_prompt_groups_images_by_usage_mode() -> None:
    prompt = build_ppt_prompt(
        PromptPayload(
            title="A",
            images=[
                ImageAttachment(file_id="img-ai", usage_mode="ai_decide"),
                ImageAttachment(file_id="img-must", usage_mode="must_use", category="cover", description="封面主图"),
            ],
        )
    )

    must_at = prompt.index("【必须使用】")
    ai_at = prompt.index("【AI自行决定】")
    assert must_at < prompt.index("`img-must`") < ai_at < prompt.index("`img-ai`")
    assert "【建议使用】" not in prompt
    assert "用途：封面/封底" in prompt
    assert "说明：封面主图" in prompt
