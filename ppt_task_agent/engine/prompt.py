"""
PPT 生成指令构建。

把任务输入（标题、Proposal / 源文档、配图指令、设计规范）渲染成发给引擎的 Markdown 指令。
"""

from __future__ import annotations

from typing import Optional

from .models import CATEGORY_LABELS, DesignSpec, ImageAttachment, PromptPayload


_BRAND_PURITY_RULES = """# PPT 制作任务 - 咨询级专业标准

## ⚠️ 最重要的规则（必须首先阅读并严格遵守）

**品牌纯净要求 - 违反此规则将导致交付物被完全拒绝：**

1. **严禁**在PPT的任何位置（尤其是封面页、首页、尾页）出现以下内容：
   - "Powered by Manus"、"Made with Manus"、"由Manus提供支持"
   - "Powered by AI"、"AI Generated"、"由AI生成"
   - "Powered by XXX"或任何类似的技术来源声明
   - Manus、OpenAI、Claude、GPT、Gemini等任何AI平台或模型名称
   - 任何暗示内容由AI生成的水印、Logo或标注

2. **封面页特别要求**：
   - 封面页只能包含：标题、副标题、日期、公司名称（如用户提供）
   - 封面页**绝对禁止**出现任何"Powered by"、"Made with"等字样

3. **这是面向大型企业客户的专业交付**，必须确保PPT看起来100%是人工专业制作。

---"""

_QUALITY_STANDARD = """## 📋 咨询级PPT质量标准

请按照**麦肯锡、BCG、贝恩**等顶级咨询公司的PPT标准制作：

### 内容质量要求

1. **金字塔原则**：每页有一个清晰的核心观点作为标题，标题是完整的陈述句，正文支撑标题观点
2. **MECE原则**：内容分类相互独立、完全穷尽，避免重复和遗漏
3. **内容深度**：使用具体数据、案例、对比支撑观点，提供可操作的洞察和建议

### 视觉设计标准

1. **排版规范**：标题 28-32pt 加粗，正文 18-22pt，注释/来源 10-12pt，行距 1.2-1.5 倍
2. **视觉层次**：用颜色和字号区分信息层级，重要信息使用强调色
3. **图表设计**：图表有清晰的标题和数据标签，配色与主题色一致

### 结构框架

1. **封面页**：标题、副标题、日期、公司名称
2. **目录页**：清晰的章节结构
3. **执行摘要**：核心发现和建议的概述（1-2页）
4. **正文内容**：按逻辑顺序展开
5. **结论/建议**：总结和下一步行动
6. **附录**（如需要）：详细数据和参考资料

---

**重要执行原则**：
- **自主决策**：请尽可能自主完成所有工作，不要频繁询问用户确认。
- **仅在必要时询问**：只有在遇到无法自行判断的关键问题时才向用户提问。
- ⚠️ **品牌纯净**：在任何页面都不要添加AI工具品牌信息。
"""

_DATA_AND_LAYOUT = """3. **数据与信息补充**：
   - 如果Proposal或文档中的数据不够完整，**必须**自动搜索最新的行业数据进行补充
   - 市场规模和增长率、行业趋势、竞争格局、标杆案例、权威研究报告
   - 所有数据必须标注来源

4. **图片布局规范**（必须严格遵守）：
   - **绝对禁止**图片遮挡文字内容
   - 图片放置在专门的图片区域，空间有限时缩小图片或调整布局
   - 常见布局：左文右图、上文下图；全屏背景图必须添加半透明遮罩确保文字可读

5. **最终交付前的质量检查**：
   - [ ] 每页都有明确的核心观点作为标题
   - [ ] 关键数据都有来源标注
   - [ ] 所有文字完全可见，没有被图片遮挡
   - [ ] 配色和字体符合设计规范
   - [ ] 没有任何AI工具品牌信息

6. **最终交付**：完成所有内容的撰写和配图后，将整个PPT打包成一个可下载的 `.pptx` 文件作为最终交付物。"""

_FINAL_CHECKLIST = """---

## ⚠️ 再次强调品牌纯净要求（最终检查清单）

- [ ] 封面页没有"Powered by"、"Made with"等任何技术来源声明
- [ ] 所有页面都没有Manus、OpenAI、Claude等AI平台名称
- [ ] 尾页/致谢页没有技术致谢或工具声明
- [ ] PPT看起来100%像是人工专业制作

**违反以上任何一条，交付物将被拒绝。**

---

**请尽可能自主完成所有工作，只有在遇到真正无法判断的关键问题时才向用户提问。**"""

# 源文档正文过长时截断，避免指令超出引擎上限
_SOURCE_TEXT_LIMIT = 30000

_IMAGE_GROUPS: tuple[tuple[str, str], ...] = (
    ("must_use", "**【必须使用】以下图片必须在PPT中使用，不可忽略：**"),
    ("suggest_use", "**【建议使用】以下图片优先考虑使用，如果适合内容请使用：**"),
    ("ai_decide", "**【AI自行决定】以下图片由AI根据内容相关性决定是否使用：**"),
)


def _design_section(design_spec: Optional[DesignSpec]) -> list[str]:
    if design_spec is None:
        return ["**设计风格**：用户未指定设计规范，请根据内容主题自由发挥，选择最适合的专业商务风格。", ""]

    lines = [
        "**设计规范要求**（必须严格遵守）：",
        "",
        f"- **规范名称**：{design_spec.name}",
        f"- **主色调**：{design_spec.primary_color}（用于标题、重要元素、强调内容）",
        f"- **辅助色**：{design_spec.secondary_color}（用于正文、次要元素）",
        f"- **强调色**：{design_spec.accent_color}（用于图表、按钮、高亮内容）",
        f"- **字体**：{design_spec.font_family}（所有文字必须使用此字体）",
    ]
    if design_spec.logo_url:
        lines.append("- **Logo**：请在封面和结尾页使用品牌Logo")
    if design_spec.extra_instructions:
        lines.extend(["", "**额外设计说明**：", design_spec.extra_instructions])
    lines.extend(["", "**重要**：以上配色和字体规范必须严格执行，确保整个PPT风格统一、专业。", ""])
    return lines


def _content_section(payload: PromptPayload) -> list[str]:
    lines = [f"**演示主题**：{payload.title}", ""]
    if payload.proposal_content:
        lines.extend([
            "1. **内容生成**：",
            "   - 基于我提供的Proposal内容，提炼核心要点",
            "   - 将内容组织成逻辑清晰的PPT页面结构",
            "   - 如果内容不够详细，请自动搜索相关资料进行补充",
            "",
            "**Proposal内容**：",
            "```",
            payload.proposal_content,
            "```",
        ])
    elif payload.source_text or payload.source_file_id:
        lines.extend([
            "1. **内容生成**：",
            "   - 基于我提供的源文档，提炼核心内容",
            "   - 将内容组织成逻辑清晰的PPT页面结构",
            "   - 如有需要，可自动搜索补充相关数据和信息",
        ])
        if payload.source_text:
            text = payload.source_text[:_SOURCE_TEXT_LIMIT]
            lines.extend(["", "**源文档内容**：", "```", text, "```"])
    else:
        lines.append("1. **内容生成**：请根据演示主题、设计规范和配图信息，生成一份专业的PPT。")
    return lines


def _image_lines(index: int, image: ImageAttachment) -> list[str]:
    lines = [
        f"   {index}. 附件 `{image.file_id}`",
        f"      - 用途：{CATEGORY_LABELS.get(image.category, '其他用途')}",
    ]
    if image.description:
        lines.append(f"      - 说明：{image.description}")
    return lines


def _image_section(images: list[ImageAttachment]) -> list[str]:
    if not images:
        return [
            "",
            "2. **智能配图**（自动执行，无需确认）：",
            "   a. 请首先在源文档中寻找相关图表或图片。",
            "   b. 如果资料中无可用图片，请自动搜索高质量、风格匹配的商业图片。",
            "   c. 请根据专业判断直接选择最合适的图片，无需向用户确认。",
        ]

    lines = ["", "2. **配图管理**（请严格按照以下要求处理用户提供的图片）：", ""]
    for mode, heading in _IMAGE_GROUPS:
        group = [img for img in images if img.usage_mode == mode]
        if not group:
            continue
        lines.append(f"   {heading}")
        for index, image in enumerate(group, start=1):
            lines.extend(_image_lines(index, image))
        lines.append("")
    lines.extend([
        "   **其他配图处理**：",
        "   - 对于未指定配图的页面，请首先在源文档中寻找相关图表或图片",
        "   - 如果资料中无可用图片，请自动搜索高质量、风格匹配的商业图片",
    ])
    return lines


def build_ppt_prompt(payload: PromptPayload) -> str:
    """渲染完整的生成指令。"""
    lines: list[str] = [_BRAND_PURITY_RULES, "", _QUALITY_STANDARD]
    lines.extend(_design_section(payload.design_spec))
    lines.extend(["**任务要求**：", ""])
    lines.extend(_content_section(payload))
    lines.extend(_image_section(payload.images))
    lines.extend(["", _DATA_AND_LAYOUT, "", _FINAL_CHECKLIST])
    return "\n".join(lines)


def build_design_instruction(design_spec: DesignSpec) -> str:
    """项目级设计规范说明，创建引擎侧项目时作为 instruction 提交。"""
    lines = [
        f"# {design_spec.name} PPT设计规范",
        "",
        "## 色彩规范",
        f"- 主色调：{design_spec.primary_color}",
        f"- 辅助色：{design_spec.secondary_color}",
        f"- 强调色：{design_spec.accent_color}",
        "",
        "## 字体规范",
        f"- 主字体：{design_spec.font_family}",
        "- 标题字号：32-44pt",
        "- 正文字号：18-24pt",
        "",
        "## 设计原则",
        "1. 保持简洁专业的视觉风格",
        "2. 每页内容不宜过多，突出重点",
        "3. 图文搭配合理，留白适当",
        "4. 色彩使用统一，符合品牌调性",
    ]
    if design_spec.logo_url:
        lines.extend(["", "## Logo使用", f"- Logo地址：{design_spec.logo_url}", "- 在封面和每页页脚使用Logo"])
    if design_spec.extra_instructions:
        lines.extend(["", "## 额外设计要求", design_spec.extra_instructions])
    return "\n".join(lines)
