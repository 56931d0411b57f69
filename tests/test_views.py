from __future__ import annotations

import json

from ppt_task_agent.engine.models import FileOutput
from ppt_task_agent.tasks.models import Task, TaskStatus, TimelineEvent
from ppt_task_agent.tasks.views import build_task_view, parse_interaction, sanitize_interaction_data

from fakes import SLIDE_TEXT, assistant


def _payload(*messages) -> str:
    return json.dumps([m.to_dict() for m in messages], ensure_ascii=False)


def test_sanitize_drops_internal_keys() -> None:
    raw = json.dumps({"question": "确认大纲", "_debug_url": "http://internal/x", "meta": {"_trace": 1, "ok": True}})
    cleaned = json.loads(sanitize_interaction_data(raw))  # type: ignore[arg-type]
    assert cleaned == {"question": "确认大纲", "meta": {"ok": True}}

    assert sanitize_interaction_data(json.dumps({"_only": 1})) is None
    assert sanitize_interaction_data(None) is None


def test_parse_interaction_numbered_options() -> None:
    prompt = parse_interaction(_payload(assistant("请选择大纲结构：\n1. 按行业-竞争-建议展开\n2. 按时间线展开")))
    assert prompt is not None
    assert prompt.kind == "choice"
    assert prompt.options == ["按行业-竞争-建议展开", "按时间线展开"]


def test_parse_interaction_image_confirmation() -> None:
    message = assistant(
        "以下是为封面准备的配图，请确认是否使用。",
        FileOutput(file_url="https://engine.example/cover.png", file_name="cover.png"),
    )
    prompt = parse_interaction(_payload(message))
    assert prompt is not None
    assert prompt.kind == "image_confirmation"
    assert prompt.title == "配图方案确认"
    assert prompt.images == [{"url": "https://engine.example/cover.png", "name": "cover.png"}]


def test_parse_interaction_falls_back_to_output_content() -> None:
    prompt = parse_interaction(None, _payload(assistant("目标受众是谁？")))
    assert prompt is not None
    assert prompt.kind == "text"
    assert prompt.title == "AI 需要您的输入"
    assert parse_interaction(None, None) is None


def test_task_view_flags_and_blocks() -> None:
    task = Task(
        id=1,
        user_id=1,
        title="行业洞察",
        status=TaskStatus.ASK,
        output_content=_payload(assistant(SLIDE_TEXT, "点击下方链接查看演示文稿")),
        interaction_data=_payload(assistant("请确认：\n1. 方案一\n2. 方案二")),
        timeline_events=[TimelineEvent(time="t", event="任务已创建", status="completed")],
    )

    view = build_task_view(task)

    assert view["needs_interaction"] is True
    assert view["is_active"] is True
    assert view["is_completed"] is False
    assert view["is_failed"] is False
    assert view["status_label"] == "需确认"
    assert [b["type"] for b in view["display_blocks"]] == ["slide"]
    assert view["timeline"] == [{"time": "t", "event": "任务已创建", "status": "completed"}]
    assert view["interaction"]["kind"] == "choice"
    assert view["interaction"]["options"] == ["方案一", "方案二"]


def test_completed_view_has_no_interaction() -> None:
    task = Task(id=2, user_id=1, title="A", status=TaskStatus.COMPLETED, progress=100)
    view = build_task_view(task)
    assert view["is_completed"] is True
    assert view["is_active"] is False
    assert view["interaction"] is None
    assert view["display_blocks"] == []


def test_sanitize_rejects_non_json() -> None:
    assert sanitize_interaction_data("not json") is None
    assert sanitize_interaction_data("{broken") is None
    assert sanitize_interaction_data("") is None
