from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from ppt_task_agent.engine.models import DesignSpec, ImageAttachment
from ppt_task_agent.storage.task_store import TaskStore
from ppt_task_agent.tasks.models import POLLABLE_STATUSES, TaskStatus


def _make_store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / "tasks.db")


def test_create_task_persists_inputs_and_timeline(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    task = store.create_task(
        7,
        "新能源汽车行业洞察",
        design_spec=DesignSpec(
            name="品牌蓝",
            primary_color="#0052CC",
            secondary_color="#FFFFFF",
            accent_color="#FF5630",
            font_family="思源黑体",
        ),
        proposal_content="第一部分：行业背景",
        image_attachments=[ImageAttachment(file_id="img-1", usage_mode="must_use", category="cover")],
    )

    loaded = store.get_task(task.id)
    assert loaded is not None
    assert loaded.status == TaskStatus.PENDING
    assert loaded.version == 0
    assert loaded.current_step == "正在初始化..."
    assert loaded.design_spec is not None and loaded.design_spec.primary_color == "#0052CC"
    assert loaded.image_attachments[0].usage_mode == "must_use"
    assert [e.event for e in loaded.timeline_events] == ["任务已创建"]


def test_get_task_enforces_ownership(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    task = store.create_task(1, "A")
    assert store.get_task(task.id, user_id=1) is not None
    assert store.get_task(task.id, user_id=2) is None
    assert store.get_task(9999) is None


def test_list_tasks_only_returns_user_tasks(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    first = store.create_task(1, "A")
    second = store.create_task(1, "B")
    store.create_task(2, "C")

    ids = [t.id for t in store.list_tasks(1)]
    assert ids == [second.id, first.id]


def test_update_task_bumps_version_and_appends_timeline(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    task = store.create_task(1, "A")

    updated = store.update_task(
        task.id,
        {"status": TaskStatus.UPLOADING, "progress": 50},
        expected_status=TaskStatus.PENDING,
        expected_version=0,
        timeline_event=("开始生成PPT", "uploading"),
    )

    assert updated is not None
    assert updated.status == TaskStatus.UPLOADING
    assert updated.progress == 50
    assert updated.version == 1
    assert updated.timeline_events[-1].event == "开始生成PPT"


def test_update_task_guards_reject_stale_writes(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    task = store.create_task(1, "A")
    store.update_task(task.id, {"status": TaskStatus.ASK})

    assert store.update_task(task.id, {"progress": 70}, expected_status=POLLABLE_STATUSES) is None
    assert store.update_task(task.id, {"progress": 70}, expected_version=0) is None

    current = store.get_task(task.id)
    assert current is not None
    assert current.status == TaskStatus.ASK
    assert current.progress == 0
    assert current.version == 1


def test_append_timeline_event_keeps_fields(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    task = store.create_task(1, "A")

    updated = store.append_timeline_event(task.id, "结果文件已更新", "completed")

    assert updated is not None
    assert updated.status == TaskStatus.PENDING
    assert updated.version == 1
    assert [e.event for e in updated.timeline_events] == ["任务已创建", "结果文件已更新"]


def test_update_task_rejects_unknown_fields(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    task = store.create_task(1, "A")
    with pytest.raises(ValueError):
        store.update_task(task.id, {"title": "B"})


def test_engine_task_id_is_write_once(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    task = store.create_task(1, "A")
    store.update_task(task.id, {"engine_task_id": "eng-1"})

    with pytest.raises(ValueError):
        store.update_task(task.id, {"engine_task_id": "eng-2"})

    # 重试时先清空再写入
    store.update_task(task.id, {"engine_task_id": None})
    again = store.update_task(task.id, {"engine_task_id": "eng-2"})
    assert again is not None and again.engine_task_id == "eng-2"


def test_fail_stale_tasks_marks_old_active_tasks(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    stale = store.create_task(1, "stale")
    fresh = store.create_task(1, "fresh")
    done = store.create_task(1, "done")
    store.update_task(done.id, {"status": TaskStatus.COMPLETED})

    old = (datetime.now() - timedelta(hours=30)).isoformat()
    with store._transaction() as conn:
        conn.execute("UPDATE ppt_tasks SET updated_at = ? WHERE id IN (?, ?)", (old, stale.id, done.id))

    assert store.fail_stale_tasks(24) == 1

    failed = store.get_task(stale.id)
    assert failed is not None
    assert failed.status == TaskStatus.FAILED
    assert failed.error_message == "任务超时（超过 24 小时未完成，已自动清理）"
    assert failed.timeline_events[-1].event == "任务自动清理（超时）"
    assert store.get_task(fresh.id).status == TaskStatus.PENDING  # type: ignore[union-attr]
    assert store.get_task(done.id).status == TaskStatus.COMPLETED  # type: ignore[union-attr]


def test_uploaded_file_records(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    store.save_uploaded_file(
        "f1", 1, "notes.txt", "text/plain", 5, "uploads/1/x-notes.txt", "/files/uploads/1/x-notes.txt",
        engine_file_id="eng-file-1",
    )

    record = store.get_uploaded_file("f1", user_id=1)
    assert record is not None
    assert record["engine_file_id"] == "eng-file-1"
    assert store.get_uploaded_file("f1", user_id=2) is None


def test_project_crud(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    first = store.create_project(1, "品牌蓝", primary_color="#0052CC", design_notes="标题居左")
    second = store.create_project(1, "默认规范")
    store.create_project(2, "别人的项目")

    assert second.primary_color == "#0c87eb"
    assert second.font_family == "微软雅黑"
    assert [p.id for p in store.list_projects(1)] == [second.id, first.id]
    assert store.get_project(first.id, user_id=2) is None

    updated = store.update_project(first.id, {"name": "品牌蓝 v2", "engine_project_id": "eng-proj-1"})
    assert updated is not None
    assert updated.name == "品牌蓝 v2"
    assert updated.primary_color == "#0052CC"
    assert updated.engine_project_id == "eng-proj-1"
    spec = updated.to_design_spec()
    assert spec.name == "品牌蓝 v2"
    assert spec.extra_instructions == "标题居左"

    assert store.update_project(999, {"name": "x"}) is None
    with pytest.raises(ValueError):
        store.update_project(first.id, {"user_id": 2})
    with pytest.raises(ValueError):
        store.create_project(1, "x", owner="someone")

    assert store.delete_project(first.id) is True
    assert store.delete_project(first.id) is False
    assert store.get_project(first.id) is None
