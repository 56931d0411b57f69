from __future__ import annotations

import pytest

from ppt_task_agent.config import Settings
from ppt_task_agent.tasks.progress import ProgressConfig, estimate_progress, extract_current_step

from fakes import SLIDE_TEXT, assistant, snapshot


def test_three_outputs_from_baseline_gives_69() -> None:
    snap = snapshot("running", assistant("a"), assistant("b"), assistant("c"))
    estimate = estimate_progress(60, "AI正在分析文档内容...", snap)
    assert estimate.progress == 69


def test_single_output_gives_63() -> None:
    estimate = estimate_progress(0, None, snapshot("running", assistant("a")))
    assert estimate.progress == 63


def test_progress_capped_at_ceiling() -> None:
    many = [assistant(f"msg-{i}") for i in range(40)]
    estimate = estimate_progress(60, None, snapshot("running", *many))
    assert estimate.progress == 95


def test_progress_never_regresses() -> None:
    estimate = estimate_progress(80, "第5页", snapshot("running", assistant("a")))
    assert estimate.progress == 80


@pytest.mark.parametrize("status", ["ask", "failed", "stopped", "something_new"])
def test_frozen_statuses_keep_previous_values(status: str) -> None:
    snap = snapshot(status, *[assistant(SLIDE_TEXT)] * 5)
    estimate = estimate_progress(72, "上一步", snap)
    assert estimate.progress == 72
    assert estimate.current_step == "上一步"


def test_completed_pins_to_100() -> None:
    estimate = estimate_progress(72, "上一步", snapshot("completed"))
    assert estimate.progress == 100


def test_configurable_constants() -> None:
    config = ProgressConfig(baseline=10, growth_factor=5, ceiling=30)
    snap = snapshot("running", *[assistant("x")] * 3)
    assert estimate_progress(0, None, snap, config).progress == 25
    snap = snapshot("running", *[assistant("x")] * 10)
    assert estimate_progress(0, None, snap, config).progress == 30


def test_current_step_uses_latest_unsuppressed_text() -> None:
    snap = snapshot("running", assistant(SLIDE_TEXT, "点击下方链接查看演示文稿"))
    assert extract_current_step(snap) == "第3页：市场规模"
    estimate = estimate_progress(60, "旧步骤", snap)
    assert estimate.current_step == "第3页：市场规模"


def test_current_step_falls_back_when_everything_is_suppressed() -> None:
    snap = snapshot("running", assistant("好的"), assistant("点击下方链接查看演示文稿"))
    estimate = estimate_progress(60, "AI正在分析文档内容...", snap)
    assert estimate.current_step == "AI正在分析文档内容..."


def test_current_step_truncated() -> None:
    config = ProgressConfig(step_max_length=5)
    snap = snapshot("running", assistant(SLIDE_TEXT))
    assert estimate_progress(60, None, snap, config).current_step == "第3页：市"


def test_ceiling_above_99_is_clamped() -> None:
    assert ProgressConfig(ceiling=100).ceiling == 99
    assert Settings(progress_ceiling=120).progress_ceiling == 99
    assert Settings(progress_ceiling=-5).progress_ceiling == 0

    many = [assistant(f"msg-{i}") for i in range(40)]
    estimate = estimate_progress(60, None, snapshot("running", *many), ProgressConfig(ceiling=100))
    assert estimate.progress == 99
