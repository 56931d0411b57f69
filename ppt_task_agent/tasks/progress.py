"""
进度估算。

引擎不提供数值进度，这里按输出消息数推断：
``progress = min(baseline + floor(output_count * growth_factor), ceiling)``，
结果不低于上一次的进度；completed 固定为 100，failed / stopped / ask 冻结。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from ..config import settings
from ..engine.models import EngineSnapshot
from .output_filter import DEFAULT_RULES, FilterRules, classify

_IN_PROGRESS = {"running", "pending"}
_FROZEN = {"failed", "stopped", "ask"}

# 运行中进度上限，100 只在 completed 时出现
MAX_RUNNING_PROGRESS = 99


@dataclass(frozen=True)
class ProgressConfig:
    baseline: int = 60
    growth_factor: float = 3.0
    ceiling: int = 95
    step_max_length: int = 100

    def __post_init__(self) -> None:
        if self.ceiling > MAX_RUNNING_PROGRESS:
            object.__setattr__(self, "ceiling", MAX_RUNNING_PROGRESS)

    @classmethod
    def from_settings(cls) -> "ProgressConfig":
        return cls(
            baseline=settings.progress_baseline,
            growth_factor=settings.progress_growth_factor,
            ceiling=settings.progress_ceiling,
            step_max_length=settings.current_step_max_length,
        )


@dataclass(frozen=True)
class ProgressEstimate:
    progress: int
    current_step: Optional[str]


def _first_line(text: str, max_length: int) -> str:
    for line in text.splitlines():
        line = line.strip().lstrip("#").strip()
        if line:
            return line[:max_length]
    return ""


def extract_current_step(
    snapshot: EngineSnapshot,
    max_length: int = 100,
    rules: FilterRules = DEFAULT_RULES,
) -> Optional[str]:
    """最近一条 assistant 文本中最后一段未被屏蔽的片段的首行。"""
    for text in reversed(snapshot.latest_assistant_texts()):
        result = classify(text, rules)
        if result is None:
            continue
        line = _first_line(result.display_text, max_length)
        if line:
            return line
    return None


def estimate_progress(
    previous_progress: int,
    previous_step: Optional[str],
    snapshot: EngineSnapshot,
    config: Optional[ProgressConfig] = None,
    rules: FilterRules = DEFAULT_RULES,
) -> ProgressEstimate:
    cfg = config or ProgressConfig()
    previous_progress = max(0, min(int(previous_progress or 0), 100))
    status = snapshot.status

    if status == "completed":
        return ProgressEstimate(100, previous_step)
    if status in _FROZEN or status not in _IN_PROGRESS:
        return ProgressEstimate(previous_progress, previous_step)

    computed = min(
        cfg.baseline + math.floor(snapshot.output_count * cfg.growth_factor),
        cfg.ceiling,
    )
    step = extract_current_step(snapshot, cfg.step_max_length, rules) or previous_step
    return ProgressEstimate(max(previous_progress, computed), step)
