"""
测试会话级别配置。

- 测试环境禁用速率限制器，避免限流对测试的干扰。
- 存储目录指向临时目录，并重置各模块的单例。
"""
from __future__ import annotations

from pathlib import Path

import pytest

from ppt_task_agent.config import settings
from ppt_task_agent.engine import client as engine_client_module
from ppt_task_agent.main import limiter
from ppt_task_agent.storage import file_store as file_store_module
from ppt_task_agent.storage import task_store as task_store_module
from ppt_task_agent.tasks import lifecycle as lifecycle_module
from ppt_task_agent.tasks import projects as projects_module
from ppt_task_agent.tasks import scheduler as scheduler_module


@pytest.fixture(autouse=True)
def _disable_rate_limiter():
    """在测试环境中禁用速率限制。"""
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture(autouse=True)
def _isolated_storage(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """每个测试使用独立的数据目录与单例。"""
    monkeypatch.setattr(settings, "data_dir", str(tmp_path / "data"))
    monkeypatch.setattr(settings, "task_db_path", "")
    monkeypatch.setattr(settings, "file_storage_dir", "")
    monkeypatch.setattr(settings, "engine_api_key", "test-key")
    monkeypatch.setattr(settings, "engine_retry_base_sleep_seconds", 0.0)
    monkeypatch.setattr(settings, "api_secret_key", "")

    monkeypatch.setattr(task_store_module, "_task_store", None)
    monkeypatch.setattr(file_store_module, "_file_storage", None)
    monkeypatch.setattr(engine_client_module, "_engine_client", None)
    monkeypatch.setattr(lifecycle_module, "_controller", None)
    monkeypatch.setattr(projects_module, "_project_service", None)
    monkeypatch.setattr(scheduler_module, "_scheduler", None)
    yield
