from __future__ import annotations

from structlog.contextvars import clear_contextvars, get_contextvars

from ppt_task_agent.logging_config import (
    _MAX_FIELD_CHARS,
    _redact_secrets,
    _truncate_long_fields,
    bind_request_id,
    bind_task_id,
    bind_user_id,
)


def test_secrets_are_redacted() -> None:
    event = _redact_secrets(None, "info", {"event": "x", "API_KEY": "secret", "authorization": "", "user_id": 1})
    assert event == {"event": "x", "API_KEY": "***", "authorization": "", "user_id": 1}


def test_long_fields_are_truncated_except_exception() -> None:
    long_text = "页" * (_MAX_FIELD_CHARS + 20)
    event = _truncate_long_fields(None, "info", {"output": long_text, "exception": long_text, "progress": 69})

    assert event["output"] == f"{'页' * _MAX_FIELD_CHARS}...(+20)"
    assert event["exception"] == long_text
    assert event["progress"] == 69


def test_context_binding_helpers() -> None:
    clear_contextvars()
    try:
        bind_request_id("req-1")
        bind_user_id(7)
        bind_task_id(3)
        assert get_contextvars() == {"request_id": "req-1", "user_id": 7, "task_id": 3}

        bind_task_id(3, "eng-9")
        assert get_contextvars()["engine_task_id"] == "eng-9"
    finally:
        clear_contextvars()
