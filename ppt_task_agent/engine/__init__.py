"""PPT 引擎模块。"""

from .client import EngineClient, get_engine_client
from .models import (
    DesignSpec,
    EngineAttachment,
    EngineSnapshot,
    FileOutput,
    ImageAttachment,
    OutputMessage,
    PromptPayload,
    TextOutput,
    parse_output_messages,
)
from .prompt import build_design_instruction, build_ppt_prompt

__all__ = [
    "EngineClient",
    "get_engine_client",
    "DesignSpec",
    "EngineAttachment",
    "EngineSnapshot",
    "FileOutput",
    "ImageAttachment",
    "OutputMessage",
    "PromptPayload",
    "TextOutput",
    "parse_output_messages",
    "build_design_instruction",
    "build_ppt_prompt",
]
