from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from common.ids import generate_id


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StopReason(str, Enum):
    ERROR = "error"
    CANCEL = "cancel"
    APIKEY = "apikey"
    RECURSION = "recursion"
    FINISH = "finish"


class Assistant(_CamelModel):
    name: str
    system_prompt: str
    base_model: str
    key: str
    type: Literal["base", "custom"] = "custom"


class ToolInvocation(_CamelModel):
    tool_name: str
    tool_loading: bool = False
    tool_args: Any = None
    tool_response: Any = None
    tool_render_args: Any = None


class LLMInputProps(_CamelModel):
    session_id: str
    message_id: str | None = None
    input: str | None = None
    context: str | None = None
    image: str | None = None
    assistant: Assistant


class Message(_CamelModel):
    id: str = Field(default_factory=generate_id)
    session_id: str
    raw_human: str | None = None
    raw_ai: str | None = None
    is_loading: bool = False
    stop: bool = False
    stop_reason: StopReason | None = None
    image: str | None = None
    input_props: LLMInputProps | None = None
    tools: list[ToolInvocation] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class Session(_CamelModel):
    id: str = Field(default_factory=generate_id)
    title: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None
    messages: list[Message] = Field(default_factory=list)
