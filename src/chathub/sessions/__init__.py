from chathub.sessions.manager import SessionStore
from chathub.sessions.schema import (
    Assistant,
    LLMInputProps,
    Message,
    Session,
    StopReason,
    ToolInvocation,
)

__all__ = [
    "SessionStore",
    "Assistant",
    "LLMInputProps",
    "Message",
    "Session",
    "StopReason",
    "ToolInvocation",
]
