from dataclasses import dataclass, field
from typing import Callable, List

from chathub.sessions.schema import Message, ToolInvocation


@dataclass
class CoordinatorHooks:
    on_message_update: List[Callable[[Message], None]] = field(default_factory=list)
    on_tool_response: List[Callable[[str, ToolInvocation], None]] = field(default_factory=list)
    on_turn_end: List[Callable[[Message], None]] = field(default_factory=list)
    on_settings_requested: List[Callable[[str], None]] = field(default_factory=list)

    def fire_message_update(self, message: Message) -> None:
        for hook in list(self.on_message_update):
            hook(message)

    def fire_tool_response(self, session_id: str, tool: ToolInvocation) -> None:
        for hook in list(self.on_tool_response):
            hook(session_id, tool)

    def fire_turn_end(self, message: Message) -> None:
        for hook in list(self.on_turn_end):
            hook(message)

    def fire_settings_requested(self, section: str) -> None:
        for hook in list(self.on_settings_requested):
            hook(section)
